"""RQ worker that drains the persisted audit queue on each nudge."""

import logging

from rq import Worker

from services.audit_queue import SCHEDULER_QUEUE_NAME, get_redis_connection, process_queue_tick

logger = logging.getLogger("worker")


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    # Pick up jobs enqueued while no worker was listening.
    backlog = process_queue_tick()
    if backlog:
        logger.info("Drained %s queued job(s) before listening on %s", backlog, SCHEDULER_QUEUE_NAME)
    worker = Worker([SCHEDULER_QUEUE_NAME], connection=get_redis_connection())
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
