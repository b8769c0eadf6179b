"""Routers package."""

from . import (
    health,
    admin,
    cron,
    resources,
)
