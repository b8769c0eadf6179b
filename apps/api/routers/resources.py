"""
Visitor endpoint for requesting a resource the site does not serve yet.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from models.enums import ResourceRequestStatus
from models.resource_request import ResourceRequest
from routers.errors import failure_response
from routers.rate_limit import rate_limit
from services.registry import Services, get_services

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateResourceRequest(BaseModel):
    requested_url: str = Field(min_length=1, max_length=2000)
    email: Optional[str] = Field(default=None, max_length=320)
    source_url: Optional[str] = Field(default=None, max_length=2000)
    message: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("requested_url")
    @classmethod
    def _normalize_url(cls, value: str) -> str:
        value = value.strip()
        if not (value.startswith("/") or value.startswith("http://") or value.startswith("https://")):
            raise ValueError("requested_url must be a site path or an absolute http(s) URL")
        return value


class CreateResourceRequestResponse(BaseModel):
    success: bool
    id: str
    status: ResourceRequestStatus


@router.post("", response_model=CreateResourceRequestResponse)
async def create_resource_request(
    body: CreateResourceRequest,
    _rate_limit: None = Depends(rate_limit("resource_request", limit=20, window_seconds=3600)),
    services: Services = Depends(get_services),
):
    try:
        request = await services.store.record_resource_request(
            ResourceRequest(
                requested_url=body.requested_url,
                email=body.email,
                source_url=body.source_url,
                message=body.message,
            )
        )
    except Exception as exc:
        logger.exception("Resource request could not be stored")
        return failure_response(exc, "Could not record resource request")
    logger.info("Resource requested: %s", request.requested_url)
    return CreateResourceRequestResponse(success=True, id=request.id, status=ResourceRequestStatus(request.status))
