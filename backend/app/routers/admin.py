"""
Administrative router — key lifecycle and maintenance.

POST  /admin/keys               create a key (secret returned once)
PATCH /admin/keys/{key_hash}    partial update; invalidates the key cache
POST  /admin/keys/details       record + live usage for a presented secret
POST  /admin/usage/reset        run the usage rollover now

All routes require X-Admin-Token. Secrets travel in request bodies,
never in URLs, so they stay out of access logs.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from app.auth.dependencies import get_key_service, get_reset_scheduler, require_admin
from app.schemas.api_key import (
    ApiKeyCreate,
    ApiKeyCreated,
    ApiKeyRecord,
    ApiKeyUpdate,
    KeyDetails,
    KeyDetailsRequest,
)
from app.services.api_keys import ApiKeyService
from app.services.usage_reset import UsageResetScheduler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Admin"], dependencies=[Depends(require_admin)])

# Type aliases for cleaner signatures
KeyService = Annotated[ApiKeyService, Depends(get_key_service)]
ResetScheduler = Annotated[UsageResetScheduler, Depends(get_reset_scheduler)]


@router.post(
    "/keys",
    response_model=ApiKeyCreated,
    status_code=status.HTTP_201_CREATED,
    summary="Create an API key",
)
async def create_key(payload: ApiKeyCreate, service: KeyService) -> ApiKeyCreated:
    return await service.create_key(payload)


@router.patch(
    "/keys/{key_hash}",
    response_model=ApiKeyRecord,
    summary="Update status, scope, limits or timezone of a key",
)
async def update_key(key_hash: str, changes: ApiKeyUpdate, service: KeyService) -> ApiKeyRecord:
    record = await service.update_key(key_hash, changes)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found")
    return record


@router.post(
    "/keys/details",
    response_model=KeyDetails,
    summary="Key record with live usage",
)
async def key_details(body: KeyDetailsRequest, service: KeyService) -> KeyDetails:
    details = await service.get_key_details(body.api_key)
    if details is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found")
    return details


@router.post(
    "/usage/reset",
    summary="Run the daily/monthly usage rollover now",
)
async def reset_usage(scheduler: ResetScheduler) -> dict[str, object]:
    report = await scheduler.run_once()
    if report is None:
        return {"status": "skipped"}
    return {
        "status": "completed",
        "timezones": report.timezones,
        "daily_rows": report.daily_rows,
        "monthly_rows": report.monthly_rows,
        "failed": report.failed,
    }
