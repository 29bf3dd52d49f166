"""
Usage router — lets a caller see its own quota.

GET /api/v1/usage
  Runs behind the admission gateway like every other /api route, so the
  call itself is counted. The numbers returned already include it.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from app.auth.dependencies import AuthContext, enforce_admission
from app.schemas.api_key import UsageResponse

router = APIRouter(tags=["Usage"])

Auth = Annotated[AuthContext, Depends(enforce_admission)]


@router.get(
    "/usage",
    response_model=UsageResponse,
    summary="Remaining daily/monthly quota for the calling key",
)
async def get_usage(auth: Auth) -> UsageResponse:
    usage = auth.usage
    return UsageResponse(
        remaining_daily_requests=usage.remaining_daily_requests,
        remaining_monthly_requests=usage.remaining_monthly_requests,
        total_daily_limit=usage.daily_limit,
        total_monthly_limit=usage.monthly_limit,
        current_daily_usage=usage.daily_requests,
        current_monthly_usage=usage.monthly_requests,
        status=auth.status,
    )
