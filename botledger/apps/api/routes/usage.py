from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from botledger.apps.api.deps import get_db, get_quota
from botledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from botledger.apps.api.response import SuccessEnvelope, success_response
from botledger.services.quota import QuotaService

router = APIRouter(prefix="/usage", tags=["usage"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/current-month", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def get_current_month_usage(
    request: Request,
    user_id: str = Query(..., min_length=1, max_length=128),
    organization_id: str | None = Query(default=None, max_length=128),
    db: AsyncSession = Depends(get_db),
    quota: QuotaService = Depends(get_quota),
) -> dict[str, Any]:
    summary = await quota.usage_summary(db, user_id=user_id, organization_id=organization_id)
    data = {
        "month": summary.month,
        **summary.decision.as_dict(),
        "percentage_used": summary.percentage_used,
        "days_remaining": summary.days_remaining,
        "average_daily_usage": summary.average_daily_usage,
        "projected_monthly_usage": summary.projected_monthly_usage,
    }
    return success_response(request=request, data=data)
