"""Credit balance router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from routers.rate_limit import rate_limit
from services.runtime import AppServices, get_services

router = APIRouter()


class SpendRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=200)
    amount: int = Field(ge=1, le=10000)
    description: str = Field(default="Manual spend", max_length=500)
    reference_id: Optional[str] = None


@router.get("")
async def get_credits(
    user_id: str = Query(min_length=1, max_length=200),
    services: AppServices = Depends(get_services),
):
    account = await services.ledger.get_account(user_id)
    available = await services.ledger.get_available(user_id)
    return {
        "user_id": user_id,
        **available.as_dict(),
        "total_earned": account.total_earned,
        "total_spent": account.total_spent,
        "free_reset_at": account.free_tier.reset_at.isoformat(),
    }


@router.post("/spend")
async def spend_credits(
    request: SpendRequest,
    _rate_limit: None = Depends(rate_limit("credits_spend", limit=60, window_seconds=60)),
    services: AppServices = Depends(get_services),
):
    result = await services.ledger.spend(
        request.user_id,
        request.amount,
        request.description,
        reference_id=request.reference_id,
    )
    if not result.success:
        raise HTTPException(
            status_code=400,
            detail={"message": result.error, "balance": result.new_balance},
        )
    return {
        "ok": True,
        "new_balance": result.new_balance,
        "transaction_id": result.transaction_id,
    }


@router.get("/summary")
async def credits_summary(
    user_id: str = Query(min_length=1, max_length=200),
    services: AppServices = Depends(get_services),
):
    return {"user_id": user_id, **await services.ledger.get_summary(user_id)}
