"""Invite code router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from routers.rate_limit import rate_limit
from services.runtime import AppServices, get_services

router = APIRouter()


class RedeemRequest(BaseModel):
    invitee_id: str = Field(min_length=1, max_length=200)
    code: Optional[str] = Field(default=None, max_length=32)
    referrer_id: Optional[str] = Field(default=None, max_length=200)


@router.get("")
async def get_invite(
    user_id: str = Query(min_length=1, max_length=200),
    services: AppServices = Depends(get_services),
):
    return await services.invites.get_stats(user_id)


@router.post("/redeem")
async def redeem_invite(
    request: RedeemRequest,
    _rate_limit: None = Depends(rate_limit("invite_redeem", limit=20, window_seconds=3600)),
    services: AppServices = Depends(get_services),
):
    if request.code:
        result = await services.invites.redeem(request.code, request.invitee_id)
    elif request.referrer_id:
        result = await services.ledger.grant_invite_reward(request.referrer_id, request.invitee_id)
    else:
        raise HTTPException(status_code=400, detail="code or referrer_id is required")

    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)

    available = await services.ledger.get_available(request.invitee_id)
    return {
        "ok": True,
        "bonus": services.ledger.invitee_bonus,
        "credits": available.as_dict(),
    }
