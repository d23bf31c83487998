"""Billing and credit package router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from routers.rate_limit import rate_limit
from services.credits import CREDIT_PACKAGES
from services.runtime import AppServices, get_services

router = APIRouter()
logger = logging.getLogger(__name__)


class PurchaseRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=200)
    package_id: str = Field(min_length=1, max_length=50)
    billing_reference: Optional[str] = None


class CreditTopUpRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=200)
    credits: int = Field(ge=1, le=10000)
    billing_reference: Optional[str] = None


@router.get("/packages")
async def list_packages():
    return {
        "packages": [
            {
                "id": package.id,
                "name": package.name,
                "price_cents": package.price_cents,
                "credits": package.credits,
                "expires_in_days": package.expires_in_days,
                "purchasable": package.price_cents > 0,
            }
            for package in CREDIT_PACKAGES.values()
        ]
    }


@router.post("/purchase")
async def purchase_package(
    request: PurchaseRequest,
    _rate_limit: None = Depends(rate_limit("billing_purchase", limit=20, window_seconds=3600)),
    services: AppServices = Depends(get_services),
):
    result = await services.ledger.purchase_package(
        request.user_id,
        request.package_id,
        billing_reference=request.billing_reference,
    )
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)
    logger.info("User %s purchased package %s", request.user_id, request.package_id)
    return {
        "ok": True,
        "package_id": request.package_id,
        "credits_added": CREDIT_PACKAGES[request.package_id].credits,
        "balance_after": result.new_balance,
        "transaction_id": result.transaction_id,
    }


@router.post("/topup")
async def manual_topup(
    request: CreditTopUpRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    services: AppServices = Depends(get_services),
):
    billing_reference = request.billing_reference or f"manual:{request.credits}"
    result = await services.ledger.add_purchase(
        request.user_id,
        credits=request.credits,
        description="Manual top-up",
        billing_reference=billing_reference,
    )
    return {
        "ok": True,
        "credits_added": request.credits,
        "balance_after": result.new_balance,
    }
