"""Customer and merchant-terminal redemption endpoints."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.api.dependencies.security import require_merchant
from loyalty_api.api.dependencies.session import require_customer_session
from loyalty_api.api.errors import to_http_exception
from loyalty_api.db.session import get_session
from loyalty_api.models.merchant import Customer, Merchant
from loyalty_api.schemas.loyalty import (
    IssuedRedemptionResponse,
    RedemptionConfirmRequest,
    RedemptionCreateRequest,
    RedemptionResponse,
    RedemptionVerifyRequest,
)
from loyalty_api.services.loyalty.errors import LoyaltyAuthorizationError, LoyaltyError
from loyalty_api.services.loyalty.redemptions import RedemptionStateMachine

router = APIRouter(prefix="/redemptions", tags=["redemptions"])


@router.post("", response_model=IssuedRedemptionResponse, status_code=status.HTTP_201_CREATED)
async def create_redemption(
    payload: RedemptionCreateRequest,
    customer: Customer = Depends(require_customer_session),
    db: AsyncSession = Depends(get_session),
) -> IssuedRedemptionResponse:
    machine = RedemptionStateMachine(db)
    try:
        redemption = await machine.create_redemption(customer.id, payload.merchant_id, payload.reward_id)
        await db.commit()
    except LoyaltyError as exc:
        await db.rollback()
        raise to_http_exception(exc) from exc
    return IssuedRedemptionResponse.model_validate(redemption)


@router.get("", response_model=list[RedemptionResponse])
async def list_redemptions(
    merchant_id: UUID = Query(..., alias="merchantId"),
    limit: int = Query(50, ge=1, le=200),
    customer: Customer = Depends(require_customer_session),
    db: AsyncSession = Depends(get_session),
) -> list[RedemptionResponse]:
    redemptions = await RedemptionStateMachine(db).list_customer_redemptions(customer.id, merchant_id, limit=limit)
    return [RedemptionResponse.model_validate(item) for item in redemptions]


@router.post("/verify", response_model=RedemptionResponse)
async def verify_redemption(
    payload: RedemptionVerifyRequest,
    merchant: Merchant = Depends(require_merchant),
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    machine = RedemptionStateMachine(db)
    try:
        redemption = await machine.verify_and_lock(merchant.id, payload.code)
        await db.commit()
    except LoyaltyError as exc:
        await db.rollback()
        raise to_http_exception(exc) from exc
    return RedemptionResponse.model_validate(redemption)


@router.post("/{redemption_id}/confirm", response_model=RedemptionResponse)
async def confirm_redemption(
    redemption_id: UUID,
    payload: RedemptionConfirmRequest | None = Body(None),
    merchant: Merchant = Depends(require_merchant),
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    payload = payload or RedemptionConfirmRequest()
    machine = RedemptionStateMachine(db)
    try:
        existing = await machine.get_redemption(redemption_id)
        if existing.merchant_id != merchant.id:
            raise LoyaltyAuthorizationError("Redemption does not belong to this merchant", code="wrong_merchant")
        redemption = await machine.confirm(
            redemption_id,
            provider_payment_id=payload.provider_payment_id,
            provider_order_id=payload.provider_order_id,
        )
        await db.commit()
    except LoyaltyError as exc:
        await db.rollback()
        raise to_http_exception(exc) from exc
    return RedemptionResponse.model_validate(redemption)


@router.post("/{redemption_id}/cancel", response_model=RedemptionResponse)
async def cancel_redemption(
    redemption_id: UUID,
    customer: Customer = Depends(require_customer_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    machine = RedemptionStateMachine(db)
    try:
        redemption = await machine.cancel(redemption_id, customer.id)
        await db.commit()
    except LoyaltyError as exc:
        await db.rollback()
        raise to_http_exception(exc) from exc
    return RedemptionResponse.model_validate(redemption)
