"""Customer balance and ledger history endpoints."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.api.dependencies.session import require_customer_session
from loyalty_api.db.session import get_session
from loyalty_api.models.merchant import Customer
from loyalty_api.schemas.loyalty import BalanceResponse, LedgerEntryResponse, LedgerHistoryResponse
from loyalty_api.services.loyalty.ledger import PointsLedger

router = APIRouter(prefix="/balances", tags=["balances"])


@router.get("", response_model=BalanceResponse)
async def get_balance(
    merchant_id: UUID = Query(..., alias="merchantId"),
    customer: Customer = Depends(require_customer_session),
    db: AsyncSession = Depends(get_session),
) -> BalanceResponse:
    points = await PointsLedger(db).get_balance(customer.id, merchant_id)
    return BalanceResponse(customer_id=customer.id, merchant_id=merchant_id, points=points)


@router.get("/ledger", response_model=LedgerHistoryResponse)
async def get_ledger_history(
    merchant_id: UUID = Query(..., alias="merchantId"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    customer: Customer = Depends(require_customer_session),
    db: AsyncSession = Depends(get_session),
) -> LedgerHistoryResponse:
    ledger = PointsLedger(db)
    entries = await ledger.list_entries(customer.id, merchant_id, limit=limit, offset=offset)
    balance = await ledger.get_balance(customer.id, merchant_id)
    return LedgerHistoryResponse(
        balance=balance,
        entries=[LedgerEntryResponse.model_validate(entry) for entry in entries],
    )
