"""Log-only reconciliation of Square payments against local ledger credits."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.clients.square import SquareAPIError, SquarePaymentsClient
from loyalty_api.core.clock import utcnow
from loyalty_api.core.settings import settings
from loyalty_api.models.ledger import LedgerEntry, LedgerEntryKind
from loyalty_api.models.merchant import MerchantLocation, POSProviderEnum, ProviderCustomerLink
from loyalty_api.services.webhooks.processor import payment_external_ref
from loyalty_api.services.webhooks.square import COMPLETED


@dataclass(slots=True)
class ReconciliationSummary:
    locations: int = 0
    payments_seen: int = 0
    credited: int = 0
    missing_credit: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return {
            "locations": self.locations,
            "paymentsSeen": self.payments_seen,
            "credited": self.credited,
            "missingCredit": list(self.missing_credit),
            "errors": dict(self.errors),
        }


class PaymentReconciliationJob:
    """Compares provider payments with ledger credits and reports gaps.

    Nothing is written: payments without a credit are logged for an operator to
    replay through the webhook pipeline.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]],
        *,
        client: SquarePaymentsClient | None = None,
        lookback: timedelta | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client = client if client is not None else SquarePaymentsClient.from_settings()
        self._lookback = lookback or timedelta(hours=settings.reconciliation_lookback_hours)

    async def run(self, *, now: datetime | None = None) -> ReconciliationSummary:
        summary = ReconciliationSummary()
        if self._client is None:
            logger.info("Square reconciliation skipped; no access token configured")
            return summary

        end_time = now or utcnow()
        begin_time = end_time - self._lookback

        session = await self._ensure_session()
        async with session as db:
            locations = await self._locations(db)
            summary.locations = len(locations)
            for location in locations:
                try:
                    payments = await self._client.list_payments(
                        location_id=location.provider_location_id,
                        begin_time=begin_time,
                        end_time=end_time,
                    )
                except SquareAPIError as exc:
                    summary.errors[location.provider_location_id] = str(exc)
                    logger.warning(
                        "Reconciliation listing failed",
                        location_id=location.provider_location_id,
                        error=str(exc),
                    )
                    continue

                for payment in payments:
                    if payment.get("status") != COMPLETED or not payment.get("id"):
                        continue
                    summary.payments_seen += 1
                    if not await self._is_linked(db, location, payment.get("customer_id")):
                        continue
                    if await self._has_credit(db, location, str(payment["id"])):
                        summary.credited += 1
                        continue
                    summary.missing_credit.append(str(payment["id"]))
                    logger.warning(
                        "Payment has no ledger credit",
                        payment_id=payment["id"],
                        merchant_id=str(location.merchant_id),
                        location_id=location.provider_location_id,
                    )
            await db.rollback()

        logger.info(
            "Square reconciliation completed",
            locations=summary.locations,
            payments_seen=summary.payments_seen,
            missing=len(summary.missing_credit),
        )
        return summary

    async def _locations(self, db: AsyncSession) -> list[MerchantLocation]:
        stmt = (
            select(MerchantLocation)
            .where(MerchantLocation.provider == POSProviderEnum.SQUARE)
            .order_by(MerchantLocation.created_at.asc(), MerchantLocation.id.asc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def _is_linked(db: AsyncSession, location: MerchantLocation, customer_id: str | None) -> bool:
        if not customer_id:
            return False
        stmt = select(ProviderCustomerLink.id).where(
            ProviderCustomerLink.merchant_id == location.merchant_id,
            ProviderCustomerLink.provider == POSProviderEnum.SQUARE,
            ProviderCustomerLink.provider_customer_id == customer_id,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def _has_credit(db: AsyncSession, location: MerchantLocation, payment_id: str) -> bool:
        stmt = select(LedgerEntry.id).where(
            LedgerEntry.merchant_id == location.merchant_id,
            LedgerEntry.kind == LedgerEntryKind.EARN,
            LedgerEntry.external_ref == payment_external_ref(payment_id),
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = ["PaymentReconciliationJob", "ReconciliationSummary"]
