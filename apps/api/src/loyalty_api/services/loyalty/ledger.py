"""Append-only points ledger and the balance projection derived from it."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.clock import utcnow
from loyalty_api.db.idempotent import insert_or_ignore
from loyalty_api.models.ledger import CustomerBalance, LedgerEntry, LedgerEntryKind
from loyalty_api.observability.loyalty import get_loyalty_store
from loyalty_api.services.loyalty.errors import InsufficientPointsError


METADATA_VERSION = 1

_SIGN: dict[LedgerEntryKind, int] = {
    LedgerEntryKind.EARN: 1,
    LedgerEntryKind.REDEEM: -1,
    LedgerEntryKind.REFUND: -1,
}


@dataclass(slots=True)
class RecordedLedgerEntry:
    """Result container for ledger appends."""

    entry: LedgerEntry
    created: bool


class BalanceProjector:
    """Maintains the cached balance row; it is only ever recomputed from the ledger."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def sum_points(self, customer_id: UUID, merchant_id: UUID) -> int:
        stmt = select(func.coalesce(func.sum(LedgerEntry.points), 0)).where(
            LedgerEntry.customer_id == customer_id,
            LedgerEntry.merchant_id == merchant_id,
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one())

    async def get_cached(self, customer_id: UUID, merchant_id: UUID) -> CustomerBalance | None:
        stmt = (
            select(CustomerBalance)
            .where(
                CustomerBalance.customer_id == customer_id,
                CustomerBalance.merchant_id == merchant_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def lock(self, customer_id: UUID, merchant_id: UUID) -> CustomerBalance:
        """Row-lock the projection for the pair, creating it first when missing.

        Debits take this lock before re-reading the balance so concurrent debits
        for the same pair serialize on PostgreSQL.
        """

        await self._ensure_row(customer_id, merchant_id)
        stmt = (
            select(CustomerBalance)
            .where(
                CustomerBalance.customer_id == customer_id,
                CustomerBalance.merchant_id == merchant_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one()

    async def recompute(self, customer_id: UUID, merchant_id: UUID) -> CustomerBalance:
        """Set the projection to the ledger sum and return the refreshed row."""

        await self._ensure_row(customer_id, merchant_id)
        total = await self.sum_points(customer_id, merchant_id)
        await self._db.execute(
            update(CustomerBalance)
            .where(
                CustomerBalance.customer_id == customer_id,
                CustomerBalance.merchant_id == merchant_id,
            )
            .values(points=total, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        balance = await self.get_cached(customer_id, merchant_id)
        assert balance is not None
        return balance

    async def _ensure_row(self, customer_id: UUID, merchant_id: UUID) -> None:
        await insert_or_ignore(
            self._db,
            CustomerBalance,
            {
                "id": uuid4(),
                "customer_id": customer_id,
                "merchant_id": merchant_id,
                "points": 0,
                "updated_at": utcnow(),
            },
            conflict_columns=("customer_id", "merchant_id"),
        )


class PointsLedger:
    """Append-only store of signed point deltas per (customer, merchant).

    Writes carrying an ``external_ref`` are idempotent on
    (merchant_id, kind, external_ref): a replay returns the original entry.
    Entries are never updated or deleted; every fresh write recomputes the
    balance projection. Callers own the transaction and commit.
    """

    def __init__(self, db_session: AsyncSession, *, projector: BalanceProjector | None = None) -> None:
        self._db = db_session
        self._projector = projector or BalanceProjector(db_session)

    @property
    def projector(self) -> BalanceProjector:
        return self._projector

    async def record_earn(
        self,
        customer_id: UUID,
        merchant_id: UUID,
        points: int,
        *,
        external_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
        provider_payment_id: str | None = None,
    ) -> LedgerEntry:
        recorded = await self.append(
            LedgerEntryKind.EARN,
            customer_id,
            merchant_id,
            points,
            external_ref=external_ref,
            metadata=metadata,
            provider_payment_id=provider_payment_id,
        )
        return recorded.entry

    async def record_redeem(
        self,
        customer_id: UUID,
        merchant_id: UUID,
        points: int,
        *,
        external_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
        redemption_id: UUID | None = None,
        provider_payment_id: str | None = None,
    ) -> LedgerEntry:
        """Debit points; refuses when the balance does not cover them."""

        recorded = await self.append(
            LedgerEntryKind.REDEEM,
            customer_id,
            merchant_id,
            points,
            external_ref=external_ref,
            metadata=metadata,
            redemption_id=redemption_id,
            provider_payment_id=provider_payment_id,
        )
        return recorded.entry

    async def record_refund(
        self,
        customer_id: UUID,
        merchant_id: UUID,
        points: int,
        *,
        external_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
        provider_payment_id: str | None = None,
    ) -> LedgerEntry:
        """Claw points back; like a redeem it never takes the balance below zero."""

        recorded = await self.append(
            LedgerEntryKind.REFUND,
            customer_id,
            merchant_id,
            points,
            external_ref=external_ref,
            metadata=metadata,
            provider_payment_id=provider_payment_id,
        )
        return recorded.entry

    async def append(
        self,
        kind: LedgerEntryKind,
        customer_id: UUID,
        merchant_id: UUID,
        points: int,
        *,
        external_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
        redemption_id: UUID | None = None,
        provider_payment_id: str | None = None,
    ) -> RecordedLedgerEntry:
        """Append an entry of ``kind`` for a positive magnitude of ``points``."""

        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            raise ValueError("Ledger entries require a positive integer amount of points")

        if external_ref is not None:
            existing = await self._find_by_ref(merchant_id, kind, external_ref)
            if existing is not None:
                logger.debug(
                    "Ledger entry already recorded",
                    kind=kind.value,
                    external_ref=external_ref,
                    entry_id=str(existing.id),
                )
                return RecordedLedgerEntry(entry=existing, created=False)

        if _SIGN[kind] < 0:
            await self._projector.lock(customer_id, merchant_id)
            available = await self._projector.sum_points(customer_id, merchant_id)
            if available < points:
                raise InsufficientPointsError(required=points, available=available)

        values = {
            "id": uuid4(),
            "customer_id": customer_id,
            "merchant_id": merchant_id,
            "kind": kind,
            "points": _SIGN[kind] * points,
            "external_ref": external_ref,
            "redemption_id": redemption_id,
            "provider_payment_id": provider_payment_id,
            "metadata_json": _with_envelope(metadata),
            "created_at": utcnow(),
        }

        if external_ref is None:
            entry = LedgerEntry(**values)
            self._db.add(entry)
            await self._db.flush()
            created = True
        else:
            created = await insert_or_ignore(
                self._db,
                LedgerEntry,
                values,
                conflict_columns=("merchant_id", "kind", "external_ref"),
            )
            entry = await self._find_by_ref(merchant_id, kind, external_ref)
            assert entry is not None

        if created:
            await self._projector.recompute(customer_id, merchant_id)
            get_loyalty_store().record_ledger_write(kind.value)
            logger.info(
                "Recorded ledger entry",
                kind=kind.value,
                customer_id=str(customer_id),
                merchant_id=str(merchant_id),
                points=entry.points,
                external_ref=external_ref,
            )
        return RecordedLedgerEntry(entry=entry, created=created)

    async def get_balance(self, customer_id: UUID, merchant_id: UUID) -> int:
        return await self._projector.sum_points(customer_id, merchant_id)

    async def list_entries(
        self,
        customer_id: UUID,
        merchant_id: UUID,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LedgerEntry]:
        """Return ledger history newest first."""

        stmt = (
            select(LedgerEntry)
            .where(
                LedgerEntry.customer_id == customer_id,
                LedgerEntry.merchant_id == merchant_id,
            )
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def recalculate_balance(self, customer_id: UUID, merchant_id: UUID) -> CustomerBalance:
        balance = await self._projector.recompute(customer_id, merchant_id)
        logger.info(
            "Recalculated customer balance",
            customer_id=str(customer_id),
            merchant_id=str(merchant_id),
            points=balance.points,
        )
        return balance

    async def _find_by_ref(
        self, merchant_id: UUID, kind: LedgerEntryKind, external_ref: str
    ) -> LedgerEntry | None:
        stmt = select(LedgerEntry).where(
            LedgerEntry.merchant_id == merchant_id,
            LedgerEntry.kind == kind,
            LedgerEntry.external_ref == external_ref,
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()


def _with_envelope(metadata: dict[str, Any] | None) -> dict[str, Any]:
    payload = {"version": METADATA_VERSION, "source": "api"}
    payload.update(metadata or {})
    return payload


__all__ = ["BalanceProjector", "PointsLedger", "RecordedLedgerEntry"]
