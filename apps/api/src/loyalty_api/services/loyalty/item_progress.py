"""Per-customer purchased item counters backing item-based rewards."""

from __future__ import annotations

from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.clock import utcnow
from loyalty_api.db.idempotent import insert_or_ignore
from loyalty_api.models.reward import CustomerItemProgress


class ItemProgressTracker:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_count(self, customer_id: UUID, reward_id: UUID) -> int:
        stmt = select(CustomerItemProgress.item_count).where(
            CustomerItemProgress.customer_id == customer_id,
            CustomerItemProgress.reward_id == reward_id,
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one_or_none() or 0)

    async def lock(self, customer_id: UUID, merchant_id: UUID, reward_id: UUID) -> CustomerItemProgress:
        await self._ensure_row(customer_id, merchant_id, reward_id)
        stmt = (
            select(CustomerItemProgress)
            .where(
                CustomerItemProgress.customer_id == customer_id,
                CustomerItemProgress.reward_id == reward_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one()

    async def increment(self, customer_id: UUID, merchant_id: UUID, reward_id: UUID, count: int) -> int:
        """Add ``count`` purchased items and return the new total."""

        await self._ensure_row(customer_id, merchant_id, reward_id)
        await self._apply_delta(customer_id, reward_id, count)
        return await self.get_count(customer_id, reward_id)

    async def consume(self, customer_id: UUID, reward_id: UUID, count: int) -> int:
        """Spend ``count`` items towards a confirmed reward and return what remains."""

        await self._apply_delta(customer_id, reward_id, -count)
        return await self.get_count(customer_id, reward_id)

    async def _apply_delta(self, customer_id: UUID, reward_id: UUID, delta: int) -> None:
        await self._db.execute(
            update(CustomerItemProgress)
            .where(
                CustomerItemProgress.customer_id == customer_id,
                CustomerItemProgress.reward_id == reward_id,
            )
            .values(item_count=CustomerItemProgress.item_count + delta, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def _ensure_row(self, customer_id: UUID, merchant_id: UUID, reward_id: UUID) -> None:
        await insert_or_ignore(
            self._db,
            CustomerItemProgress,
            {
                "id": uuid4(),
                "customer_id": customer_id,
                "merchant_id": merchant_id,
                "reward_id": reward_id,
                "item_count": 0,
                "updated_at": utcnow(),
            },
            conflict_columns=("customer_id", "reward_id"),
        )


__all__ = ["ItemProgressTracker"]
