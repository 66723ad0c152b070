"""Redemption token lifecycle: issue, verify-and-lock, confirm, cancel, expire."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.clock import ensure_aware, utcnow
from loyalty_api.core.settings import settings
from loyalty_api.models.redemption import Redemption, RedemptionCancelReason, RedemptionStatus
from loyalty_api.observability.loyalty import get_loyalty_store
from loyalty_api.schemas.reward_config import ItemRewardConfig
from loyalty_api.services.loyalty.catalog import CatalogReward, RewardCatalog
from loyalty_api.services.loyalty.errors import (
    CodeGenerationExhaustedError,
    InsufficientPointsError,
    LoyaltyAuthorizationError,
    LoyaltyNotFoundError,
    LoyaltyStateConflictError,
    RedemptionExpiredError,
)
from loyalty_api.services.loyalty.item_progress import ItemProgressTracker
from loyalty_api.services.loyalty.ledger import PointsLedger


TOKEN_PREFIX = "qr_"


def generate_token() -> str:
    # 24 random bytes encode to exactly 32 url-safe characters.
    return TOKEN_PREFIX + secrets.token_urlsafe(24)


def generate_pin() -> str:
    return str(secrets.randbelow(900_000) + 100_000)


def redemption_external_ref(redemption_id: UUID) -> str:
    return f"redemption:{redemption_id}"


class RedemptionStateMachine:
    """Owns every redemption status transition.

    Transitions that race (verify, confirm, cancel) are compare-and-set UPDATEs
    guarded on the expected current status; the affected row count picks the
    winner. Methods flush but never commit.
    """

    _TERMINAL_REFUSALS = {RedemptionStatus.CANCELED, RedemptionStatus.EXPIRED}

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: PointsLedger | None = None,
        catalog: RewardCatalog | None = None,
        item_progress: ItemProgressTracker | None = None,
        ttl: timedelta | None = None,
        max_code_attempts: int | None = None,
        token_factory: Callable[[], str] = generate_token,
        pin_factory: Callable[[], str] = generate_pin,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or PointsLedger(db_session)
        self._catalog = catalog or RewardCatalog(db_session)
        self._item_progress = item_progress or ItemProgressTracker(db_session)
        self._ttl = ttl or timedelta(seconds=settings.redemption_ttl_seconds)
        self._max_code_attempts = max_code_attempts or settings.redemption_code_max_attempts
        self._token_factory = token_factory
        self._pin_factory = pin_factory
        self._clock = clock
        self._store = get_loyalty_store()

    async def create_redemption(self, customer_id: UUID, merchant_id: UUID, reward_id: UUID) -> Redemption:
        """Issue a PENDING redemption, superseding any other PENDING one for the pair."""

        catalog_reward = await self._catalog.require_active_reward(reward_id, merchant_id)
        await self._ensure_covered(customer_id, merchant_id, catalog_reward)

        now = self._clock()
        superseded = await self._db.execute(
            update(Redemption)
            .where(
                Redemption.customer_id == customer_id,
                Redemption.merchant_id == merchant_id,
                Redemption.status == RedemptionStatus.PENDING,
            )
            .values(
                status=RedemptionStatus.CANCELED,
                canceled_at=now,
                cancel_reason=RedemptionCancelReason.SUPERSEDED,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        token = await self._unique_code(Redemption.token, self._token_factory)
        pin_code = await self._unique_code(Redemption.pin_code, self._pin_factory)

        redemption = Redemption(
            id=uuid4(),
            customer_id=customer_id,
            merchant_id=merchant_id,
            reward_id=reward_id,
            status=RedemptionStatus.PENDING,
            token=token,
            pin_code=pin_code,
            expires_at=now + self._ttl,
            created_at=now,
            updated_at=now,
        )
        self._db.add(redemption)
        try:
            await self._db.flush()
        except IntegrityError as exc:
            await self._db.rollback()
            raise LoyaltyStateConflictError(
                "A concurrent redemption request won; retry", code="redemption_conflict"
            ) from exc

        self._store.record_redemption_transition("superseded", superseded.rowcount or 0)
        self._store.record_redemption_transition("created")
        logger.info(
            "Created redemption",
            redemption_id=str(redemption.id),
            customer_id=str(customer_id),
            merchant_id=str(merchant_id),
            reward_id=str(reward_id),
            superseded=superseded.rowcount or 0,
        )
        return redemption

    async def verify_and_lock(self, merchant_id: UUID, code: str) -> Redemption:
        """Resolve a token or PIN at the merchant terminal and lock it for confirmation."""

        code = (code or "").strip()
        stmt = (
            select(Redemption)
            .where(or_(Redemption.token == code, Redemption.pin_code == code))
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        redemption = result.scalar_one_or_none()
        if redemption is None:
            raise LoyaltyNotFoundError("Invalid redemption code", code="redemption_not_found")
        if redemption.merchant_id != merchant_id:
            raise LoyaltyAuthorizationError("Redemption does not belong to this merchant", code="wrong_merchant")
        if redemption.status != RedemptionStatus.PENDING:
            raise LoyaltyStateConflictError(
                f"Redemption is not pending. Current status: {redemption.status.value}"
            )
        now = self._clock()
        if now >= ensure_aware(redemption.expires_at):
            raise RedemptionExpiredError("Redemption code has expired")

        locked = await self._db.execute(
            update(Redemption)
            .where(Redemption.id == redemption.id, Redemption.status == RedemptionStatus.PENDING)
            .values(status=RedemptionStatus.IN_PROGRESS, locked_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if not locked.rowcount:
            raise LoyaltyStateConflictError("Redemption was already used", code="redemption_already_used")

        self._store.record_redemption_transition("locked")
        logger.info("Locked redemption", redemption_id=str(redemption.id), merchant_id=str(merchant_id))
        return await self._reload(redemption.id)

    async def confirm(
        self,
        redemption_id: UUID,
        *,
        provider_payment_id: str | None = None,
        provider_order_id: str | None = None,
    ) -> Redemption:
        """Confirm a locked redemption and debit the ledger exactly once.

        The status change, the REDEEM entry and the projection refresh share the
        caller's transaction.
        """

        redemption = await self.get_redemption(redemption_id)
        if redemption.status == RedemptionStatus.CONFIRMED:
            return redemption
        if redemption.status in self._TERMINAL_REFUSALS:
            raise LoyaltyStateConflictError(
                f"Cannot confirm a {redemption.status.value} redemption"
            )
        if redemption.status != RedemptionStatus.IN_PROGRESS:
            raise LoyaltyStateConflictError(
                f"Redemption must be in_progress to confirm. Current status: {redemption.status.value}"
            )
        now = self._clock()
        if now >= ensure_aware(redemption.expires_at):
            raise RedemptionExpiredError("Redemption has expired")

        catalog_reward = await self._catalog.get_reward(redemption.reward_id)
        customer_id = redemption.customer_id
        merchant_id = redemption.merchant_id

        await self._ledger.projector.lock(customer_id, merchant_id)
        await self._ensure_covered(customer_id, merchant_id, catalog_reward, lock=True)

        if provider_payment_id is not None:
            await self._ensure_payment_unlinked(merchant_id, provider_payment_id, redemption_id)

        points = catalog_reward.cost_points
        try:
            confirmed = await self._db.execute(
                update(Redemption)
                .where(Redemption.id == redemption_id, Redemption.status == RedemptionStatus.IN_PROGRESS)
                .values(
                    status=RedemptionStatus.CONFIRMED,
                    confirmed_at=now,
                    provider_payment_id=provider_payment_id,
                    provider_order_id=provider_order_id,
                    points_deducted=points,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        except IntegrityError as exc:
            # A concurrent confirm linked the same payment first.
            await self._db.rollback()
            raise LoyaltyStateConflictError(
                "Payment is already linked to another redemption", code="payment_already_linked"
            ) from exc
        if not confirmed.rowcount:
            current = await self._reload(redemption_id)
            if current.status == RedemptionStatus.CONFIRMED:
                return current
            raise LoyaltyStateConflictError(
                f"Redemption changed state during confirmation: {current.status.value}"
            )

        if catalog_reward.is_item_based:
            config = catalog_reward.config
            assert isinstance(config, ItemRewardConfig)
            await self._item_progress.consume(customer_id, redemption.reward_id, config.item_count)
        else:
            await self._ledger.record_redeem(
                customer_id,
                merchant_id,
                points,
                external_ref=redemption_external_ref(redemption_id),
                redemption_id=redemption_id,
                provider_payment_id=provider_payment_id,
                metadata={
                    "source": "auto_confirm" if provider_payment_id else "manual",
                    "redemptionId": str(redemption_id),
                    "external": {"paymentId": provider_payment_id, "orderId": provider_order_id},
                },
            )

        self._store.record_redemption_transition("confirmed")
        logger.info(
            "Confirmed redemption",
            redemption_id=str(redemption_id),
            points_deducted=points,
            provider_payment_id=provider_payment_id,
        )
        return await self._reload(redemption_id)

    async def cancel(self, redemption_id: UUID, requester_customer_id: UUID) -> Redemption:
        redemption = await self.get_redemption(redemption_id)
        if redemption.customer_id != requester_customer_id:
            raise LoyaltyAuthorizationError("Only the owning customer can cancel a redemption")
        if redemption.status != RedemptionStatus.PENDING:
            raise LoyaltyStateConflictError(
                f"Only pending redemptions can be canceled. Current status: {redemption.status.value}"
            )

        now = self._clock()
        canceled = await self._db.execute(
            update(Redemption)
            .where(Redemption.id == redemption_id, Redemption.status == RedemptionStatus.PENDING)
            .values(
                status=RedemptionStatus.CANCELED,
                canceled_at=now,
                cancel_reason=RedemptionCancelReason.CUSTOMER,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if not canceled.rowcount:
            raise LoyaltyStateConflictError("Redemption is no longer pending")

        self._store.record_redemption_transition("canceled")
        logger.info("Canceled redemption", redemption_id=str(redemption_id))
        return await self._reload(redemption_id)

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Cancel every PENDING or IN_PROGRESS redemption past its expiry. Ledger untouched."""

        now = now or self._clock()
        result = await self._db.execute(
            update(Redemption)
            .where(
                Redemption.status.in_((RedemptionStatus.PENDING, RedemptionStatus.IN_PROGRESS)),
                Redemption.expires_at < now,
            )
            .values(
                status=RedemptionStatus.CANCELED,
                canceled_at=now,
                cancel_reason=RedemptionCancelReason.EXPIRED,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        if count:
            self._store.record_redemption_transition("expired", count)
            logger.info("Expired stale redemptions", count=count)
        return count

    async def get_redemption(self, redemption_id: UUID) -> Redemption:
        redemption = await self._db.get(Redemption, redemption_id, populate_existing=True)
        if redemption is None:
            raise LoyaltyNotFoundError("Redemption not found", code="redemption_not_found")
        return redemption

    async def list_customer_redemptions(
        self,
        customer_id: UUID,
        merchant_id: UUID,
        *,
        statuses: Sequence[RedemptionStatus] | None = None,
        limit: int = 50,
    ) -> list[Redemption]:
        stmt = select(Redemption).where(
            Redemption.customer_id == customer_id,
            Redemption.merchant_id == merchant_id,
        )
        if statuses:
            stmt = stmt.where(Redemption.status.in_(tuple(statuses)))
        stmt = stmt.order_by(Redemption.created_at.desc(), Redemption.id.desc()).limit(limit)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def find_confirmed_for_payment(self, merchant_id: UUID, provider_payment_id: str) -> Redemption | None:
        stmt = select(Redemption).where(
            Redemption.merchant_id == merchant_id,
            Redemption.provider_payment_id == provider_payment_id,
            Redemption.status == RedemptionStatus.CONFIRMED,
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def auto_confirm_candidates(self, customer_id: UUID, merchant_id: UUID) -> list[Redemption]:
        """Locked, unexpired, unlinked redemptions for the pair, oldest first (ties by id)."""

        stmt = (
            select(Redemption)
            .where(
                Redemption.customer_id == customer_id,
                Redemption.merchant_id == merchant_id,
                Redemption.status == RedemptionStatus.IN_PROGRESS,
                Redemption.expires_at > self._clock(),
                Redemption.provider_payment_id.is_(None),
            )
            .order_by(Redemption.created_at.asc(), Redemption.id.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def _ensure_covered(
        self,
        customer_id: UUID,
        merchant_id: UUID,
        catalog_reward: CatalogReward,
        *,
        lock: bool = False,
    ) -> None:
        config = catalog_reward.config
        if isinstance(config, ItemRewardConfig):
            reward_id = catalog_reward.reward.id
            if lock:
                progress = (await self._item_progress.lock(customer_id, merchant_id, reward_id)).item_count
            else:
                progress = await self._item_progress.get_count(customer_id, reward_id)
            if progress < config.item_count:
                raise InsufficientPointsError(required=config.item_count, available=progress, unit="items")
            return

        balance = await self._ledger.get_balance(customer_id, merchant_id)
        if balance < config.cost_points:
            raise InsufficientPointsError(required=config.cost_points, available=balance)

    async def _ensure_payment_unlinked(self, merchant_id: UUID, provider_payment_id: str, redemption_id: UUID) -> None:
        existing = await self.find_confirmed_for_payment(merchant_id, provider_payment_id)
        if existing is not None and existing.id != redemption_id:
            raise LoyaltyStateConflictError(
                "Payment is already linked to another redemption", code="payment_already_linked"
            )

    async def _unique_code(self, column, factory: Callable[[], str]) -> str:
        for _ in range(self._max_code_attempts):
            candidate = factory()
            result = await self._db.execute(select(Redemption.id).where(column == candidate).limit(1))
            if result.scalar_one_or_none() is None:
                return candidate
        raise CodeGenerationExhaustedError(
            f"Could not generate a unique {column.key} after {self._max_code_attempts} attempts"
        )

    async def _reload(self, redemption_id: UUID) -> Redemption:
        stmt = select(Redemption).where(Redemption.id == redemption_id).execution_options(populate_existing=True)
        result = await self._db.execute(stmt)
        return result.scalar_one()


__all__ = [
    "RedemptionStateMachine",
    "generate_pin",
    "generate_token",
    "redemption_external_ref",
]
