"""Turn recorded Square webhook events into ledger credits and redemption confirmations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.models.ledger import LedgerEntry, LedgerEntryKind
from loyalty_api.models.merchant import MerchantLocation, POSProviderEnum, ProviderCustomerLink
from loyalty_api.models.webhook_event import WebhookEvent, WebhookEventStatus, finalize_webhook_event
from loyalty_api.observability.loyalty import get_loyalty_store
from loyalty_api.schemas.reward_config import ItemPointsParams, ItemRewardConfig, PointsPerDollarParams
from loyalty_api.services.loyalty.catalog import EarnProgram, RewardCatalog
from loyalty_api.services.loyalty.errors import InvalidRewardConfigurationError
from loyalty_api.services.loyalty.item_progress import ItemProgressTracker
from loyalty_api.services.loyalty.ledger import PointsLedger
from loyalty_api.services.loyalty.points import compute_item_points, compute_points
from loyalty_api.services.loyalty.redemptions import RedemptionStateMachine
from loyalty_api.services.webhooks.square import (
    SquarePayment,
    SquareRefund,
    event_type as read_event_type,
    extract_payment,
    extract_refund,
)


SOURCE = "square_webhook"


def payment_external_ref(payment_id: str) -> str:
    return f"square:payment:{payment_id}"


def refund_external_ref(refund_id: str) -> str:
    return f"square:refund:{refund_id}"


@dataclass(slots=True)
class ProcessingOutcome:
    """What processing decided for one event; converted into its terminal status."""

    event_id: UUID
    status: WebhookEventStatus
    reason: str | None = None
    merchant_id: UUID | None = None
    points: int = 0
    ledger_entry_id: UUID | None = None
    confirmed_redemption_id: UUID | None = None
    changed: bool = True

    @classmethod
    def processed(cls, event_id: UUID, reason: str | None = None, **kwargs: Any) -> "ProcessingOutcome":
        return cls(event_id=event_id, status=WebhookEventStatus.PROCESSED, reason=reason, **kwargs)

    @classmethod
    def failed(cls, event_id: UUID, reason: str, **kwargs: Any) -> "ProcessingOutcome":
        return cls(event_id=event_id, status=WebhookEventStatus.FAILED, reason=reason, **kwargs)

    @property
    def error_message(self) -> str | None:
        return self.reason if self.status is WebhookEventStatus.FAILED else None


class WebhookEventProcessor:
    """Processes a recorded webhook event exactly once from a business standpoint.

    ``process_event`` never raises: every failure becomes a FAILED event with its
    message. The ledger credit is committed before auto-confirmation starts, and
    auto-confirmation runs in its own transaction so its failure cannot undo the
    credit. Events already PROCESSED or FAILED are left untouched.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]],
        *,
        state_machine_factory: Callable[[AsyncSession], RedemptionStateMachine] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._state_machine_factory = state_machine_factory or RedemptionStateMachine
        self._store = get_loyalty_store()

    async def process_event(self, event_id: UUID) -> ProcessingOutcome:
        session = await self._ensure_session()
        async with session as db:
            try:
                event = await db.get(WebhookEvent, event_id)
                if event is None:
                    logger.warning("Webhook event not found", event_id=str(event_id))
                    return ProcessingOutcome.failed(event_id, "event_not_found", changed=False)
                if event.status != WebhookEventStatus.RECEIVED:
                    return ProcessingOutcome(
                        event_id=event_id,
                        status=event.status,
                        reason="already_terminal",
                        merchant_id=event.merchant_id,
                        changed=False,
                    )
                outcome = await self._dispatch(db, event_id, event.event_type, event.payload_json)
            except Exception as exc:  # noqa: BLE001 - converted into a FAILED event
                logger.exception("Webhook event processing failed", event_id=str(event_id), error=str(exc))
                await db.rollback()
                outcome = ProcessingOutcome.failed(event_id, str(exc) or exc.__class__.__name__)

            return await self._finalize(db, outcome)

    async def _dispatch(
        self,
        db: AsyncSession,
        event_id: UUID,
        stored_event_type: str | None,
        payload: Any,
    ) -> ProcessingOutcome:
        if not isinstance(payload, dict):
            return ProcessingOutcome.failed(event_id, "Invalid payload format")

        kind = read_event_type(payload) or stored_event_type or ""
        if kind.startswith("payment."):
            payment = extract_payment(payload)
            if payment is None:
                return ProcessingOutcome.failed(event_id, "Payment data not found in payload")
            return await self._handle_payment(db, event_id, payment)
        if kind.startswith("refund."):
            refund = extract_refund(payload)
            if refund is None:
                return ProcessingOutcome.failed(event_id, "Refund data not found in payload")
            return await self._handle_refund(db, event_id, refund)
        return ProcessingOutcome.processed(event_id, "ignored_event_type")

    async def _handle_payment(self, db: AsyncSession, event_id: UUID, payment: SquarePayment) -> ProcessingOutcome:
        if not payment.completed:
            return ProcessingOutcome.processed(event_id, "payment_not_completed")
        if not payment.location_id:
            return ProcessingOutcome.failed(event_id, "payment_missing_location_id")

        merchant_id = await self._resolve_merchant(db, payment.location_id)
        if merchant_id is None:
            return ProcessingOutcome.failed(event_id, "business_not_found")
        if not payment.id:
            return ProcessingOutcome.failed(event_id, "payment_missing_id", merchant_id=merchant_id)

        if not payment.customer_id:
            return ProcessingOutcome.processed(event_id, "no_customer", merchant_id=merchant_id)
        customer_id = await self._resolve_customer(db, merchant_id, payment.customer_id)
        if customer_id is None:
            return ProcessingOutcome.processed(event_id, "customer_not_linked", merchant_id=merchant_id)

        catalog = RewardCatalog(db)
        if not await catalog.enabled_programs(merchant_id):
            return ProcessingOutcome.failed(event_id, "reward_program_not_found", merchant_id=merchant_id)
        try:
            programs = await catalog.earn_programs(merchant_id)
        except InvalidRewardConfigurationError as exc:
            return ProcessingOutcome.failed(event_id, f"invalid_reward_program: {exc}", merchant_id=merchant_id)

        points_per_dollar = [p.params for p in programs if isinstance(p.params, PointsPerDollarParams)]
        if points_per_dollar and payment.amount_cents is None:
            return ProcessingOutcome.failed(event_id, "payment_amount_missing", merchant_id=merchant_id)

        eligible, points = self._earned_points(programs, payment)
        if not eligible:
            return ProcessingOutcome.processed(event_id, "not_eligible", merchant_id=merchant_id)

        reason: str | None = "no_points_earned"
        created = False
        entry_id: UUID | None = None
        if points > 0:
            recorded = await PointsLedger(db).append(
                LedgerEntryKind.EARN,
                customer_id,
                merchant_id,
                points,
                external_ref=payment_external_ref(payment.id),
                provider_payment_id=payment.id,
                metadata={
                    "source": SOURCE,
                    "external": {"paymentId": payment.id, "orderId": payment.order_id},
                },
            )
            # Plain values only past this point; a rollback below expires ORM rows.
            created = recorded.created
            entry_id = recorded.entry.id
            reason = None if created else "already_credited"
            await db.commit()

        # Item progress rides on the first credit for a payment so repeated
        # payment.updated deliveries do not count the same items twice.
        if created:
            await self._track_item_progress(db, customer_id, merchant_id, payment)

        confirmed_id = await self._auto_confirm(db, customer_id, merchant_id, payment.id, payment.order_id)
        return ProcessingOutcome.processed(
            event_id,
            reason,
            merchant_id=merchant_id,
            points=points if created else 0,
            ledger_entry_id=entry_id,
            confirmed_redemption_id=confirmed_id,
        )

    async def _handle_refund(self, db: AsyncSession, event_id: UUID, refund: SquareRefund) -> ProcessingOutcome:
        if not refund.completed:
            return ProcessingOutcome.processed(event_id, "refund_not_completed")
        if not refund.location_id:
            return ProcessingOutcome.failed(event_id, "refund_missing_location_id")

        merchant_id = await self._resolve_merchant(db, refund.location_id)
        if merchant_id is None:
            return ProcessingOutcome.failed(event_id, "business_not_found")
        if not refund.id or not refund.payment_id:
            return ProcessingOutcome.failed(event_id, "refund_missing_payment_id", merchant_id=merchant_id)

        earn = await self._find_earn(db, merchant_id, refund.payment_id)
        if earn is None:
            return ProcessingOutcome.processed(event_id, "no_earn_for_payment", merchant_id=merchant_id)

        catalog = RewardCatalog(db)
        try:
            programs = await catalog.earn_programs(merchant_id)
        except InvalidRewardConfigurationError as exc:
            return ProcessingOutcome.failed(event_id, f"invalid_reward_program: {exc}", merchant_id=merchant_id)
        rule = next((p.params for p in programs if isinstance(p.params, PointsPerDollarParams)), None)
        if rule is None:
            return ProcessingOutcome.failed(event_id, "reward_program_not_found", merchant_id=merchant_id)
        if refund.amount_cents is None:
            return ProcessingOutcome.failed(event_id, "refund_amount_missing", merchant_id=merchant_id)

        owed = min(
            compute_points(
                amount_cents=refund.amount_cents,
                points_per_dollar=rule.points_per_dollar,
                rounding=rule.rounding,
            ).points,
            earn.points,
        )
        ledger = PointsLedger(db)
        await ledger.projector.lock(earn.customer_id, merchant_id)
        balance = await ledger.get_balance(earn.customer_id, merchant_id)
        clawback = min(owed, max(balance, 0))
        if clawback < owed:
            logger.warning(
                "Refund claw-back limited by balance",
                refund_id=refund.id,
                owed=owed,
                clawed_back=clawback,
                shortfall=owed - clawback,
            )
        if clawback <= 0:
            return ProcessingOutcome.processed(event_id, "nothing_to_claw_back", merchant_id=merchant_id)

        recorded = await ledger.append(
            LedgerEntryKind.REFUND,
            earn.customer_id,
            merchant_id,
            clawback,
            external_ref=refund_external_ref(refund.id),
            provider_payment_id=refund.payment_id,
            metadata={
                "source": SOURCE,
                "external": {"refundId": refund.id, "paymentId": refund.payment_id},
                "owed": owed,
            },
        )
        await db.commit()
        return ProcessingOutcome.processed(
            event_id,
            merchant_id=merchant_id,
            points=-clawback if recorded.created else 0,
            ledger_entry_id=recorded.entry.id,
        )

    async def _auto_confirm(
        self,
        db: AsyncSession,
        customer_id: UUID,
        merchant_id: UUID,
        payment_id: str,
        order_id: str | None,
    ) -> UUID | None:
        """Confirm the oldest locked redemption for the pair against this payment.

        Failures are logged and rolled back; the committed credit stays.
        """

        state_machine = self._state_machine_factory(db)
        try:
            existing = await state_machine.find_confirmed_for_payment(merchant_id, payment_id)
            if existing is not None:
                self._store.record_auto_confirm("already_confirmed")
                return existing.id

            candidates = await state_machine.auto_confirm_candidates(customer_id, merchant_id)
            if not candidates:
                self._store.record_auto_confirm("no_candidate")
                return None

            target = candidates[0]
            confirmed = await state_machine.confirm(
                target.id,
                provider_payment_id=payment_id,
                provider_order_id=order_id,
            )
            await db.commit()
        except Exception as exc:  # noqa: BLE001 - auto-confirm is best effort
            await db.rollback()
            self._store.record_auto_confirm("failed")
            logger.warning(
                "Auto-confirm failed",
                customer_id=str(customer_id),
                merchant_id=str(merchant_id),
                payment_id=payment_id,
                error=str(exc),
            )
            return None

        self._store.record_auto_confirm("confirmed")
        logger.info(
            "Auto-confirmed redemption",
            redemption_id=str(confirmed.id),
            payment_id=payment_id,
            candidates=len(candidates),
        )
        return confirmed.id

    async def _track_item_progress(
        self,
        db: AsyncSession,
        customer_id: UUID,
        merchant_id: UUID,
        payment: SquarePayment,
    ) -> None:
        if not payment.line_items:
            return
        try:
            rewards = await RewardCatalog(db).list_item_rewards(merchant_id)
            tracker = ItemProgressTracker(db)
            for catalog_reward in rewards:
                config = catalog_reward.config
                assert isinstance(config, ItemRewardConfig)
                quantity = sum(
                    item.quantity for item in payment.line_items if _matches_item_reward(item, config)
                )
                if quantity > 0:
                    total = await tracker.increment(customer_id, merchant_id, catalog_reward.reward.id, quantity)
                    logger.info(
                        "Updated item progress",
                        reward_id=str(catalog_reward.reward.id),
                        customer_id=str(customer_id),
                        added=quantity,
                        total=total,
                    )
            await db.commit()
        except Exception as exc:  # noqa: BLE001 - item progress never fails the event
            await db.rollback()
            logger.error(
                "Failed to track item progress",
                customer_id=str(customer_id),
                merchant_id=str(merchant_id),
                error=str(exc),
            )

    @staticmethod
    def _earned_points(programs: list[EarnProgram], payment: SquarePayment) -> tuple[bool, int]:
        """Return whether any program accepts the payment and the summed points."""

        eligible = False
        total = 0
        line_items = [item.as_dict() for item in payment.line_items]
        for program in programs:
            params = program.params
            if isinstance(params, PointsPerDollarParams):
                result = compute_points(
                    amount_cents=payment.amount_cents or 0,
                    points_per_dollar=params.points_per_dollar,
                    min_subtotal_cents=params.min_subtotal_cents,
                    rounding=params.rounding,
                )
            elif isinstance(params, ItemPointsParams):
                result = compute_item_points(line_items, params)
            else:
                continue
            if result.eligible:
                eligible = True
                total += result.points
        return eligible, total

    async def _finalize(self, db: AsyncSession, outcome: ProcessingOutcome) -> ProcessingOutcome:
        if not outcome.changed:
            return outcome
        try:
            updated = await finalize_webhook_event(
                db,
                event_id=outcome.event_id,
                status=outcome.status,
                error_message=outcome.error_message,
                merchant_id=outcome.merchant_id,
            )
            await db.commit()
        except Exception as exc:  # noqa: BLE001 - the event stays RECEIVED for the drain worker
            await db.rollback()
            logger.exception("Failed to finalize webhook event", event_id=str(outcome.event_id), error=str(exc))
            return outcome

        if not updated:
            outcome.changed = False
            return outcome

        self._store.record_webhook_outcome(outcome.status.value, outcome.reason)
        log = logger.info if outcome.status is WebhookEventStatus.PROCESSED else logger.warning
        log(
            "Webhook event finalized",
            event_id=str(outcome.event_id),
            status=outcome.status.value,
            reason=outcome.reason,
            points=outcome.points,
        )
        return outcome

    @staticmethod
    async def _resolve_merchant(db: AsyncSession, location_id: str) -> UUID | None:
        stmt = select(MerchantLocation.merchant_id).where(
            MerchantLocation.provider == POSProviderEnum.SQUARE,
            MerchantLocation.provider_location_id == location_id,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def _resolve_customer(db: AsyncSession, merchant_id: UUID, provider_customer_id: str) -> UUID | None:
        stmt = select(ProviderCustomerLink.customer_id).where(
            ProviderCustomerLink.merchant_id == merchant_id,
            ProviderCustomerLink.provider == POSProviderEnum.SQUARE,
            ProviderCustomerLink.provider_customer_id == provider_customer_id,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def _find_earn(db: AsyncSession, merchant_id: UUID, payment_id: str) -> LedgerEntry | None:
        stmt = select(LedgerEntry).where(
            LedgerEntry.merchant_id == merchant_id,
            LedgerEntry.kind == LedgerEntryKind.EARN,
            LedgerEntry.external_ref == payment_external_ref(payment_id),
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


def _matches_item_reward(item: Any, config: ItemRewardConfig) -> bool:
    if config.catalog_object_id and item.catalog_object_id == config.catalog_object_id:
        return True
    return config.item_name.lower() in item.name.lower()


__all__ = ["ProcessingOutcome", "WebhookEventProcessor", "payment_external_ref", "refund_external_ref"]
