from datetime import timedelta
from itertools import count

import pytest
from sqlalchemy import select

from loyalty_api.core.clock import utcnow
from loyalty_api.models.ledger import LedgerEntry, LedgerEntryKind
from loyalty_api.models.redemption import Redemption, RedemptionCancelReason, RedemptionStatus
from loyalty_api.models.reward import Reward, RewardTypeEnum
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
from loyalty_api.services.loyalty.redemptions import RedemptionStateMachine, generate_pin, generate_token

from seed import seed_shop


async def _funded_shop(session, points: int = 500, cost_points: int = 100):
    shop = await seed_shop(session, cost_points=cost_points)
    await PointsLedger(session).record_earn(shop.customer_id, shop.merchant_id, points, external_ref="seed")
    await session.commit()
    return shop


def test_generated_codes_have_expected_shape() -> None:
    token = generate_token()
    assert token.startswith("qr_")
    assert len(token) == 35
    pin = generate_pin()
    assert len(pin) == 6
    assert pin.isdigit()


@pytest.mark.asyncio
async def test_full_redemption_debits_cost_once(session_factory) -> None:
    async with session_factory() as session:
        shop = await _funded_shop(session)
        machine = RedemptionStateMachine(session)

        redemption = await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await session.commit()
        assert redemption.status == RedemptionStatus.PENDING
        assert redemption.token.startswith("qr_")

        locked = await machine.verify_and_lock(shop.merchant_id, redemption.pin_code)
        await session.commit()
        assert locked.status == RedemptionStatus.IN_PROGRESS
        assert locked.locked_at is not None

        confirmed = await machine.confirm(redemption.id, provider_payment_id="PAY-9", provider_order_id="ORD-9")
        await session.commit()
        assert confirmed.status == RedemptionStatus.CONFIRMED
        assert confirmed.points_deducted == 100
        assert confirmed.provider_payment_id == "PAY-9"

        again = await machine.confirm(redemption.id)
        await session.commit()
        assert again.status == RedemptionStatus.CONFIRMED

        ledger = PointsLedger(session)
        assert await ledger.get_balance(shop.customer_id, shop.merchant_id) == 400
        redeems = (
            await session.execute(select(LedgerEntry).where(LedgerEntry.kind == LedgerEntryKind.REDEEM))
        ).scalars().all()
        assert len(redeems) == 1
        assert redeems[0].external_ref == f"redemption:{redemption.id}"
        assert redeems[0].redemption_id == redemption.id


@pytest.mark.asyncio
async def test_create_requires_balance_and_active_reward(session_factory) -> None:
    async with session_factory() as session:
        shop = await _funded_shop(session, points=50)
        machine = RedemptionStateMachine(session)

        with pytest.raises(InsufficientPointsError):
            await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)

        reward = await session.get(Reward, shop.reward_id)
        reward.is_active = False
        await session.commit()

        with pytest.raises(LoyaltyNotFoundError):
            await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)


@pytest.mark.asyncio
async def test_new_redemption_supersedes_pending_one(session_factory) -> None:
    async with session_factory() as session:
        shop = await _funded_shop(session)
        machine = RedemptionStateMachine(session)

        first = await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await session.commit()
        second = await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await session.commit()

        previous = await machine.get_redemption(first.id)
        assert previous.status == RedemptionStatus.CANCELED
        assert previous.cancel_reason == RedemptionCancelReason.SUPERSEDED
        assert second.status == RedemptionStatus.PENDING
        assert second.token != first.token
        assert second.pin_code != first.pin_code

        pending = await machine.list_customer_redemptions(
            shop.customer_id, shop.merchant_id, statuses=[RedemptionStatus.PENDING]
        )
        assert [item.id for item in pending] == [second.id]


@pytest.mark.asyncio
async def test_verify_and_lock_succeeds_only_once(session_factory) -> None:
    async with session_factory() as session:
        shop = await _funded_shop(session)
        machine = RedemptionStateMachine(session)
        redemption = await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await session.commit()

        await machine.verify_and_lock(shop.merchant_id, redemption.token)
        await session.commit()

        with pytest.raises(LoyaltyStateConflictError) as excinfo:
            await machine.verify_and_lock(shop.merchant_id, redemption.token)
        assert not isinstance(excinfo.value, RedemptionExpiredError)


@pytest.mark.asyncio
async def test_verify_rejects_unknown_code_and_wrong_merchant(session_factory) -> None:
    async with session_factory() as session:
        shop = await _funded_shop(session)
        other = await seed_shop(session, location_id="L-OTHER")
        machine = RedemptionStateMachine(session)
        redemption = await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await session.commit()

        with pytest.raises(LoyaltyNotFoundError):
            await machine.verify_and_lock(shop.merchant_id, "qr_missing")
        with pytest.raises(LoyaltyAuthorizationError):
            await machine.verify_and_lock(other.merchant_id, redemption.token)


@pytest.mark.asyncio
async def test_expired_code_cannot_be_verified_or_confirmed(session_factory) -> None:
    async with session_factory() as session:
        shop = await _funded_shop(session)
        machine = RedemptionStateMachine(session)
        redemption = await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await session.commit()

        later = RedemptionStateMachine(session, clock=lambda: utcnow() + timedelta(minutes=6))
        with pytest.raises(RedemptionExpiredError):
            await later.verify_and_lock(shop.merchant_id, redemption.token)

        await machine.verify_and_lock(shop.merchant_id, redemption.token)
        await session.commit()
        with pytest.raises(RedemptionExpiredError):
            await later.confirm(redemption.id)


@pytest.mark.asyncio
async def test_confirm_requires_locked_redemption(session_factory) -> None:
    async with session_factory() as session:
        shop = await _funded_shop(session)
        machine = RedemptionStateMachine(session)
        redemption = await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await session.commit()

        with pytest.raises(LoyaltyStateConflictError):
            await machine.confirm(redemption.id)

        await machine.cancel(redemption.id, shop.customer_id)
        await session.commit()
        with pytest.raises(LoyaltyStateConflictError):
            await machine.confirm(redemption.id)


@pytest.mark.asyncio
async def test_confirm_rechecks_balance(session_factory) -> None:
    async with session_factory() as session:
        shop = await _funded_shop(session, points=150)
        machine = RedemptionStateMachine(session)
        redemption = await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await machine.verify_and_lock(shop.merchant_id, redemption.pin_code)
        await PointsLedger(session).record_refund(shop.customer_id, shop.merchant_id, 100, external_ref="r")
        await session.commit()
        redemption_id = redemption.id

        with pytest.raises(InsufficientPointsError):
            await machine.confirm(redemption.id)
        await session.rollback()

        current = await machine.get_redemption(redemption_id)
        assert current.status == RedemptionStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_cancel_only_by_owner_while_pending(session_factory) -> None:
    async with session_factory() as session:
        shop = await _funded_shop(session)
        stranger = await seed_shop(session, location_id="L-OTHER")
        machine = RedemptionStateMachine(session)
        redemption = await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await session.commit()

        with pytest.raises(LoyaltyAuthorizationError):
            await machine.cancel(redemption.id, stranger.customer_id)

        canceled = await machine.cancel(redemption.id, shop.customer_id)
        await session.commit()
        assert canceled.status == RedemptionStatus.CANCELED
        assert canceled.cancel_reason == RedemptionCancelReason.CUSTOMER

        with pytest.raises(LoyaltyStateConflictError):
            await machine.cancel(redemption.id, shop.customer_id)
        assert await PointsLedger(session).get_balance(shop.customer_id, shop.merchant_id) == 500


@pytest.mark.asyncio
async def test_sweep_cancels_expired_without_touching_balance(session_factory) -> None:
    async with session_factory() as session:
        shop = await _funded_shop(session)
        machine = RedemptionStateMachine(session)
        pending = await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await session.commit()

        assert await machine.sweep_expired() == 0

        swept = await machine.sweep_expired(utcnow() + timedelta(minutes=10))
        await session.commit()
        assert swept == 1

        expired = await machine.get_redemption(pending.id)
        assert expired.status == RedemptionStatus.CANCELED
        assert expired.cancel_reason == RedemptionCancelReason.EXPIRED
        assert await PointsLedger(session).get_balance(shop.customer_id, shop.merchant_id) == 500


@pytest.mark.asyncio
async def test_code_generation_gives_up_after_max_attempts(session_factory) -> None:
    async with session_factory() as session:
        shop = await _funded_shop(session)
        fixed = RedemptionStateMachine(session, token_factory=lambda: "qr_fixed", max_code_attempts=3)
        await fixed.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await session.commit()

        calls = count()

        def colliding_token() -> str:
            next(calls)
            return "qr_fixed"

        machine = RedemptionStateMachine(session, token_factory=colliding_token, max_code_attempts=3)
        with pytest.raises(CodeGenerationExhaustedError):
            await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        assert next(calls) == 3


@pytest.mark.asyncio
async def test_item_based_redemption_consumes_progress(session_factory) -> None:
    async with session_factory() as session:
        shop = await seed_shop(session)
        reward = Reward(
            merchant_id=shop.merchant_id,
            name="Tenth Coffee Free",
            reward_type=RewardTypeEnum.ITEM_BASED,
            config_json={"itemName": "Coffee", "itemCount": 3},
        )
        session.add(reward)
        await session.flush()
        tracker = ItemProgressTracker(session)
        await tracker.increment(shop.customer_id, shop.merchant_id, reward.id, 4)
        await session.commit()

        machine = RedemptionStateMachine(session)
        redemption = await machine.create_redemption(shop.customer_id, shop.merchant_id, reward.id)
        await machine.verify_and_lock(shop.merchant_id, redemption.token)
        confirmed = await machine.confirm(redemption.id)
        await session.commit()

        assert confirmed.points_deducted == 0
        assert await tracker.get_count(shop.customer_id, reward.id) == 1
        ledger_rows = (await session.execute(select(LedgerEntry))).scalars().all()
        assert ledger_rows == []


@pytest.mark.asyncio
async def test_auto_confirm_candidates_are_oldest_unlinked_in_progress(session_factory) -> None:
    async with session_factory() as session:
        shop = await _funded_shop(session)
        now = utcnow()
        older = Redemption(
            customer_id=shop.customer_id,
            merchant_id=shop.merchant_id,
            reward_id=shop.reward_id,
            status=RedemptionStatus.IN_PROGRESS,
            token="qr_older",
            pin_code="111111",
            expires_at=now + timedelta(minutes=5),
            created_at=now - timedelta(seconds=30),
        )
        linked = Redemption(
            customer_id=shop.customer_id,
            merchant_id=shop.merchant_id,
            reward_id=shop.reward_id,
            status=RedemptionStatus.IN_PROGRESS,
            token="qr_linked",
            pin_code="222222",
            expires_at=now + timedelta(minutes=5),
            created_at=now - timedelta(seconds=60),
            provider_payment_id="PAY-OLD",
        )
        stale = Redemption(
            customer_id=shop.customer_id,
            merchant_id=shop.merchant_id,
            reward_id=shop.reward_id,
            status=RedemptionStatus.IN_PROGRESS,
            token="qr_stale",
            pin_code="333333",
            expires_at=now - timedelta(seconds=1),
            created_at=now - timedelta(minutes=10),
        )
        newer = Redemption(
            customer_id=shop.customer_id,
            merchant_id=shop.merchant_id,
            reward_id=shop.reward_id,
            status=RedemptionStatus.IN_PROGRESS,
            token="qr_newer",
            pin_code="444444",
            expires_at=now + timedelta(minutes=5),
            created_at=now - timedelta(seconds=5),
        )
        session.add_all([older, linked, stale, newer])
        await session.commit()

        candidates = await RedemptionStateMachine(session).auto_confirm_candidates(shop.customer_id, shop.merchant_id)
        assert [item.token for item in candidates] == ["qr_older", "qr_newer"]
