from uuid import uuid4

import pytest
from sqlalchemy import select

from loyalty_api.models.ledger import LedgerEntry, LedgerEntryKind
from loyalty_api.models.redemption import RedemptionStatus
from loyalty_api.models.reward import EarnTypeEnum, Reward, RewardProgram, RewardTypeEnum
from loyalty_api.models.webhook_event import WebhookEvent, WebhookEventStatus
from loyalty_api.observability.loyalty import get_loyalty_store
from loyalty_api.services.loyalty.item_progress import ItemProgressTracker
from loyalty_api.services.loyalty.ledger import PointsLedger
from loyalty_api.services.loyalty.redemptions import RedemptionStateMachine
from loyalty_api.services.webhooks.processor import WebhookEventProcessor

from seed import payment_payload, refund_payload, seed_shop, webhook_event


async def _record(session_factory, payload):
    async with session_factory() as session:
        event = webhook_event(payload)
        session.add(event)
        await session.commit()
        return event.id


async def _event(session_factory, event_id) -> WebhookEvent:
    async with session_factory() as session:
        return await session.get(WebhookEvent, event_id)


async def _balance(session_factory, shop) -> int:
    async with session_factory() as session:
        return await PointsLedger(session).get_balance(shop.customer_id, shop.merchant_id)


@pytest.mark.asyncio
async def test_completed_payment_credits_points_once(session_factory) -> None:
    async with session_factory() as session:
        shop = await seed_shop(session, points_per_dollar=10)
        await session.commit()

    processor = WebhookEventProcessor(session_factory)
    first_id = await _record(session_factory, payment_payload("evt-1", amount_cents=2000))
    outcome = await processor.process_event(first_id)

    assert outcome.status is WebhookEventStatus.PROCESSED
    assert outcome.reason is None
    assert outcome.points == 200
    assert await _balance(session_factory, shop) == 200

    stored = await _event(session_factory, first_id)
    assert stored.status == WebhookEventStatus.PROCESSED
    assert stored.merchant_id == shop.merchant_id
    assert stored.processed_at is not None

    redelivery_id = await _record(session_factory, payment_payload("evt-2", amount_cents=2000))
    replay = await processor.process_event(redelivery_id)
    assert replay.status is WebhookEventStatus.PROCESSED
    assert replay.reason == "already_credited"
    assert replay.points == 0
    assert await _balance(session_factory, shop) == 200

    async with session_factory() as session:
        entries = (await session.execute(select(LedgerEntry))).scalars().all()
    assert len(entries) == 1
    assert entries[0].external_ref == "square:payment:PAY-1"
    assert entries[0].metadata_json["source"] == "square_webhook"


@pytest.mark.asyncio
async def test_terminal_event_is_left_untouched(session_factory) -> None:
    async with session_factory() as session:
        await seed_shop(session)
        await session.commit()

    processor = WebhookEventProcessor(session_factory)
    event_id = await _record(session_factory, payment_payload("evt-1"))
    await processor.process_event(event_id)
    again = await processor.process_event(event_id)

    assert again.changed is False
    assert again.status is WebhookEventStatus.PROCESSED
    assert get_loyalty_store().snapshot().webhooks["processed"] == 1

    missing = await processor.process_event(uuid4())
    assert missing.status is WebhookEventStatus.FAILED
    assert missing.changed is False


@pytest.mark.asyncio
async def test_auto_confirm_links_payment_to_locked_redemption(session_factory) -> None:
    async with session_factory() as session:
        shop = await seed_shop(session, points_per_dollar=10, cost_points=100)
        await PointsLedger(session).record_earn(shop.customer_id, shop.merchant_id, 500, external_ref="seed")
        machine = RedemptionStateMachine(session)
        redemption = await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await machine.verify_and_lock(shop.merchant_id, redemption.token)
        await session.commit()

    processor = WebhookEventProcessor(session_factory)
    event_id = await _record(session_factory, payment_payload("evt-1", payment_id="PAY-7", amount_cents=2000))
    outcome = await processor.process_event(event_id)

    assert outcome.confirmed_redemption_id == redemption.id
    assert await _balance(session_factory, shop) == 600

    async with session_factory() as session:
        confirmed = await RedemptionStateMachine(session).get_redemption(redemption.id)
    assert confirmed.status == RedemptionStatus.CONFIRMED
    assert confirmed.provider_payment_id == "PAY-7"
    assert confirmed.provider_order_id == "ORDER-PAY-7"
    assert confirmed.points_deducted == 100

    replay_id = await _record(session_factory, payment_payload("evt-2", payment_id="PAY-7", amount_cents=2000))
    replay = await processor.process_event(replay_id)
    assert replay.confirmed_redemption_id == redemption.id
    assert await _balance(session_factory, shop) == 600
    assert get_loyalty_store().snapshot().auto_confirm == {"confirmed": 1, "already_confirmed": 1}


@pytest.mark.asyncio
async def test_auto_confirm_failure_keeps_earned_points(session_factory) -> None:
    async with session_factory() as session:
        shop = await seed_shop(session, points_per_dollar=10, cost_points=1000)
        ledger = PointsLedger(session)
        await ledger.record_earn(shop.customer_id, shop.merchant_id, 1000, external_ref="seed")
        machine = RedemptionStateMachine(session)
        redemption = await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await machine.verify_and_lock(shop.merchant_id, redemption.pin_code)
        await ledger.record_refund(shop.customer_id, shop.merchant_id, 1000, external_ref="manual-adjust")
        await session.commit()

    processor = WebhookEventProcessor(session_factory)
    event_id = await _record(session_factory, payment_payload("evt-1", amount_cents=2000))
    outcome = await processor.process_event(event_id)

    assert outcome.status is WebhookEventStatus.PROCESSED
    assert outcome.confirmed_redemption_id is None
    assert outcome.points == 200
    assert outcome.ledger_entry_id is not None
    assert await _balance(session_factory, shop) == 200
    assert get_loyalty_store().snapshot().auto_confirm == {"failed": 1}

    async with session_factory() as session:
        current = await RedemptionStateMachine(session).get_redemption(redemption.id)
    assert current.status == RedemptionStatus.IN_PROGRESS


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload, status, reason",
    [
        (payment_payload("e", status="APPROVED"), WebhookEventStatus.PROCESSED, "payment_not_completed"),
        (payment_payload("e", location_id=None), WebhookEventStatus.FAILED, "payment_missing_location_id"),
        (payment_payload("e", location_id="L-UNKNOWN"), WebhookEventStatus.FAILED, "business_not_found"),
        (payment_payload("e", customer_id=None), WebhookEventStatus.PROCESSED, "no_customer"),
        (payment_payload("e", customer_id="SQ-STRANGER"), WebhookEventStatus.PROCESSED, "customer_not_linked"),
        (payment_payload("e", amount_cents=None), WebhookEventStatus.FAILED, "payment_amount_missing"),
        (payment_payload("e", amount_cents=50), WebhookEventStatus.PROCESSED, "not_eligible"),
        ({"event_id": "e", "type": "customer.created", "data": {}}, WebhookEventStatus.PROCESSED, "ignored_event_type"),
        ({"event_id": "e", "type": "payment.updated", "data": {}}, WebhookEventStatus.FAILED, "Payment data not found in payload"),
    ],
)
async def test_payment_outcomes(session_factory, payload, status, reason) -> None:
    async with session_factory() as session:
        shop = await seed_shop(session, points_per_dollar=1, min_subtotal_cents=100)
        await session.commit()

    event_id = await _record(session_factory, payload)
    outcome = await WebhookEventProcessor(session_factory).process_event(event_id)

    assert outcome.status is status
    assert outcome.reason == reason
    stored = await _event(session_factory, event_id)
    assert stored.status == status
    if status is WebhookEventStatus.FAILED:
        assert stored.error_message == reason
    else:
        assert stored.error_message is None
    assert await _balance(session_factory, shop) == 0


@pytest.mark.asyncio
async def test_missing_or_invalid_program_fails_event(session_factory) -> None:
    async with session_factory() as session:
        shop = await seed_shop(session, with_program=False)
        await session.commit()

    processor = WebhookEventProcessor(session_factory)
    outcome = await processor.process_event(await _record(session_factory, payment_payload("evt-1")))
    assert outcome.status is WebhookEventStatus.FAILED
    assert outcome.reason == "reward_program_not_found"

    async with session_factory() as session:
        session.add(
            RewardProgram(
                merchant_id=shop.merchant_id,
                earn_type=EarnTypeEnum.POINTS_PER_DOLLAR,
                earn_params={"version": 1, "pointsPerDollar": -3},
            )
        )
        await session.commit()

    invalid = await processor.process_event(await _record(session_factory, payment_payload("evt-2")))
    assert invalid.status is WebhookEventStatus.FAILED
    assert invalid.reason.startswith("invalid_reward_program: Invalid reward program config")
    stored = await _event(session_factory, invalid.event_id)
    assert stored.error_message == invalid.reason


@pytest.mark.asyncio
async def test_item_points_program_and_item_progress(session_factory) -> None:
    async with session_factory() as session:
        shop = await seed_shop(session, with_program=False)
        session.add(
            RewardProgram(
                merchant_id=shop.merchant_id,
                earn_type=EarnTypeEnum.ITEM_POINTS,
                earn_params={"version": 1, "items": [{"catalogObjectId": "LATTE", "points": 5}]},
            )
        )
        reward = Reward(
            merchant_id=shop.merchant_id,
            name="Free Latte Punch Card",
            reward_type=RewardTypeEnum.ITEM_BASED,
            config_json={"itemName": "Latte", "itemCount": 10, "catalogObjectId": "LATTE"},
        )
        session.add(reward)
        await session.commit()

    line_items = [
        {"name": "Latte", "quantity": "3", "catalog_object_id": "LATTE"},
        {"name": "Muffin", "quantity": "1", "catalog_object_id": "MUFFIN"},
    ]
    processor = WebhookEventProcessor(session_factory)
    outcome = await processor.process_event(
        await _record(session_factory, payment_payload("evt-1", amount_cents=None, line_items=line_items))
    )
    assert outcome.status is WebhookEventStatus.PROCESSED
    assert outcome.points == 15

    await processor.process_event(
        await _record(session_factory, payment_payload("evt-2", amount_cents=None, line_items=line_items))
    )

    async with session_factory() as session:
        assert await ItemProgressTracker(session).get_count(shop.customer_id, reward.id) == 3
    assert await _balance(session_factory, shop) == 15


@pytest.mark.asyncio
async def test_refund_claws_back_points_idempotently(session_factory) -> None:
    async with session_factory() as session:
        shop = await seed_shop(session, points_per_dollar=10)
        await session.commit()

    processor = WebhookEventProcessor(session_factory)
    await processor.process_event(await _record(session_factory, payment_payload("evt-pay", amount_cents=2000)))

    outcome = await processor.process_event(await _record(session_factory, refund_payload("evt-ref-1", amount_cents=1000)))
    assert outcome.status is WebhookEventStatus.PROCESSED
    assert outcome.points == -100
    assert await _balance(session_factory, shop) == 100

    replay = await processor.process_event(await _record(session_factory, refund_payload("evt-ref-2", amount_cents=1000)))
    assert replay.points == 0
    assert await _balance(session_factory, shop) == 100

    async with session_factory() as session:
        refunds = (
            await session.execute(select(LedgerEntry).where(LedgerEntry.kind == LedgerEntryKind.REFUND))
        ).scalars().all()
    assert [entry.points for entry in refunds] == [-100]


@pytest.mark.asyncio
async def test_refund_never_takes_balance_negative(session_factory) -> None:
    async with session_factory() as session:
        shop = await seed_shop(session, points_per_dollar=10)
        await session.commit()

    processor = WebhookEventProcessor(session_factory)
    await processor.process_event(await _record(session_factory, payment_payload("evt-pay", amount_cents=2000)))
    async with session_factory() as session:
        await PointsLedger(session).record_redeem(shop.customer_id, shop.merchant_id, 150, external_ref="spent")
        await session.commit()

    outcome = await processor.process_event(
        await _record(session_factory, refund_payload("evt-ref", refund_id="REF-9", amount_cents=5000))
    )
    assert outcome.points == -50
    assert await _balance(session_factory, shop) == 0

    unknown = await processor.process_event(
        await _record(session_factory, refund_payload("evt-ref-x", refund_id="REF-X", payment_id="PAY-UNKNOWN"))
    )
    assert unknown.reason == "no_earn_for_payment"


@pytest.mark.asyncio
async def test_zero_point_payment_still_auto_confirms(session_factory) -> None:
    async with session_factory() as session:
        shop = await seed_shop(session, points_per_dollar=10, cost_points=100)
        await PointsLedger(session).record_earn(shop.customer_id, shop.merchant_id, 500, external_ref="seed")
        machine = RedemptionStateMachine(session)
        redemption = await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await machine.verify_and_lock(shop.merchant_id, redemption.token)
        await session.commit()

    processor = WebhookEventProcessor(session_factory)
    event_id = await _record(session_factory, payment_payload("evt-1", payment_id="PAY-5C", amount_cents=5))
    outcome = await processor.process_event(event_id)

    assert outcome.status is WebhookEventStatus.PROCESSED
    assert outcome.reason == "no_points_earned"
    assert outcome.points == 0
    assert outcome.ledger_entry_id is None
    assert outcome.confirmed_redemption_id == redemption.id
    assert await _balance(session_factory, shop) == 400

    async with session_factory() as session:
        confirmed = await RedemptionStateMachine(session).get_redemption(redemption.id)
        earns = (
            await session.execute(select(LedgerEntry).where(LedgerEntry.kind == LedgerEntryKind.EARN))
        ).scalars().all()
    assert confirmed.status == RedemptionStatus.CONFIRMED
    assert confirmed.provider_payment_id == "PAY-5C"
    assert [entry.external_ref for entry in earns] == ["seed"]


@pytest.mark.asyncio
async def test_item_program_without_matching_items_still_auto_confirms(session_factory) -> None:
    async with session_factory() as session:
        shop = await seed_shop(session, with_program=False, cost_points=100)
        session.add(
            RewardProgram(
                merchant_id=shop.merchant_id,
                earn_type=EarnTypeEnum.ITEM_POINTS,
                earn_params={"version": 1, "items": [{"catalogObjectId": "LATTE", "points": 5}]},
            )
        )
        await PointsLedger(session).record_earn(shop.customer_id, shop.merchant_id, 300, external_ref="seed")
        machine = RedemptionStateMachine(session)
        redemption = await machine.create_redemption(shop.customer_id, shop.merchant_id, shop.reward_id)
        await machine.verify_and_lock(shop.merchant_id, redemption.pin_code)
        await session.commit()

    line_items = [{"name": "Muffin", "quantity": "2", "catalog_object_id": "MUFFIN"}]
    outcome = await WebhookEventProcessor(session_factory).process_event(
        await _record(session_factory, payment_payload("evt-1", payment_id="PAY-M", line_items=line_items))
    )

    assert outcome.status is WebhookEventStatus.PROCESSED
    assert outcome.points == 0
    assert outcome.confirmed_redemption_id == redemption.id
    assert await _balance(session_factory, shop) == 200
