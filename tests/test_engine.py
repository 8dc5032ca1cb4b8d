import asyncio
from dataclasses import replace
from decimal import Decimal

import httpx
import pytest

from paysync.checkout.service import CartLine, CheckoutService
from paysync.common.db.models import LedgerState, OrderStatus, Product
from paysync.common.db.repositories import EventRepository
from paysync.common.db.session import get_db_session
from paysync.common.errors import NotFoundError, QueryError, ValidationError
from paysync.gateway.client import GatewayClient
from paysync.notifications.messages import NotificationKind
from paysync.reconciliation.engine import NotificationOutcome, ReconciliationEngine, sign_payload

from conftest import ADDRESS, TRACKING_ID, RecordingSink, create_order, load_order


def ipn(tracking_id=TRACKING_ID, merchant_reference="ref-0001"):
    return {
        "OrderTrackingId": tracking_id,
        "OrderMerchantReference": merchant_reference,
        "OrderNotificationType": "IPNCHANGE",
    }


@pytest.fixture
def engine(database, gateway, sink, settings):
    return ReconciliationEngine(gateway, sink, settings)


async def status_events(order_id):
    async with get_db_session() as session:
        events = await EventRepository(session).get_events_for_order(order_id)
    return [e for e in events if e.type == "PAYMENT_STATUS_CHANGED"]


# --- State transitions ---

async def test_repeated_completed_observation_notifies_once(engine, gateway, sink):
    order = await create_order()
    gateway.statuses[TRACKING_ID] = "COMPLETED"

    results = [await engine.verify_and_update(TRACKING_ID) for _ in range(3)]
    await engine.drain()

    assert [r.transitioned for r in results] == [True, False, False]
    stored = await load_order(order.id)
    assert stored.status == OrderStatus.PAID.value
    assert stored.paid is True
    assert len(sink.sent) == 1
    assert sink.sent[0].kind is NotificationKind.PAYMENT_CONFIRMED
    assert len(await status_events(order.id)) == 1


@pytest.mark.parametrize("gateway_status", ["PENDING", "SOMETHING_NEW"])
async def test_paid_order_is_not_downgraded(engine, gateway, sink, gateway_status):
    order = await create_order(status=OrderStatus.PAID, paid=True)
    gateway.statuses[TRACKING_ID] = gateway_status

    result = await engine.verify_and_update(TRACKING_ID)
    await engine.drain()

    assert result.status == OrderStatus.PAID.value
    assert result.paid is True
    assert not result.transitioned
    stored = await load_order(order.id)
    assert (stored.status, stored.paid) == (OrderStatus.PAID.value, True)
    assert stored.last_gateway_status == gateway_status
    assert sink.sent == []


async def test_reversal_of_paid_order(engine, gateway, sink):
    order = await create_order(status=OrderStatus.PAID, paid=True)
    gateway.statuses[TRACKING_ID] = "REVERSED"

    result = await engine.verify_and_update(TRACKING_ID)
    await engine.drain()

    assert result.transitioned
    stored = await load_order(order.id)
    assert (stored.status, stored.paid) == (OrderStatus.PAYMENT_FAILED.value, False)
    assert [n.kind for n in sink.sent] == [NotificationKind.PAYMENT_FAILED]


async def test_manual_poll_of_failed_payment(engine, gateway, sink):
    order = await create_order()
    gateway.statuses[TRACKING_ID] = "FAILED"

    result = await engine.verify_and_update(TRACKING_ID)
    await engine.drain()

    assert result.status == OrderStatus.PAYMENT_FAILED.value
    assert result.paid is False
    stored = await load_order(order.id)
    assert (stored.status, stored.paid) == (OrderStatus.PAYMENT_FAILED.value, False)


async def test_invalid_transaction_marks_order_failed(database, sink, settings):
    def pesapal(request):
        if request.url.path.endswith("/RequestToken"):
            return httpx.Response(200, json={"token": "tok"})
        return httpx.Response(200, json={
            "payment_status_description": "INVALID",
            "status_code": 0,
            "merchant_reference": "ref-0001",
            "error": {"error_type": "api_error", "code": "payment_details_not_found", "message": "Pending Payment"},
            "status": "500",
        })

    gateway = GatewayClient(settings, transport=httpx.MockTransport(pesapal))
    engine = ReconciliationEngine(gateway, sink, settings)
    order = await create_order()
    try:
        result = await engine.handle_notification(ipn())
        await engine.drain()
    finally:
        await gateway.aclose()

    assert result.outcome is NotificationOutcome.PROCESSED
    stored = await load_order(order.id)
    assert (stored.status, stored.paid) == (OrderStatus.PAYMENT_FAILED.value, False)
    assert stored.last_gateway_status == "INVALID"
    assert (await engine.ledger.get(TRACKING_ID)).processing_state == LedgerState.COMPLETED.value
    assert [n.kind for n in sink.sent] == [NotificationKind.PAYMENT_FAILED]


async def test_pending_observation_keeps_order_pending(engine, gateway, sink):
    order = await create_order()
    gateway.statuses[TRACKING_ID] = "PENDING"

    result = await engine.verify_and_update(TRACKING_ID)
    await engine.drain()

    assert not result.transitioned
    stored = await load_order(order.id)
    assert (stored.status, stored.paid) == (OrderStatus.PENDING_PAYMENT.value, False)
    assert stored.last_gateway_status == "PENDING"
    assert sink.sent == []


async def test_completed_after_failure_marks_paid(engine, gateway, sink):
    order = await create_order(status=OrderStatus.PAYMENT_FAILED)
    gateway.statuses[TRACKING_ID] = "COMPLETED"

    result = await engine.verify_and_update(TRACKING_ID)
    await engine.drain()

    assert result.transitioned and result.paid
    assert (await load_order(order.id)).status == OrderStatus.PAID.value


async def test_gateway_amount_mismatch_is_logged_not_blocking(engine, gateway):
    order = await create_order(amount="110.00")
    gateway.statuses[TRACKING_ID] = "COMPLETED"
    gateway.amounts[TRACKING_ID] = Decimal("5.00")

    result = await engine.verify_and_update(TRACKING_ID)

    assert result.paid
    assert (await load_order(order.id)).paid is True


# --- Verify errors ---

async def test_verify_unknown_order(engine, gateway):
    with pytest.raises(NotFoundError):
        await engine.verify_and_update(TRACKING_ID)
    assert gateway.status_queries == []


async def test_verify_invalid_tracking_id(engine):
    with pytest.raises(ValidationError):
        await engine.verify_and_update("short")


async def test_verify_propagates_gateway_errors(engine, gateway):
    order = await create_order()
    gateway.statuses[TRACKING_ID] = QueryError("Gateway timed out", status_code=None)

    with pytest.raises(QueryError):
        await engine.verify_and_update(TRACKING_ID)
    assert (await load_order(order.id)).status == OrderStatus.PENDING_PAYMENT.value


async def test_query_only_does_not_touch_order(engine, gateway):
    order = await create_order()
    gateway.statuses[TRACKING_ID] = "COMPLETED"

    status = await engine.query_only(TRACKING_ID)

    assert status.status == "COMPLETED"
    assert (await load_order(order.id)).status == OrderStatus.PENDING_PAYMENT.value


# --- Webhook ---

async def test_webhook_processes_and_completes_ledger(engine, gateway, sink):
    order = await create_order()
    gateway.statuses[TRACKING_ID] = "COMPLETED"

    result = await engine.handle_notification(ipn())
    await engine.drain()

    assert result.outcome is NotificationOutcome.PROCESSED
    assert result.result.paid
    assert result.acknowledgement() == {
        "orderNotificationType": "IPNCHANGE",
        "orderTrackingId": TRACKING_ID,
        "orderMerchantReference": "ref-0001",
        "status": 200,
    }
    entry = await engine.ledger.get(TRACKING_ID)
    assert entry.processing_state == LedgerState.COMPLETED.value
    assert entry.result_status == "COMPLETED"
    assert (await load_order(order.id)).paid is True
    assert sink.sent[0].recipient == ADDRESS["email"]
    assert sink.sent[0].sales_recipient == "sales@shop.test"


async def test_concurrent_webhooks_reconcile_once(engine, gateway, sink):
    await create_order()
    gateway.statuses[TRACKING_ID] = "COMPLETED"

    results = await asyncio.gather(engine.handle_notification(ipn()), engine.handle_notification(ipn()))
    await engine.drain()

    assert sorted(r.outcome.value for r in results) == ["duplicate", "processed"]
    assert gateway.status_queries == [TRACKING_ID]
    assert len(sink.sent) == 1
    assert (await engine.ledger.get(TRACKING_ID)).processing_state == LedgerState.COMPLETED.value


async def test_webhook_and_callback_race_notifies_once(engine, gateway, sink):
    order = await create_order()
    gateway.statuses[TRACKING_ID] = "COMPLETED"

    await asyncio.gather(engine.handle_notification(ipn()), engine.verify_and_update(TRACKING_ID))
    await engine.drain()

    assert (await load_order(order.id)).paid is True
    assert len(sink.sent) == 1
    assert len(await status_events(order.id)) == 1


@pytest.mark.parametrize("tracking_id", [None, "", "short", "has spaces in it", "x" * 101, 12345678901])
async def test_webhook_rejects_malformed_tracking_id(engine, gateway, tracking_id):
    result = await engine.handle_notification(ipn(tracking_id=tracking_id))

    assert result.outcome is NotificationOutcome.REJECTED
    assert result.acknowledgement()["status"] == 200
    assert gateway.status_queries == []


async def test_webhook_for_unknown_order_marks_ledger_failed(engine, gateway):
    result = await engine.handle_notification(ipn(merchant_reference="nope"))

    assert result.outcome is NotificationOutcome.ORDER_NOT_FOUND
    entry = await engine.ledger.get(TRACKING_ID)
    assert entry.processing_state == LedgerState.FAILED.value
    assert entry.last_error == "Order not found"
    assert gateway.status_queries == []


async def test_webhook_attaches_tracking_id_by_merchant_reference(engine, gateway):
    order = await create_order(tracking_id=None)
    gateway.statuses[TRACKING_ID] = "COMPLETED"

    result = await engine.handle_notification(ipn())

    assert result.outcome is NotificationOutcome.PROCESSED
    stored = await load_order(order.id)
    assert stored.tracking_id == TRACKING_ID
    assert stored.paid is True


async def test_webhook_tracking_id_conflict_is_not_applied(engine, gateway):
    order = await create_order(tracking_id="existing-tracking-0001")
    gateway.statuses[TRACKING_ID] = "COMPLETED"

    result = await engine.handle_notification(ipn())

    assert result.outcome is NotificationOutcome.ORDER_NOT_FOUND
    assert (await load_order(order.id)).paid is False


async def test_webhook_gateway_failure_is_retried_on_next_delivery(engine, gateway, sink):
    order = await create_order()
    gateway.statuses[TRACKING_ID] = [QueryError("Gateway timed out"), "COMPLETED"]

    first = await engine.handle_notification(ipn())
    assert first.outcome is NotificationOutcome.ERROR
    assert first.acknowledgement()["orderTrackingId"] == TRACKING_ID
    entry = await engine.ledger.get(TRACKING_ID)
    assert entry.processing_state == LedgerState.FAILED.value
    assert "timed out" in entry.last_error

    second = await engine.handle_notification(ipn())
    await engine.drain()

    assert second.outcome is NotificationOutcome.PROCESSED
    assert (await load_order(order.id)).paid is True
    assert len(sink.sent) == 1


async def test_notification_failure_does_not_affect_reconciliation(database, gateway, settings):
    failing = RecordingSink(error=RuntimeError("temporal down"))
    engine = ReconciliationEngine(gateway, failing, settings)
    order = await create_order()
    gateway.statuses[TRACKING_ID] = "COMPLETED"

    result = await engine.handle_notification(ipn())
    await engine.drain()

    assert result.outcome is NotificationOutcome.PROCESSED
    assert len(failing.sent) == 1
    assert (await load_order(order.id)).paid is True
    assert (await engine.ledger.get(TRACKING_ID)).processing_state == LedgerState.COMPLETED.value


# --- Signatures ---

@pytest.fixture
def signed_engine(database, gateway, sink, settings):
    return ReconciliationEngine(gateway, sink, replace(settings, pesapal_webhook_secret="whsec"))


async def test_unsigned_webhook_rejected_when_secret_configured(signed_engine, gateway):
    await create_order()
    gateway.statuses[TRACKING_ID] = "COMPLETED"

    missing = await signed_engine.handle_notification(ipn())
    forged = await signed_engine.handle_notification(ipn(), signature="0" * 64)

    assert missing.outcome is NotificationOutcome.UNVERIFIED
    assert forged.outcome is NotificationOutcome.UNVERIFIED
    assert gateway.status_queries == []
    assert await signed_engine.ledger.get(TRACKING_ID) is None


async def test_signed_webhook_processed(signed_engine, gateway):
    order = await create_order()
    gateway.statuses[TRACKING_ID] = "COMPLETED"
    payload = ipn()

    result = await signed_engine.handle_notification(payload, signature=sign_payload(payload, "whsec"))

    assert result.outcome is NotificationOutcome.PROCESSED
    assert (await load_order(order.id)).paid is True


# --- End to end ---

async def test_checkout_then_webhook_then_duplicate(database, gateway, sink, settings):
    async with get_db_session() as session:
        session.add(Product(id="battery-990", name="Lithium Battery", price=Decimal("990.00")))
    gateway.next_tracking_id = "TRK123456789"
    checkout = CheckoutService(gateway, settings)
    engine = ReconciliationEngine(gateway, sink, settings)

    placed = await checkout.place_order("user-1", [CartLine("battery-990", 1)], ADDRESS, "1000")
    assert placed.amount == Decimal("1000.00")
    assert placed.tracking_id == "TRK123456789"

    gateway.statuses["TRK123456789"] = "COMPLETED"
    first = await engine.handle_notification(ipn("TRK123456789", placed.merchant_reference))
    await engine.drain()

    assert first.outcome is NotificationOutcome.PROCESSED
    stored = await load_order(placed.order_id)
    assert (stored.status, stored.paid) == (OrderStatus.PAID.value, True)
    assert len(sink.sent) == 1
    assert sink.sent[0].recipient == ADDRESS["email"]

    duplicate = await engine.handle_notification(ipn("TRK123456789", placed.merchant_reference))
    await engine.drain()

    assert duplicate.outcome is NotificationOutcome.DUPLICATE
    assert gateway.status_queries == ["TRK123456789"]
    assert len(sink.sent) == 1
    async with get_db_session() as session:
        events = await EventRepository(session).get_events_for_order(placed.order_id)
    assert [e.type for e in events].count("PAYMENT_STATUS_CHANGED") == 1
