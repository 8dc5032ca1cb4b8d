"""
Reconciliation engine: the single procedure that turns a gateway tracking id
into a truthful local order state.

Entry points:
- handle_notification: the gateway's IPN webhook. Gated by the idempotency
  ledger and never lets an error escape (the caller always acknowledges).
- verify_and_update: browser redirect callback and admin "verify" action.
  No ledger gate; errors propagate to the caller.
- query_only: admin read-only status lookup.

All paths re-query the gateway for the authoritative status and apply it with
the atomic, non-downgrading update in OrderRepository, so any interleaving of
webhook and callback converges on the same state with one notification.
"""
import hashlib
import hmac
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional
from uuid import UUID

import structlog
from structlog import get_logger

from paysync.common.config import Settings, get_settings
from paysync.common.db.models import Event, Order
from paysync.common.db.repositories import EventRepository, OrderRepository
from paysync.common.db.session import SessionFactory, get_db_session
from paysync.common.errors import NotFoundError, ValidationError
from paysync.gateway.client import GatewayClient, TransactionStatus
from paysync.notifications.messages import NotificationKind, PaymentNotification
from paysync.notifications.sink import NotificationSink, dispatch_in_background, drain_background_dispatches
from paysync.reconciliation.ledger import IdempotencyLedger
from paysync.reconciliation.states import Outcome, plan_transition

logger = get_logger()

SIGNATURE_HEADER = "X-Pesapal-Signature"
TRACKING_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{10,100}$")


class NotificationOutcome(str, Enum):
    PROCESSED = "processed"
    REJECTED = "rejected"
    UNVERIFIED = "unverified"
    DUPLICATE = "duplicate"
    ORDER_NOT_FOUND = "order_not_found"
    ERROR = "error"


@dataclass(frozen=True)
class ReconcileResult:
    order_id: UUID
    merchant_reference: str
    tracking_id: str
    gateway_status: str
    status: str
    paid: bool
    transitioned: bool


@dataclass(frozen=True)
class WebhookResult:
    outcome: NotificationOutcome
    tracking_id: Optional[str] = None
    merchant_reference: Optional[str] = None
    notification_type: Optional[str] = None
    result: Optional[ReconcileResult] = None

    def acknowledgement(self) -> Dict[str, Any]:
        """Body the gateway expects back. Always status 200, whatever happened here."""
        return {
            "orderNotificationType": self.notification_type or "IPNCHANGE",
            "orderTrackingId": self.tracking_id if isinstance(self.tracking_id, str) else None,
            "orderMerchantReference": self.merchant_reference if isinstance(self.merchant_reference, str) else None,
            "status": 200,
        }


def is_valid_tracking_id(value: Any) -> bool:
    return isinstance(value, str) and bool(TRACKING_ID_PATTERN.match(value))


def canonical_payload(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(dict(payload), sort_keys=True, separators=(",", ":")).encode()


def sign_payload(payload: Mapping[str, Any], secret: str) -> str:
    return hmac.new(secret.encode(), canonical_payload(payload), hashlib.sha256).hexdigest()


def verify_signature(payload: Mapping[str, Any], signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature.strip().lower())


class ReconciliationEngine:
    def __init__(
        self,
        gateway: GatewayClient,
        sink: NotificationSink,
        settings: Optional[Settings] = None,
        ledger: Optional[IdempotencyLedger] = None,
        session_factory: SessionFactory = get_db_session,
    ):
        settings = settings or get_settings()
        self.gateway = gateway
        self.sink = sink
        self.webhook_secret = settings.pesapal_webhook_secret
        self.sales_recipient = settings.email_sales
        self._session_factory = session_factory
        self.ledger = ledger or IdempotencyLedger(
            session_factory, lock_timeout_seconds=settings.ledger_lock_timeout_seconds
        )

    # --- Webhook ---

    async def handle_notification(
        self, payload: Mapping[str, Any], signature: Optional[str] = None
    ) -> WebhookResult:
        tracking_id = payload.get("OrderTrackingId")
        merchant_reference = payload.get("OrderMerchantReference") or None
        notification_type = payload.get("OrderNotificationType") or None
        base = dict(
            tracking_id=tracking_id,
            merchant_reference=merchant_reference,
            notification_type=notification_type,
        )

        if not is_valid_tracking_id(tracking_id):
            logger.info("ipn_rejected", reason="invalid_tracking_id", tracking_id=repr(tracking_id)[:120])
            return WebhookResult(NotificationOutcome.REJECTED, **base)

        if self.webhook_secret:
            if not verify_signature(payload, signature, self.webhook_secret):
                logger.error("ipn_signature_invalid", tracking_id=tracking_id, has_signature=bool(signature))
                return WebhookResult(NotificationOutcome.UNVERIFIED, **base)
        else:
            logger.warning("ipn_signature_verification_skipped", reason="no webhook secret configured")

        with structlog.contextvars.bound_contextvars(tracking_id=tracking_id):
            claimed = False
            try:
                claim = await self.ledger.claim(tracking_id)
                if not claim.should_process:
                    logger.info("ipn_duplicate", retry_count=claim.retry_count, state=claim.processing_state)
                    return WebhookResult(NotificationOutcome.DUPLICATE, **base)
                claimed = True

                order = await self._find_order(tracking_id, merchant_reference)
                if order is None:
                    logger.info("ipn_order_not_found", merchant_reference=merchant_reference)
                    await self.ledger.mark_failed(tracking_id, "Order not found")
                    return WebhookResult(NotificationOutcome.ORDER_NOT_FOUND, **base)

                result = await self._reconcile(order, tracking_id, source="ipn")
                await self.ledger.mark_completed(tracking_id, result.gateway_status)
                return WebhookResult(NotificationOutcome.PROCESSED, result=result, **base)

            except Exception as e:
                # The gateway gets its acknowledgement regardless; a retry would only replay this.
                logger.exception("ipn_processing_failed", error=str(e))
                if claimed:
                    await self._mark_failed_quietly(tracking_id, e)
                return WebhookResult(NotificationOutcome.ERROR, **base)

    # --- Redirect callback / admin ---

    async def verify_and_update(
        self, tracking_id: str, merchant_reference: Optional[str] = None
    ) -> ReconcileResult:
        if not is_valid_tracking_id(tracking_id):
            raise ValidationError("Invalid order tracking id")

        with structlog.contextvars.bound_contextvars(tracking_id=tracking_id):
            order = await self._find_order(tracking_id, merchant_reference)
            if order is None:
                raise NotFoundError(f"No order for tracking id {tracking_id}")
            return await self._reconcile(order, tracking_id, source="verify")

    async def query_only(self, tracking_id: str) -> TransactionStatus:
        if not is_valid_tracking_id(tracking_id):
            raise ValidationError("Invalid order tracking id")
        return await self.gateway.query_status(tracking_id)

    async def drain(self) -> None:
        await drain_background_dispatches()

    # --- Internals ---

    async def _find_order(self, tracking_id: str, merchant_reference: Optional[str]) -> Optional[Order]:
        """
        Look the order up by tracking id, then by merchant reference. An IPN can
        beat checkout to storing the tracking id; in that case attach it here.
        """
        async with self._session_factory() as session:
            repo = OrderRepository(session)
            order = await repo.get_order_by_tracking_id(tracking_id)
            if order is not None or not merchant_reference:
                return order

            order = await repo.get_order_by_merchant_reference(merchant_reference)
            if order is None:
                return None

            if order.tracking_id is None:
                attached = await repo.set_tracking_id(order.id, tracking_id)
                if attached is not None:
                    logger.info("tracking_id_attached", order_id=str(order.id))
                    return attached
                await session.refresh(order)

            if order.tracking_id != tracking_id:
                logger.warning(
                    "tracking_id_mismatch",
                    order_id=str(order.id),
                    order_tracking_id=order.tracking_id,
                )
                return None
            return order

    async def _reconcile(self, order: Order, tracking_id: str, source: str) -> ReconcileResult:
        # Gateway call happens outside any transaction
        status = await self.gateway.query_status(tracking_id)
        transition = plan_transition(status.status)

        if status.amount is not None and status.amount != order.amount:
            logger.warning(
                "gateway_amount_mismatch",
                order_id=str(order.id),
                order_amount=str(order.amount),
                gateway_amount=str(status.amount),
            )

        async with self._session_factory() as session:
            repo = OrderRepository(session)
            updated = await repo.apply_payment_status(order.id, transition)
            transitioned = updated is not None and transition.is_terminal

            if updated is None:
                await repo.record_gateway_status(order.id, transition.gateway_status)
                current = await repo.get_order_by_id(order.id)
            else:
                current = updated

            if transitioned:
                await EventRepository(session).log_event(Event(
                    order_id=order.id,
                    type="PAYMENT_STATUS_CHANGED",
                    payload_json={
                        "source": source,
                        "tracking_id": tracking_id,
                        "gateway_status": transition.gateway_status,
                        "status": current.status,
                        "paid": current.paid,
                        "confirmation_code": status.confirmation_code,
                    },
                ))

        logger.info(
            "order_reconciled",
            source=source,
            order_id=str(order.id),
            gateway_status=transition.gateway_status,
            status=current.status,
            paid=current.paid,
            transitioned=transitioned,
        )

        if transitioned:
            kind = (
                NotificationKind.PAYMENT_CONFIRMED
                if transition.outcome is Outcome.SUCCESS
                else NotificationKind.PAYMENT_FAILED
            )
            dispatch_in_background(
                self.sink, PaymentNotification.for_order(kind, current, self.sales_recipient)
            )

        return ReconcileResult(
            order_id=current.id,
            merchant_reference=current.merchant_reference,
            tracking_id=tracking_id,
            gateway_status=transition.gateway_status,
            status=current.status,
            paid=current.paid,
            transitioned=transitioned,
        )

    async def _mark_failed_quietly(self, tracking_id: str, error: Exception) -> None:
        try:
            await self.ledger.mark_failed(tracking_id, f"{error.__class__.__name__}: {error}")
        except Exception as mark_error:
            logger.exception("ledger_mark_failed_error", error=str(mark_error))
