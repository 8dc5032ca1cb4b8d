from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID, uuid4

from structlog import get_logger

from paysync.common.config import Settings
from paysync.common.db.models import Event, Order, OrderStatus
from paysync.common.db.repositories import EventRepository, OrderRepository, ProductRepository
from paysync.common.db.session import SessionFactory, get_db_session
from paysync.common.errors import AmountMismatchError, AuthError, GatewayError, SubmissionError, ValidationError
from paysync.gateway.client import GatewayClient

logger = get_logger()


@dataclass(frozen=True)
class CartLine:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class CheckoutResult:
    order_id: UUID
    merchant_reference: str
    tracking_id: str
    redirect_url: str
    amount: Decimal


def _as_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")


def build_billing_address(address: Dict[str, Any]) -> Dict[str, Any]:
    zipcode = address.get("zipcode") or ""
    return {
        "email_address": address.get("email"),
        "phone_number": address.get("phone"),
        "country_code": address.get("country") or "KE",
        "first_name": address.get("firstName"),
        "last_name": address.get("lastName"),
        "line_1": address.get("street"),
        "city": address.get("city"),
        "state": address.get("state") or "",
        "postal_code": zipcode,
        "zip_code": zipcode,
    }


class CheckoutService:
    """
    Places an order and hands it to the payment gateway.

    The amount charged is always recomputed from catalog prices; a client total
    outside the tolerance rejects the checkout before anything is written or
    sent to the gateway. The order row is committed before submission so a
    failed submission leaves a PendingPayment order without a tracking id.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        settings: Settings,
        session_factory: SessionFactory = get_db_session,
    ):
        self.gateway = gateway
        self.settings = settings
        self._session_factory = session_factory
        self._channel_id: Optional[str] = settings.pesapal_ipn_id

    async def place_order(
        self,
        user_id: str,
        items: Sequence[CartLine],
        address: Dict[str, Any],
        client_amount: Any,
        currency: Optional[str] = None,
    ) -> CheckoutResult:
        currency = currency or self.settings.default_currency
        if not items:
            raise ValidationError("Cart is empty")
        for line in items:
            if not line.product_id or line.quantity <= 0:
                raise ValidationError("Invalid item data: missing product id or quantity")

        async with self._session_factory() as session:
            products = await ProductRepository(session).get_active_products(
                line.product_id for line in items
            )
        priced_items: List[Dict[str, Any]] = []
        subtotal = Decimal("0")
        for line in items:
            product = products.get(line.product_id)
            if product is None:
                raise ValidationError(f"Product {line.product_id} not found")
            subtotal += product.price * line.quantity
            priced_items.append({
                "product_id": product.id,
                "name": product.name,
                "unit_price": str(product.price),
                "quantity": line.quantity,
            })

        amount = subtotal + self.settings.delivery_fee
        submitted = _as_decimal(client_amount)
        difference = abs(amount - submitted)
        if difference > self.settings.amount_tolerance:
            logger.warning("checkout_amount_mismatch", expected=str(amount), submitted=str(submitted))
            raise AmountMismatchError(amount, submitted)
        if difference > 0:
            logger.info("checkout_amount_within_tolerance", difference=str(difference))

        merchant_reference = uuid4().hex
        async with self._session_factory() as session:
            order = await OrderRepository(session).create_order(Order(
                user_id=user_id,
                merchant_reference=merchant_reference,
                items=priced_items,
                amount=amount,
                currency=currency,
                address=dict(address),
                status=OrderStatus.PENDING_PAYMENT.value,
                paid=False,
                payment_method="Pesapal",
            ))
            await EventRepository(session).log_event(Event(
                order_id=order.id,
                type="ORDER_CREATED",
                payload_json={"amount": str(amount), "currency": currency, "items": len(priced_items)},
            ))
            order_id = order.id

        payload = {
            "id": merchant_reference,
            "currency": currency,
            "amount": float(amount),
            "description": f"Order {merchant_reference} - {len(priced_items)} item(s)",
            "callback_url": self.settings.callback_url,
            "billing_address": build_billing_address(address),
        }
        channel_id = await self.resolve_notification_channel()
        if channel_id:
            payload["notification_id"] = channel_id

        try:
            submitted_order = await self.gateway.submit_order(payload)
        except (SubmissionError, AuthError) as e:
            logger.error("checkout_submission_failed", order_id=str(order_id), error=str(e))
            async with self._session_factory() as session:
                await EventRepository(session).log_event(Event(
                    order_id=order_id,
                    type="PAYMENT_SUBMISSION_FAILED",
                    payload_json={"error": str(e)},
                ))
            if isinstance(e, SubmissionError):
                raise
            raise SubmissionError("Failed to initiate payment", status_code=e.status_code) from e

        async with self._session_factory() as session:
            attached = await OrderRepository(session).set_tracking_id(order_id, submitted_order.tracking_id)
            if attached is None:
                # An early IPN already attached this tracking id via the merchant reference
                logger.info("tracking_id_already_attached", order_id=str(order_id))
            await EventRepository(session).log_event(Event(
                order_id=order_id,
                type="ORDER_SUBMITTED",
                payload_json={"tracking_id": submitted_order.tracking_id},
            ))

        logger.info("checkout_completed", order_id=str(order_id), tracking_id=submitted_order.tracking_id)
        return CheckoutResult(
            order_id=order_id,
            merchant_reference=merchant_reference,
            tracking_id=submitted_order.tracking_id,
            redirect_url=submitted_order.redirect_url,
            amount=amount,
        )

    async def resolve_notification_channel(self) -> Optional[str]:
        """
        Configured channel id, else the one registered earlier in this process,
        else register now. Registration failure is not fatal: the order is
        submitted without a notification id and converges via the callback.
        """
        if self._channel_id:
            return self._channel_id
        try:
            self._channel_id = await self.gateway.register_notification_channel(self.settings.ipn_url)
        except GatewayError as e:
            logger.warning("notification_channel_registration_failed", error=str(e))
            return None
        logger.warning(
            "notification_channel_registered",
            channel_id=self._channel_id,
            hint="set PESAPAL_IPN_ID to reuse this channel across restarts",
        )
        return self._channel_id
