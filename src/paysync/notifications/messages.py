from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

from paysync.common.db.models import Order


class NotificationKind(str, Enum):
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"


@dataclass(frozen=True)
class PaymentNotification:
    kind: NotificationKind
    order_id: str
    merchant_reference: str
    tracking_id: str
    amount: str
    currency: str
    recipient: Optional[str] = None
    customer_name: Optional[str] = None
    sales_recipient: Optional[str] = None

    @classmethod
    def for_order(cls, kind: NotificationKind, order: Order, sales_recipient: Optional[str] = None) -> "PaymentNotification":
        address = order.address or {}
        name = " ".join(part for part in (address.get("firstName"), address.get("lastName")) if part)
        return cls(
            kind=kind,
            order_id=str(order.id),
            merchant_reference=order.merchant_reference,
            tracking_id=order.tracking_id or "",
            amount=str(order.amount),
            currency=order.currency,
            recipient=address.get("email") or None,
            customer_name=name or None,
            sales_recipient=sales_recipient,
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        return payload

    @property
    def workflow_id(self) -> str:
        return f"notify-{self.kind.value}-{self.order_id}-{self.tracking_id}"


def render_email(message: Dict[str, Any], audience: str = "customer") -> Dict[str, str]:
    """
    Build subject/text/html for a payment notification payload.
    `audience` is "customer" or "sales" (internal copy of a confirmed order).
    """
    kind = message["kind"]
    greeting = f"Hi {message.get('customer_name') or 'there'},"
    reference = message["merchant_reference"]
    total = f"{message['currency']} {message['amount']}"

    if audience == "sales":
        subject = f"New paid order {reference}"
        lines = [
            f"Order {reference} has been paid.",
            f"Amount: {total}",
            f"Tracking id: {message['tracking_id']}",
            f"Customer: {message.get('customer_name') or 'N/A'} <{message.get('recipient') or 'N/A'}>",
        ]
    elif kind == NotificationKind.PAYMENT_CONFIRMED.value:
        subject = f"Payment received for order {reference}"
        lines = [
            greeting,
            f"We have received your payment of {total} for order {reference}.",
            "We'll let you know as soon as your order ships.",
        ]
    else:
        subject = f"Payment for order {reference} was not completed"
        lines = [
            greeting,
            f"Your payment of {total} for order {reference} did not go through.",
            "No money was taken for this attempt. You can place the order again from your cart.",
        ]

    text = "\n\n".join(lines + ["Best regards,\nSun Mega Team"])
    html = "".join(f"<p>{line}</p>" for line in lines) + "<p>Best regards,<br>Sun Mega Team</p>"
    return {"subject": subject, "text": text, "html": html}
