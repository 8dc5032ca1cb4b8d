"""
Order payment state machine.

    PendingPayment --COMPLETED--> Paid
    PendingPayment --FAILED/INVALID/REVERSED--> PaymentFailed
    Paid --FAILED/INVALID/REVERSED--> PaymentFailed   (chargeback / reversal)
    PaymentFailed --COMPLETED--> Paid                  (customer retried on the gateway page)

Anything else the gateway reports (PENDING, unknown values, nothing at all) is a
pending echo: it may rewrite a PendingPayment/unpaid order to itself and must
never touch a Paid or PaymentFailed order.

The guards are evaluated inside a single conditional UPDATE by
OrderRepository.apply_payment_status.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from paysync.common.db.models import OrderStatus

SUCCESS_STATUSES = frozenset({"COMPLETED"})
FAILURE_STATUSES = frozenset({"FAILED", "INVALID", "REVERSED"})

# GetTransactionStatus also reports a numeric status_code
STATUS_CODES = {
    0: "INVALID",
    1: "COMPLETED",
    2: "FAILED",
    3: "REVERSED",
}


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


@dataclass(frozen=True)
class Transition:
    outcome: Outcome
    target: OrderStatus
    paid: bool
    gateway_status: str

    @property
    def is_terminal(self) -> bool:
        return self.outcome is not Outcome.PENDING


def normalize_status(description: Optional[str], status_code: Optional[int] = None) -> str:
    """Upper-case the gateway's description, falling back to its numeric code."""
    if description and description.strip():
        return description.strip().upper()
    if status_code is not None and status_code in STATUS_CODES:
        return STATUS_CODES[status_code]
    return "UNKNOWN"


def plan_transition(gateway_status: str) -> Transition:
    status = (gateway_status or "").strip().upper()
    if status in SUCCESS_STATUSES:
        return Transition(Outcome.SUCCESS, OrderStatus.PAID, True, status)
    if status in FAILURE_STATUSES:
        return Transition(Outcome.FAILURE, OrderStatus.PAYMENT_FAILED, False, status)
    return Transition(Outcome.PENDING, OrderStatus.PENDING_PAYMENT, False, status or "UNKNOWN")
