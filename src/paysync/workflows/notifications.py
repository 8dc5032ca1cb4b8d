from datetime import timedelta
from typing import Any, Dict, List

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from paysync.activities.notifications import send_payment_email

# At most three delivery attempts per email
EMAIL_RETRY_POLICY = RetryPolicy(
    initial_interval=timedelta(seconds=5),
    backoff_coefficient=4.0,
    maximum_interval=timedelta(minutes=2),
    maximum_attempts=3,
)


@workflow.defn(name="PaymentNotificationWorkflow")
class PaymentNotificationWorkflow:
    def __init__(self) -> None:
        self._current_step = "started"
        self._sent: List[str] = []
        self._failed: List[str] = []

    @workflow.run
    async def run(self, message: Dict[str, Any]) -> Dict[str, List[str]]:
        workflow.logger.info("notification_workflow_started", extra={"order_id": message.get("order_id")})

        audiences = []
        if message.get("recipient"):
            audiences.append("customer")
        else:
            workflow.logger.warning("notification_without_recipient", extra={"order_id": message.get("order_id")})
        if message.get("kind") == "payment_confirmed":
            audiences.append("sales")

        for audience in audiences:
            self._current_step = f"sending_{audience}"
            try:
                await workflow.execute_activity(
                    send_payment_email,
                    args=[message, audience],
                    start_to_close_timeout=timedelta(seconds=30),
                    retry_policy=EMAIL_RETRY_POLICY,
                )
                self._sent.append(audience)
            except ActivityError as e:
                # One audience failing must not stop the other copy from going out.
                workflow.logger.error(
                    "notification_delivery_failed",
                    extra={"order_id": message.get("order_id"), "audience": audience, "error": str(e)},
                )
                self._failed.append(audience)

        self._current_step = "completed"
        return {"sent": self._sent, "failed": self._failed}

    @workflow.query
    def get_current_step(self) -> str:
        return self._current_step
