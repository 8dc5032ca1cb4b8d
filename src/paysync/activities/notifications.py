from typing import Any

from temporalio import activity
from temporalio.exceptions import ApplicationError

from paysync.common.config import get_settings
from paysync.notifications.email import EmailClient, EmailDeliveryError
from paysync.notifications.messages import render_email

# -----------------------------------------------------------------------------
# Retry policy lives on the workflow side (bounded to 3 attempts).
# send_payment_email: NonRetryable when the API key is missing or the email
#                     provider rejects the request outright (4xx except 429).
# -----------------------------------------------------------------------------

@activity.defn
async def send_payment_email(message: dict[str, Any], audience: str) -> str:
    """
    Render and send one payment email.
    `audience` selects the customer copy or the internal sales copy.
    """
    activity.logger.info(
        "activity_started",
        extra={"activity": "send_payment_email", "order_id": message.get("order_id"), "audience": audience},
    )
    settings = get_settings()

    recipient = settings.email_sales if audience == "sales" else message.get("recipient")
    if audience == "sales" and message.get("sales_recipient"):
        recipient = message["sales_recipient"]
    if not recipient:
        raise ApplicationError(f"No recipient for {audience} notification", non_retryable=True)

    content = render_email(message, audience)
    try:
        async with EmailClient(settings.resend_api_key) as client:
            email_id = await client.send(
                to=recipient,
                sender=settings.email_no_reply,
                subject=content["subject"],
                html=content["html"],
                text=content["text"],
            )
    except EmailDeliveryError as e:
        # Retryable failures propagate as plain errors so the workflow's RetryPolicy applies.
        if not e.retryable:
            raise ApplicationError(str(e), non_retryable=True) from e
        raise

    activity.logger.info("activity_completed", extra={"activity": "send_payment_email", "email_id": email_id})
    return email_id
