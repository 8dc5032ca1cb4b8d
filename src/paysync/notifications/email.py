from typing import Optional

import httpx
from structlog import get_logger

from paysync.common.errors import PaySyncError

logger = get_logger()

RESEND_API_URL = "https://api.resend.com"


class EmailDeliveryError(PaySyncError):
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class EmailClient:
    """Thin client for the Resend HTTP API."""

    def __init__(self, api_key: Optional[str], timeout_seconds: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        if not api_key:
            raise EmailDeliveryError("RESEND_API_KEY is not configured", retryable=False)
        self._client = httpx.AsyncClient(
            base_url=RESEND_API_URL,
            timeout=timeout_seconds,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    async def __aenter__(self) -> "EmailClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self._client.aclose()

    async def send(self, to: str, sender: str, subject: str, html: str, text: str,
                   reply_to: Optional[str] = None) -> str:
        payload = {"from": sender, "to": [to], "subject": subject, "html": html, "text": text}
        if reply_to:
            payload["reply_to"] = reply_to

        try:
            response = await self._client.post("/emails", json=payload)
        except httpx.HTTPError as e:
            raise EmailDeliveryError(f"Email API unreachable: {e.__class__.__name__}") from e

        if response.is_error:
            # 4xx other than rate limiting will not get better on retry
            retryable = response.status_code == 429 or response.status_code >= 500
            raise EmailDeliveryError(
                f"Email API returned {response.status_code}", retryable=retryable
            )

        email_id = response.json().get("id", "")
        logger.info("email_sent", to=to, subject=subject, email_id=email_id)
        return email_id
