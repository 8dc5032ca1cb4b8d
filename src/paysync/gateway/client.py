"""
Pesapal v3 API client.

Every call except token issuance carries a bearer token obtained through
`authenticate()`, which serves it from the TokenCache while it is still valid.
Pesapal often answers HTTP 200 with an `error` object in the body, so both the
status code and the body are checked before a response is trusted.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Type

import httpx
from structlog import get_logger

from paysync.common.config import Settings
from paysync.common.errors import AuthError, GatewayError, QueryError, SubmissionError
from paysync.gateway.tokens import TokenCache
from paysync.reconciliation.states import normalize_status

logger = get_logger()

TOKEN_PATH = "/api/Auth/RequestToken"
SUBMIT_ORDER_PATH = "/api/Transactions/SubmitOrderRequest"
TRANSACTION_STATUS_PATH = "/api/Transactions/GetTransactionStatus"
REGISTER_IPN_PATH = "/api/URLSetup/RegisterIPN"
LIST_IPN_PATH = "/api/URLSetup/GetIpnList"


@dataclass
class SubmittedOrder:
    tracking_id: str
    redirect_url: str
    merchant_reference: Optional[str] = None


@dataclass
class TransactionStatus:
    tracking_id: str
    status: str
    status_code: Optional[int] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    confirmation_code: Optional[str] = None
    payment_method: Optional[str] = None
    merchant_reference: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "tracking_id": self.tracking_id,
            "status": self.status,
            "status_code": self.status_code,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "confirmation_code": self.confirmation_code,
            "payment_method": self.payment_method,
            "merchant_reference": self.merchant_reference,
        }


@dataclass
class NotificationChannel:
    channel_id: Optional[str]
    url: Optional[str]
    notification_type: Optional[str] = None
    status: Optional[str] = None


def _gateway_error_message(body: Any) -> Optional[str]:
    """Return the message of a Pesapal error object, if the body carries one."""
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        # Successful responses carry an error object whose fields are all null
        return error.get("message") or error.get("code") or error.get("error_type") or None
    return str(error)


def _parse_expiry(value: Optional[str]) -> Optional[datetime]:
    """Parse Pesapal's expiryDate, which carries 7 fractional digits and a trailing Z."""
    if not value:
        return None
    text = value.strip().replace("Z", "+00:00")
    text = re.sub(r"\.(\d{6})\d+", r".\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def extract_channel_list(body: Any) -> List[Dict[str, Any]]:
    """GetIpnList has been observed returning the list bare or nested under data/ipns."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        data = body.get("data")
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("data"), list):
            return data["data"]
        if isinstance(body.get("ipns"), list):
            return body["ipns"]
    return []


def _channel_from_entry(entry: Dict[str, Any]) -> NotificationChannel:
    channel_id = (
        entry.get("ipn_id")
        or entry.get("ipn_notification_id")
        or entry.get("ipnNotificationId")
        or entry.get("notification_id")
        or entry.get("id")
    )
    url = entry.get("url") or entry.get("ipn_listener_url") or entry.get("ipnListenerUrl")
    return NotificationChannel(
        channel_id=channel_id,
        url=url,
        notification_type=entry.get("ipn_notification_type_description") or entry.get("notification_type"),
        status=entry.get("ipn_status_description") or entry.get("ipn_status"),
    )


class GatewayClient:
    def __init__(
        self,
        settings: Settings,
        token_cache: Optional[TokenCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.token_cache = token_cache or TokenCache(settings.pesapal_token_margin_seconds)
        self._client = httpx.AsyncClient(
            base_url=settings.pesapal_base_url,
            timeout=settings.pesapal_timeout_seconds,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- Auth ---

    async def authenticate(self) -> str:
        cached = self.token_cache.get()
        if cached:
            return cached

        logger.info("gateway_token_requested", env=self.settings.pesapal_env)
        try:
            response = await self._client.post(
                TOKEN_PATH,
                json={
                    "consumer_key": self.settings.pesapal_consumer_key,
                    "consumer_secret": self.settings.pesapal_consumer_secret,
                },
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Token endpoint unreachable: {e.__class__.__name__}") from e

        body = self._json(response)
        message = _gateway_error_message(body)
        if response.is_error or message:
            raise AuthError(message or "Token request rejected", status_code=response.status_code)

        token = body.get("token") if isinstance(body, dict) else None
        if not token:
            raise AuthError("Token response did not include a token", status_code=response.status_code)

        lifetime = float(self.settings.pesapal_token_lifetime_seconds)
        expires = _parse_expiry(body.get("expiryDate"))
        if expires is not None:
            declared = (expires - datetime.now(timezone.utc)).total_seconds()
            if declared > 0:
                lifetime = declared

        self.token_cache.store(token, lifetime)
        logger.info("gateway_token_cached", lifetime_seconds=int(lifetime))
        return token

    # --- Operations ---

    async def submit_order(self, payload: Dict[str, Any]) -> SubmittedOrder:
        response = await self._authorized("POST", SUBMIT_ORDER_PATH, SubmissionError, json=payload)
        body = self._checked_body(response, SubmissionError, "Order submission failed")

        tracking_id = body.get("order_tracking_id")
        redirect_url = body.get("redirect_url")
        if not tracking_id or not redirect_url:
            raise SubmissionError("Malformed submission response", status_code=response.status_code)

        logger.info("gateway_order_submitted", merchant_reference=payload.get("id"), tracking_id=tracking_id)
        return SubmittedOrder(
            tracking_id=tracking_id,
            redirect_url=redirect_url,
            merchant_reference=body.get("merchant_reference"),
        )

    async def query_status(self, tracking_id: str) -> TransactionStatus:
        response = await self._authorized(
            "GET", TRANSACTION_STATUS_PATH, QueryError, params={"orderTrackingId": tracking_id}
        )
        body = self._json(response)
        message = _gateway_error_message(body)
        if response.is_error or not isinstance(body, dict):
            raise QueryError(message or f"Status query failed for {tracking_id}", status_code=response.status_code)

        status_code = body.get("status_code")
        try:
            status_code = int(status_code) if status_code is not None else None
        except (TypeError, ValueError):
            status_code = None

        # INVALID transactions come back as a 200 carrying both a status and an error object
        description = body.get("payment_status_description")
        if not isinstance(description, str) or not description.strip():
            description = None
        if description is None and status_code is None:
            raise QueryError(message or f"Status query failed for {tracking_id}", status_code=response.status_code)
        if message:
            logger.warning("gateway_status_with_error", tracking_id=tracking_id, error=message)

        amount = body.get("amount")
        try:
            amount = Decimal(str(amount)) if amount is not None else None
        except InvalidOperation:
            amount = None

        status = TransactionStatus(
            tracking_id=tracking_id,
            status=normalize_status(description, status_code),
            status_code=status_code,
            amount=amount,
            currency=body.get("currency"),
            confirmation_code=body.get("confirmation_code"),
            payment_method=body.get("payment_method"),
            merchant_reference=body.get("merchant_reference"),
            raw=body,
        )
        logger.info("gateway_status_fetched", tracking_id=tracking_id, status=status.status)
        return status

    async def register_notification_channel(self, callback_url: str, notification_type: str = "GET") -> str:
        response = await self._authorized(
            "POST",
            REGISTER_IPN_PATH,
            GatewayError,
            json={"url": callback_url, "ipn_notification_type": notification_type},
        )
        body = self._checked_body(response, GatewayError, "IPN registration failed")
        channel_id = body.get("ipn_id")
        if not channel_id:
            raise GatewayError("IPN registration response did not include ipn_id")
        logger.info("gateway_channel_registered", url=callback_url, channel_id=channel_id)
        return channel_id

    async def list_notification_channels(self) -> List[NotificationChannel]:
        response = await self._authorized("GET", LIST_IPN_PATH, GatewayError)
        body = self._json(response)
        if response.is_error:
            raise GatewayError(
                _gateway_error_message(body) or "IPN list request failed",
                status_code=response.status_code,
            )
        return [_channel_from_entry(entry) for entry in extract_channel_list(body) if isinstance(entry, dict)]

    # --- Helpers ---

    async def _authorized(
        self, method: str, path: str, error_cls: Type[GatewayError], **kwargs
    ) -> httpx.Response:
        """
        Send a bearer-authorised request. A 401 means our cached token went stale
        on the gateway side; drop it and retry exactly once with a fresh one.
        """
        response = await self._send(method, path, error_cls, await self.authenticate(), **kwargs)
        if response.status_code == 401:
            logger.warning("gateway_token_rejected", path=path)
            self.token_cache.invalidate()
            response = await self._send(method, path, error_cls, await self.authenticate(), **kwargs)
        return response

    async def _send(
        self, method: str, path: str, error_cls: Type[GatewayError], token: str, **kwargs
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
        except httpx.TimeoutException as e:
            raise error_cls(f"Gateway timed out on {path}") from e
        except httpx.HTTPError as e:
            raise error_cls(f"Gateway request to {path} failed: {e.__class__.__name__}") from e

    def _checked_body(
        self, response: httpx.Response, error_cls: Type[GatewayError], default_message: str
    ) -> Dict[str, Any]:
        body = self._json(response)
        message = _gateway_error_message(body)
        if response.is_error or message or not isinstance(body, dict):
            raise error_cls(message or default_message, status_code=response.status_code)
        return body

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None
