import hmac
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, quote

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from structlog import get_logger

from paysync.api.models import (
    ChannelRegistrationRequest, ChannelResponse, CheckoutRequest, CheckoutResponse,
    GatewayStatusResponse, ReconcileResponse,
)
from paysync.checkout.service import CartLine, CheckoutService
from paysync.common.config import Settings, get_settings
from paysync.common.db.session import configure_database, dispose_database
from paysync.common.errors import GatewayError, NotFoundError, SubmissionError, ValidationError
from paysync.common.logging import configure_logging
from paysync.common.temporal import get_temporal_client
from paysync.gateway.client import GatewayClient
from paysync.notifications.sink import LoggingNotificationSink, NotificationSink, TemporalNotificationSink
from paysync.reconciliation.engine import SIGNATURE_HEADER, NotificationOutcome, ReconciliationEngine, WebhookResult

logger = get_logger()


@dataclass
class Services:
    settings: Settings
    gateway: GatewayClient
    engine: ReconciliationEngine
    checkout: CheckoutService


async def build_services(settings: Settings) -> Services:
    configure_database(settings.database_url)
    gateway = GatewayClient(settings)

    sink: NotificationSink
    try:
        temporal_client = await get_temporal_client(settings)
        sink = TemporalNotificationSink(temporal_client, settings.notifications_task_queue)
    except Exception as e:
        # Payments must keep reconciling even if email delivery is down
        logger.error("temporal_unavailable", error=str(e))
        sink = LoggingNotificationSink()

    return Services(
        settings=settings,
        gateway=gateway,
        engine=ReconciliationEngine(gateway, sink, settings),
        checkout=CheckoutService(gateway, settings),
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the API. Tests pass pre-built services; otherwise they are created
    from the environment at startup and torn down at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        owned = services is None
        app.state.services = await build_services(get_settings()) if owned else services
        logger.info("api_started", env=app.state.services.settings.pesapal_env)
        yield
        logger.info("api_shutting_down")
        await app.state.services.engine.drain()
        if owned:
            await app.state.services.gateway.aclose()
            await dispose_database()

    app = FastAPI(title="PaySync API", version="0.1.0", lifespan=lifespan)
    app.include_router(router)
    return app


# --- Dependencies ---

def get_services(request: Request) -> Services:
    return request.app.state.services


def require_admin(
    services: Services = Depends(get_services),
    x_admin_token: Optional[str] = Header(None),
) -> None:
    expected = services.settings.admin_api_token
    if not expected:
        raise HTTPException(status_code=403, detail="Admin endpoints are disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")


router = APIRouter()

# --- Endpoints ---

@router.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.post("/api/orders/checkout", response_model=CheckoutResponse)
async def checkout(request: CheckoutRequest, services: Services = Depends(get_services)):
    """Create the order and return the gateway page the browser should go to."""
    try:
        result = await services.checkout.place_order(
            user_id=request.user_id,
            items=[CartLine(item.product_id, item.quantity) for item in request.items],
            address=request.address,
            client_amount=request.amount,
            currency=request.currency,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SubmissionError:
        raise HTTPException(status_code=502, detail="Failed to initiate payment")

    return CheckoutResponse(
        order_id=result.order_id,
        merchant_reference=result.merchant_reference,
        tracking_id=result.tracking_id,
        redirect_url=result.redirect_url,
        amount=result.amount,
    )


async def _notification_payload(request: Request) -> Dict[str, Any]:
    payload: Dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return payload

    body = await request.body()
    if not body:
        return payload
    if request.headers.get("content-type", "").startswith("application/json"):
        data = await request.json()
        if isinstance(data, dict):
            payload.update(data)
    else:
        payload.update(dict(parse_qsl(body.decode("utf-8", errors="replace"))))
    return payload


@router.api_route("/api/payments/ipn", methods=["GET", "POST"])
async def payment_ipn(request: Request, services: Services = Depends(get_services)):
    """
    Gateway IPN. Always answers 200 with the acknowledgement body; whatever went
    wrong internally is logged, never reflected back to the sender.
    """
    payload: Dict[str, Any] = {}
    try:
        payload = await _notification_payload(request)
        result = await services.engine.handle_notification(
            payload, request.headers.get(SIGNATURE_HEADER)
        )
    except Exception as e:
        logger.exception("ipn_endpoint_error", error=str(e))
        result = WebhookResult(
            NotificationOutcome.ERROR,
            tracking_id=payload.get("OrderTrackingId"),
            merchant_reference=payload.get("OrderMerchantReference"),
            notification_type=payload.get("OrderNotificationType"),
        )
    logger.info("ipn_acknowledged", outcome=result.outcome.value)
    return JSONResponse(result.acknowledgement(), status_code=200)


@router.get("/api/payments/callback")
async def payment_callback(
    request: Request,
    services: Services = Depends(get_services),
):
    """Browser lands here after the gateway page; reconcile and bounce to the storefront."""
    frontend = services.settings.frontend_url
    tracking_id = request.query_params.get("OrderTrackingId")
    merchant_reference = request.query_params.get("OrderMerchantReference")

    if not tracking_id:
        return RedirectResponse(f"{frontend}/payment-failure", status_code=302)

    try:
        result = await services.engine.verify_and_update(tracking_id, merchant_reference)
    except Exception as e:
        logger.exception("payment_callback_failed", tracking_id=tracking_id, error=str(e))
        return RedirectResponse(f"{frontend}/payment-failure", status_code=302)

    page = "payment-success" if result.paid else "payment-failure"
    return RedirectResponse(f"{frontend}/{page}?orderId={quote(tracking_id)}", status_code=302)


@router.get(
    "/api/payments/status",
    response_model=GatewayStatusResponse,
    dependencies=[Depends(require_admin)],
)
async def payment_status(
    order_tracking_id: str = Query(..., alias="orderTrackingId"),
    services: Services = Depends(get_services),
):
    """Read-only: what the gateway says right now. Does not touch the order."""
    try:
        status = await services.engine.query_only(order_tracking_id)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return GatewayStatusResponse(**status.as_dict())


@router.post(
    "/api/payments/verify",
    response_model=ReconcileResponse,
    dependencies=[Depends(require_admin)],
)
async def verify_payment(
    order_tracking_id: str = Query(..., alias="orderTrackingId"),
    merchant_reference: Optional[str] = Query(None, alias="orderMerchantReference"),
    services: Services = Depends(get_services),
):
    """Re-query the gateway and apply the result to the order."""
    try:
        result = await services.engine.verify_and_update(order_tracking_id, merchant_reference)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return ReconcileResponse(
        order_id=result.order_id,
        merchant_reference=result.merchant_reference,
        tracking_id=result.tracking_id,
        gateway_status=result.gateway_status,
        status=result.status,
        paid=result.paid,
        transitioned=result.transitioned,
    )


@router.post(
    "/api/payments/channels",
    response_model=ChannelResponse,
    dependencies=[Depends(require_admin)],
)
async def register_channel(
    request: ChannelRegistrationRequest,
    services: Services = Depends(get_services),
):
    """Register an IPN URL with the gateway. Meant to be run once per deployment."""
    try:
        channel_id = await services.gateway.register_notification_channel(
            request.url, request.notification_type
        )
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return ChannelResponse(channel_id=channel_id, url=request.url, notification_type=request.notification_type)


@router.get(
    "/api/payments/channels",
    response_model=List[ChannelResponse],
    dependencies=[Depends(require_admin)],
)
async def list_channels(services: Services = Depends(get_services)):
    try:
        channels = await services.gateway.list_notification_channels()
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return [ChannelResponse(**vars(channel)) for channel in channels]


app = create_app()
