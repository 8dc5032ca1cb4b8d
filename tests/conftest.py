from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import pytest
from sqlalchemy import event
from temporalio.testing import WorkflowEnvironment

from paysync.common.config import Settings
from paysync.common.db.models import Order, OrderStatus, Product
from paysync.common.db.repositories import OrderRepository
from paysync.common.db.session import configure_database, create_schema, dispose_database, get_db_session
from paysync.common.errors import QueryError
from paysync.gateway.client import NotificationChannel, SubmittedOrder, TransactionStatus
from paysync.notifications.messages import PaymentNotification
from paysync.notifications.sink import NotificationSink, drain_background_dispatches

TRACKING_ID = "b945e4af-80a5-4ec1-8706-e03f8332fb04"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def temporal_env():
    async with await WorkflowEnvironment.start_time_skipping() as env:
        yield env


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        pesapal_consumer_key="key",
        pesapal_consumer_secret="secret",
        pesapal_base_url="https://gateway.test/v3",
        pesapal_ipn_id="ipn-123",
        frontend_url="https://shop.test",
        ipn_url="https://api.shop.test/api/payments/ipn",
        callback_url="https://api.shop.test/api/payments/callback",
        email_sales="sales@shop.test",
    )


@pytest.fixture
async def database(tmp_path):
    """File-backed SQLite where every transaction takes the write lock up front."""
    engine = configure_database(f"sqlite+aiosqlite:///{tmp_path / 'paysync.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await create_schema()
    yield engine
    await drain_background_dispatches()
    await dispose_database()


@pytest.fixture
async def products(database) -> Dict[str, Product]:
    catalog = {
        "panel-400w": Product(id="panel-400w", name="400W Solar Panel", price=Decimal("50.00")),
        "inverter-3kw": Product(id="inverter-3kw", name="3kW Inverter", price=Decimal("120.50")),
        "retired": Product(id="retired", name="Old Battery", price=Decimal("10.00"), active=False),
    }
    async with get_db_session() as session:
        session.add_all(catalog.values())
    return catalog


ADDRESS = {
    "email": "jane@example.com",
    "phone": "+254700000000",
    "firstName": "Jane",
    "lastName": "Wanjiku",
    "street": "Moi Avenue 1",
    "city": "Nairobi",
    "zipcode": "00100",
    "country": "KE",
}


async def create_order(
    merchant_reference: str = "ref-0001",
    tracking_id: Optional[str] = TRACKING_ID,
    amount: str = "110.00",
    status: OrderStatus = OrderStatus.PENDING_PAYMENT,
    paid: bool = False,
) -> Order:
    async with get_db_session() as session:
        order = Order(
            user_id="user-1",
            merchant_reference=merchant_reference,
            tracking_id=tracking_id,
            items=[{"product_id": "panel-400w", "name": "400W Solar Panel", "unit_price": "50.00", "quantity": 2}],
            amount=Decimal(amount),
            currency="KES",
            address=dict(ADDRESS),
            status=status.value,
            paid=paid,
        )
        session.add(order)
        await session.flush()
    return order


async def load_order(order_id) -> Order:
    async with get_db_session() as session:
        return await OrderRepository(session).get_order_by_id(order_id)


class FakeGateway:
    """
    Stands in for GatewayClient.
    `statuses` maps tracking id to the status string (or exception) the next
    query returns; a list is consumed one entry per call.
    """

    def __init__(self):
        self.statuses: Dict[str, Union[str, Exception, List[Union[str, Exception]]]] = {}
        self.amounts: Dict[str, Decimal] = {}
        self.status_queries: List[str] = []
        self.submitted: List[Dict[str, Any]] = []
        self.submit_error: Optional[Exception] = None
        self.next_tracking_id = TRACKING_ID
        self.registered: List[str] = []
        self.register_error: Optional[Exception] = None
        self.channels: List[NotificationChannel] = []

    async def query_status(self, tracking_id: str) -> TransactionStatus:
        self.status_queries.append(tracking_id)
        configured = self.statuses.get(tracking_id)
        if isinstance(configured, list):
            configured = configured.pop(0) if len(configured) > 1 else configured[0]
        if configured is None:
            raise QueryError(f"Unknown tracking id {tracking_id}", status_code=404)
        if isinstance(configured, Exception):
            raise configured
        return TransactionStatus(
            tracking_id=tracking_id,
            status=configured,
            amount=self.amounts.get(tracking_id),
            currency="KES",
            confirmation_code="CONF123" if configured == "COMPLETED" else None,
        )

    async def submit_order(self, payload: Dict[str, Any]) -> SubmittedOrder:
        self.submitted.append(payload)
        if self.submit_error is not None:
            raise self.submit_error
        return SubmittedOrder(
            tracking_id=self.next_tracking_id,
            redirect_url=f"https://gateway.test/pay/{self.next_tracking_id}",
            merchant_reference=payload["id"],
        )

    async def register_notification_channel(self, callback_url: str, notification_type: str = "GET") -> str:
        self.registered.append(callback_url)
        if self.register_error is not None:
            raise self.register_error
        return f"ipn-{len(self.registered)}"

    async def list_notification_channels(self) -> List[NotificationChannel]:
        return list(self.channels)

    async def aclose(self) -> None:
        pass


class RecordingSink(NotificationSink):
    def __init__(self, error: Optional[Exception] = None):
        self.sent: List[PaymentNotification] = []
        self.error = error

    async def send(self, notification: PaymentNotification) -> None:
        self.sent.append(notification)
        if self.error is not None:
            raise self.error


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
