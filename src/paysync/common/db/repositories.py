from datetime import datetime
from typing import Iterable, Optional, List
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from paysync.common.db.models import Order, Product, LedgerEntry, LedgerState, Event, OrderStatus
from paysync.reconciliation.states import Outcome, Transition

logger = get_logger()


def _dialect_insert(session: AsyncSession):
    """Pick the insert construct that supports ON CONFLICT for the bound dialect."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert is not supported on dialect {name!r}")


class OrderRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_order(self, order: Order) -> Order:
        """Create a new order."""
        self.session.add(order)
        await self.session.flush()
        return order

    async def get_order_by_id(self, order_id: UUID) -> Optional[Order]:
        """Fetch order by ID."""
        result = await self.session.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def get_order_by_tracking_id(self, tracking_id: str) -> Optional[Order]:
        result = await self.session.execute(select(Order).where(Order.tracking_id == tracking_id))
        return result.scalar_one_or_none()

    async def get_order_by_merchant_reference(self, reference: str) -> Optional[Order]:
        result = await self.session.execute(
            select(Order).where(Order.merchant_reference == reference)
        )
        return result.scalar_one_or_none()

    async def set_tracking_id(self, order_id: UUID, tracking_id: str) -> Optional[Order]:
        """
        Attach the gateway tracking id to an order that doesn't have one yet.
        Returns None if the order already carries a tracking id (or doesn't exist).
        """
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.tracking_id.is_(None))
            .values(tracking_id=tracking_id)
            .returning(Order)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def apply_payment_status(self, order_id: UUID, transition: Transition) -> Optional[Order]:
        """
        Atomically apply a gateway observation.

        The guard lives in the WHERE clause so concurrent reconciliations of the
        same order (webhook racing the redirect callback) cannot both win, and a
        pending echo can never downgrade a paid order. Returns the updated order,
        or None when the guard rejected the write.
        """
        if transition.outcome is Outcome.SUCCESS:
            guard = or_(Order.status != OrderStatus.PAID.value, Order.paid.is_(False))
        elif transition.outcome is Outcome.FAILURE:
            guard = or_(Order.status != OrderStatus.PAYMENT_FAILED.value, Order.paid.is_(True))
        else:
            guard = and_(Order.status == OrderStatus.PENDING_PAYMENT.value, Order.paid.is_(False))

        stmt = (
            update(Order)
            .where(Order.id == order_id, guard)
            .values(
                status=transition.target.value,
                paid=transition.paid,
                last_gateway_status=transition.gateway_status,
            )
            .returning(Order)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_gateway_status(self, order_id: UUID, gateway_status: str) -> None:
        """Remember the latest raw gateway status without touching payment state."""
        await self.session.execute(
            update(Order).where(Order.id == order_id).values(last_gateway_status=gateway_status)
        )


class ProductRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active_products(self, product_ids: Iterable[str]) -> dict[str, Product]:
        ids = list(set(product_ids))
        if not ids:
            return {}
        result = await self.session.execute(
            select(Product).where(Product.id.in_(ids), Product.active.is_(True))
        )
        return {product.id: product for product in result.scalars().all()}


class LedgerRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert_arrival(self, tracking_id: str, now: datetime) -> LedgerEntry:
        """
        Record a notification arrival in one statement.
        The creating insert leaves retry_count at 0; conflicting arrivals increment it.
        """
        insert = _dialect_insert(self.session)
        stmt = insert(LedgerEntry).values(
            tracking_id=tracking_id,
            processing_state=LedgerState.PROCESSING.value,
            locked_at=now,
            retry_count=0,
        )
        stmt = (
            stmt.on_conflict_do_update(
                index_elements=["tracking_id"],
                set_={"retry_count": LedgerEntry.__table__.c.retry_count + 1},
            )
            .returning(LedgerEntry)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def reclaim(self, tracking_id: str, now: datetime, stale_before: Optional[datetime]) -> Optional[LedgerEntry]:
        """
        Take over an entry whose first processor gave up: 'failed' entries always,
        entries stuck in 'processing' since before `stale_before` (crashed
        processor) when a cutoff is given. Conditional, so only one caller wins.
        Completed entries are never reclaimed.
        """
        reclaimable = LedgerEntry.processing_state == LedgerState.FAILED.value
        if stale_before is not None:
            reclaimable = or_(
                reclaimable,
                and_(
                    LedgerEntry.processing_state.in_(
                        [LedgerState.PROCESSING.value, LedgerState.PENDING.value]
                    ),
                    LedgerEntry.locked_at < stale_before,
                ),
            )
        stmt = (
            update(LedgerEntry)
            .where(LedgerEntry.tracking_id == tracking_id, reclaimable)
            .values(processing_state=LedgerState.PROCESSING.value, locked_at=now)
            .returning(LedgerEntry)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark(self, tracking_id: str, state: LedgerState, now: datetime,
                   result_status: Optional[str] = None, error: Optional[str] = None) -> Optional[LedgerEntry]:
        values = {"processing_state": state.value, "processed_at": now}
        if result_status is not None:
            values["result_status"] = result_status
        if error is not None:
            values["last_error"] = error[:1000]
        stmt = (
            update(LedgerEntry)
            .where(LedgerEntry.tracking_id == tracking_id)
            .values(**values)
            .returning(LedgerEntry)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, tracking_id: str) -> Optional[LedgerEntry]:
        result = await self.session.execute(
            select(LedgerEntry).where(LedgerEntry.tracking_id == tracking_id)
        )
        return result.scalar_one_or_none()


class EventRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def log_event(self, event: Event) -> Event:
        """Append an event to the audit log."""
        self.session.add(event)
        await self.session.flush()
        logger.info("event_logged", event_type=event.type, order_id=str(event.order_id))
        return event

    async def get_events_for_order(self, order_id: UUID) -> List[Event]:
        """Retrieve all events for a specific order."""
        result = await self.session.execute(
            select(Event).where(Event.order_id == order_id).order_by(Event.ts)
        )
        return list(result.scalars().all())
