"""
Order Management System - SQLAlchemy repository.

Relational implementation of OrderRepository on SQLAlchemy 2.0 asyncio.
Status transitions compile to a single guarded statement:

    UPDATE orders SET ... WHERE order_id = :id AND status IN (...)

and the affected row count decides whether the transition applied.
Datetimes are stored as naive UTC.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Collection, Dict, List, Optional

import structlog
from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .repository import OrderRepository, check_mutable
from ..gateways.exceptions import DataIntegrityError, ValidationError
from ..gateways.models import (
    Address,
    Order,
    OrderStatus,
    PayoutRecord,
    PayoutStatus,
    RefundRecord,
    RefundStatus,
    Reservation,
    utcnow
)

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    pass


class OrderRow(Base):
    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    items: Mapped[list] = mapped_column(JSON, nullable=False)

    subtotal: Mapped[int] = mapped_column(Integer, nullable=False)
    delivery_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(48), nullable=False, index=True)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    payment_shared: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    buyer_email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    seller_email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    seller_subaccount: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payout_recipient: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    pickup_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    delivery_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    weight_grams: Mapped[int] = mapped_column(Integer, nullable=False, default=500)

    delivery_method: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    locker_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    courier_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    tracking_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    label_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dropoff_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    shipment_status: Mapped[str] = mapped_column(String(32), nullable=False)
    shipment_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    decline_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    refund_status: Mapped[str] = mapped_column(String(16), nullable=False)
    refund_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payout_status: Mapped[str] = mapped_column(String(16), nullable=False, default="none")

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    committed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    collected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    declined_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class RefundRow(Base):
    __tablename__ = "refunds"

    refund_key: Mapped[str] = mapped_column(String(200), primary_key=True)
    payment_reference: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    refund_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class PayoutRow(Base):
    __tablename__ = "payouts"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    recipient: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reference: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    transfer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class ReservationRow(Base):
    __tablename__ = "reservations"

    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    reserved_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reserved_until: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)


class WebhookEventRow(Base):
    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


# Order fields stored as JSON address objects
_ADDRESS_FIELDS = ("pickup_address", "delivery_address")
_ORDER_COLUMNS = tuple(c.key for c in OrderRow.__table__.columns)


def _to_db_datetime(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_datetime(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _to_column(value: Any) -> Any:
    """Convert a model value to its column representation."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Address):
        return value.to_dict()
    if isinstance(value, datetime):
        return _to_db_datetime(value)
    return value


def _order_to_values(order: Order) -> Dict[str, Any]:
    return {name: _to_column(getattr(order, name)) for name in _ORDER_COLUMNS}


def _row_to_order(row: OrderRow) -> Order:
    values = {name: getattr(row, name) for name in _ORDER_COLUMNS}
    for name in _ADDRESS_FIELDS:
        values[name] = Address.from_dict(values[name])
    for name, value in values.items():
        if isinstance(value, datetime):
            values[name] = _from_db_datetime(value)
    values["items"] = list(values["items"])
    return Order(**values)


def _row_to_refund(row: RefundRow) -> RefundRecord:
    return RefundRecord(
        refund_key=row.refund_key,
        payment_reference=row.payment_reference,
        order_id=row.order_id,
        amount=row.amount,
        reason=row.reason,
        status=row.status,
        refund_id=row.refund_id,
        attempts=row.attempts,
        last_error=row.last_error,
        created_at=_from_db_datetime(row.created_at),
        updated_at=_from_db_datetime(row.updated_at)
    )


def _row_to_payout(row: PayoutRow) -> PayoutRecord:
    return PayoutRecord(
        order_id=row.order_id,
        seller_id=row.seller_id,
        recipient=row.recipient,
        amount=row.amount,
        reference=row.reference,
        status=row.status,
        transfer_id=row.transfer_id,
        attempts=row.attempts,
        last_error=row.last_error,
        created_at=_from_db_datetime(row.created_at),
        updated_at=_from_db_datetime(row.updated_at)
    )


def _row_to_reservation(row: ReservationRow) -> Reservation:
    return Reservation(
        item_id=row.item_id,
        reserved_by=row.reserved_by,
        reserved_until=_from_db_datetime(row.reserved_until)
    )


def _guard_clause(column, allowed: Collection[Any]):
    """Build "column IN (...)" that also matches NULL when None is allowed."""
    values = [_to_column(v) for v in allowed if v is not None]
    clause = column.in_(values)
    if any(v is None for v in allowed):
        clause = or_(clause, column.is_(None))
    return clause


class SqlAlchemyOrderRepository(OrderRepository):
    """
    OrderRepository on an async SQLAlchemy engine.

    Any driver with rowcount support works; tests and sandbox runs use
    sqlite+aiosqlite.
    """

    def __init__(self, engine: AsyncEngine):
        """
        Initialize repository.

        Args:
            engine: Async engine (see from_url)
        """
        self.engine = engine
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)

        logger.info("SqlAlchemyOrderRepository initialized", url=str(engine.url))

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "SqlAlchemyOrderRepository":
        return cls(create_async_engine(url, echo=echo))

    async def create_schema(self) -> None:
        """Create tables if they do not exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    def _session(self) -> AsyncSession:
        return self._session_factory()

    # =========================================================================
    # Orders
    # =========================================================================

    async def add(self, order: Order) -> Order:
        try:
            async with self._session() as session:
                async with session.begin():
                    session.add(OrderRow(**_order_to_values(order)))
        except IntegrityError:
            raise DataIntegrityError(f"Order {order.order_id} already exists")
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to insert order {order.order_id}: {e}")
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        try:
            async with self._session() as session:
                row = await session.get(OrderRow, order_id)
                return _row_to_order(row) if row else None
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to load order {order_id}: {e}")

    async def find_by_payment_reference(self, payment_reference: str) -> List[Order]:
        stmt = select(OrderRow).where(OrderRow.payment_reference == payment_reference)
        try:
            async with self._session() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_row_to_order(row) for row in rows]
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to query payment {payment_reference}: {e}")

    async def conditional_update(
        self,
        order_id: str,
        changes: Dict[str, Any],
        statuses: Optional[Collection[OrderStatus]] = None,
        guards: Optional[Dict[str, Collection[Any]]] = None
    ) -> Optional[Order]:
        unknown = set(changes) - set(_ORDER_COLUMNS)
        if unknown:
            raise DataIntegrityError(f"Unknown order fields: {sorted(unknown)}")

        values = {name: _to_column(value) for name, value in {"updated_at": utcnow(), **changes}.items()}

        stmt = update(OrderRow).where(OrderRow.order_id == order_id)
        if statuses is not None:
            stmt = stmt.where(OrderRow.status.in_([s.value for s in statuses]))
        for field_name, allowed in (guards or {}).items():
            stmt = stmt.where(_guard_clause(getattr(OrderRow, field_name), allowed))
        if "payment_reference" in changes:
            stmt = stmt.where(_guard_clause(OrderRow.payment_reference, [None, changes["payment_reference"]]))
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        try:
            async with self._session() as session:
                async with session.begin():
                    current = await session.get(OrderRow, order_id)
                    if current is None:
                        return None
                    check_mutable(_row_to_order(current), changes)

                    result = await session.execute(stmt)
                    if result.rowcount != 1:
                        return None

                    await session.refresh(current)
                    try:
                        return _row_to_order(current)
                    except ValidationError as e:
                        # Raising inside the transaction rolls the update back
                        raise DataIntegrityError(f"Update of order {order_id} rejected: {e}")
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to update order {order_id}: {e}")

    async def find_stale(
        self,
        status: OrderStatus,
        timestamp_field: str,
        before: datetime,
        limit: int = 100,
        guards: Optional[Dict[str, Collection[Any]]] = None
    ) -> List[Order]:
        column = getattr(OrderRow, timestamp_field)
        stmt = (
            select(OrderRow)
            .where(OrderRow.status == status.value)
            .where(column.is_not(None))
            .where(column < _to_db_datetime(before))
        )
        for field_name, allowed in (guards or {}).items():
            stmt = stmt.where(_guard_clause(getattr(OrderRow, field_name), allowed))
        stmt = stmt.order_by(column).limit(limit)

        try:
            async with self._session() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_row_to_order(row) for row in rows]
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Stale order query failed for {status.value}: {e}")

    # =========================================================================
    # Refund ledger
    # =========================================================================

    async def claim_refund(self, record: RefundRecord) -> Optional[RefundRecord]:
        now = utcnow()
        try:
            async with self._session() as session:
                async with session.begin():
                    existing = await session.get(RefundRow, record.refund_key)
                    if existing is None:
                        row = RefundRow(
                            refund_key=record.refund_key,
                            payment_reference=record.payment_reference,
                            order_id=record.order_id,
                            amount=record.amount,
                            reason=record.reason.value,
                            status=RefundStatus.PENDING.value,
                            refund_id=None,
                            attempts=1,
                            last_error=None,
                            created_at=_to_db_datetime(now),
                            updated_at=_to_db_datetime(now)
                        )
                        session.add(row)
                        await session.flush()
                        return _row_to_refund(row)

                    stmt = (
                        update(RefundRow)
                        .where(RefundRow.refund_key == record.refund_key)
                        .where(RefundRow.status == RefundStatus.FAILED.value)
                        .values(
                            order_id=record.order_id,
                            amount=record.amount,
                            reason=record.reason.value,
                            status=RefundStatus.PENDING.value,
                            attempts=RefundRow.attempts + 1,
                            last_error=None,
                            updated_at=_to_db_datetime(now)
                        )
                        .execution_options(synchronize_session=False)
                    )
                    result = await session.execute(stmt)
                    if result.rowcount != 1:
                        return None
                    await session.refresh(existing)
                    return _row_to_refund(existing)
        except IntegrityError:
            # Lost the insert race to a concurrent claimer
            return None
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Refund claim failed for {record.refund_key}: {e}")

    async def get_refund(self, refund_key: str) -> Optional[RefundRecord]:
        try:
            async with self._session() as session:
                row = await session.get(RefundRow, refund_key)
                return _row_to_refund(row) if row else None
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to load refund {refund_key}: {e}")

    async def find_refunds_by_payment(self, payment_reference: str) -> List[RefundRecord]:
        stmt = select(RefundRow).where(RefundRow.payment_reference == payment_reference)
        try:
            async with self._session() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_row_to_refund(row) for row in rows]
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to query refunds for {payment_reference}: {e}")

    async def save_refund(self, record: RefundRecord) -> RefundRecord:
        now = utcnow()
        stmt = (
            update(RefundRow)
            .where(RefundRow.refund_key == record.refund_key)
            .values(
                order_id=record.order_id,
                amount=record.amount,
                reason=record.reason.value,
                status=record.status.value,
                refund_id=record.refund_id,
                attempts=record.attempts,
                last_error=record.last_error,
                updated_at=_to_db_datetime(now)
            )
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    if result.rowcount != 1:
                        raise DataIntegrityError(f"No refund claimed for {record.refund_key}")
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to save refund {record.refund_key}: {e}")

        record.updated_at = now
        return record

    async def find_stale_refunds(self, before: datetime, limit: int = 100) -> List[RefundRecord]:
        stmt = (
            select(RefundRow)
            .where(RefundRow.status == RefundStatus.PENDING.value)
            .where(RefundRow.refund_id.is_(None))
            .where(RefundRow.updated_at < _to_db_datetime(before))
            .order_by(RefundRow.updated_at)
            .limit(limit)
        )
        try:
            async with self._session() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_row_to_refund(row) for row in rows]
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Stale refund query failed: {e}")

    async def release_refund_claim(self, refund_key: str, before: datetime, error: str) -> Optional[RefundRecord]:
        stmt = (
            update(RefundRow)
            .where(RefundRow.refund_key == refund_key)
            .where(RefundRow.status == RefundStatus.PENDING.value)
            .where(RefundRow.refund_id.is_(None))
            .where(RefundRow.updated_at < _to_db_datetime(before))
            .values(
                status=RefundStatus.FAILED.value,
                last_error=error,
                updated_at=_to_db_datetime(utcnow())
            )
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    if result.rowcount != 1:
                        return None
                    row = await session.get(RefundRow, refund_key)
                    return _row_to_refund(row)
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to release refund claim {refund_key}: {e}")

    # =========================================================================
    # Payout ledger
    # =========================================================================

    async def claim_payout(self, record: PayoutRecord) -> Optional[PayoutRecord]:
        now = utcnow()
        try:
            async with self._session() as session:
                async with session.begin():
                    existing = await session.get(PayoutRow, record.order_id)
                    if existing is None:
                        row = PayoutRow(
                            order_id=record.order_id,
                            seller_id=record.seller_id,
                            recipient=record.recipient,
                            amount=record.amount,
                            reference=record.reference,
                            status=PayoutStatus.PENDING.value,
                            transfer_id=None,
                            attempts=1,
                            last_error=None,
                            created_at=_to_db_datetime(now),
                            updated_at=_to_db_datetime(now)
                        )
                        session.add(row)
                        await session.flush()
                        return _row_to_payout(row)

                    stmt = (
                        update(PayoutRow)
                        .where(PayoutRow.order_id == record.order_id)
                        .where(PayoutRow.status == PayoutStatus.FAILED.value)
                        .values(
                            recipient=record.recipient,
                            amount=record.amount,
                            status=PayoutStatus.PENDING.value,
                            attempts=PayoutRow.attempts + 1,
                            last_error=None,
                            updated_at=_to_db_datetime(now)
                        )
                        .execution_options(synchronize_session=False)
                    )
                    result = await session.execute(stmt)
                    if result.rowcount != 1:
                        return None
                    await session.refresh(existing)
                    return _row_to_payout(existing)
        except IntegrityError:
            # Lost the insert race to a concurrent claimer
            return None
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Payout claim failed for order {record.order_id}: {e}")

    async def get_payout(self, order_id: str) -> Optional[PayoutRecord]:
        try:
            async with self._session() as session:
                row = await session.get(PayoutRow, order_id)
                return _row_to_payout(row) if row else None
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to load payout for order {order_id}: {e}")

    async def find_payout_by_reference(self, reference: str) -> Optional[PayoutRecord]:
        stmt = select(PayoutRow).where(PayoutRow.reference == reference)
        try:
            async with self._session() as session:
                row = (await session.execute(stmt)).scalars().first()
                return _row_to_payout(row) if row else None
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to query payout {reference}: {e}")

    async def save_payout(self, record: PayoutRecord) -> PayoutRecord:
        now = utcnow()
        stmt = (
            update(PayoutRow)
            .where(PayoutRow.order_id == record.order_id)
            .values(
                recipient=record.recipient,
                amount=record.amount,
                status=record.status.value,
                transfer_id=record.transfer_id,
                attempts=record.attempts,
                last_error=record.last_error,
                updated_at=_to_db_datetime(now)
            )
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    if result.rowcount != 1:
                        raise DataIntegrityError(f"No payout claimed for order {record.order_id}")
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to save payout for order {record.order_id}: {e}")

        record.updated_at = now
        return record

    # =========================================================================
    # Reservations
    # =========================================================================

    async def reserve(self, item_id: str, reserved_by: str, reserved_until: datetime,
                      now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        try:
            async with self._session() as session:
                async with session.begin():
                    existing = await session.get(ReservationRow, item_id)
                    if existing is None:
                        session.add(ReservationRow(
                            item_id=item_id,
                            reserved_by=reserved_by,
                            reserved_until=_to_db_datetime(reserved_until)
                        ))
                        await session.flush()
                        return True

                    stmt = (
                        update(ReservationRow)
                        .where(ReservationRow.item_id == item_id)
                        .where(or_(
                            ReservationRow.reserved_by == reserved_by,
                            ReservationRow.reserved_until <= _to_db_datetime(now)
                        ))
                        .values(reserved_by=reserved_by, reserved_until=_to_db_datetime(reserved_until))
                        .execution_options(synchronize_session=False)
                    )
                    result = await session.execute(stmt)
                    return result.rowcount == 1
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to reserve item {item_id}: {e}")

    async def get_reservation(self, item_id: str) -> Optional[Reservation]:
        try:
            async with self._session() as session:
                row = await session.get(ReservationRow, item_id)
                return _row_to_reservation(row) if row else None
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to load reservation {item_id}: {e}")

    async def release_reservations(
        self,
        item_ids: Collection[str],
        reserved_by: Optional[str] = None,
        expired_before: Optional[datetime] = None
    ) -> int:
        if not item_ids:
            return 0
        stmt = delete(ReservationRow).where(ReservationRow.item_id.in_(list(item_ids)))
        if reserved_by is not None:
            stmt = stmt.where(ReservationRow.reserved_by == reserved_by)
        if expired_before is not None:
            stmt = stmt.where(ReservationRow.reserved_until <= _to_db_datetime(expired_before))

        try:
            async with self._session() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    return result.rowcount
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to release reservations: {e}")

    async def find_expired_reservations(self, now: datetime, limit: int = 100) -> List[Reservation]:
        stmt = (
            select(ReservationRow)
            .where(ReservationRow.reserved_until <= _to_db_datetime(now))
            .order_by(ReservationRow.reserved_until)
            .limit(limit)
        )
        try:
            async with self._session() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_row_to_reservation(row) for row in rows]
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Expired reservation query failed: {e}")

    # =========================================================================
    # Webhook events
    # =========================================================================

    async def record_event(self, event_id: str) -> bool:
        try:
            async with self._session() as session:
                async with session.begin():
                    session.add(WebhookEventRow(event_id=event_id, received_at=_to_db_datetime(utcnow())))
            return True
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to record webhook event {event_id}: {e}")

    async def forget_event(self, event_id: str) -> None:
        try:
            async with self._session() as session:
                async with session.begin():
                    await session.execute(delete(WebhookEventRow).where(WebhookEventRow.event_id == event_id))
        except SQLAlchemyError as e:
            raise DataIntegrityError(f"Failed to forget webhook event {event_id}: {e}")
