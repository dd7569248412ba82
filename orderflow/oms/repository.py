"""
Order Management System - Persistence interface.

The repository is the only place order rows are written. Its one
correctness-critical primitive is conditional_update: a single atomic
"UPDATE ... WHERE id = ? AND status IN (...)" that either applies or reports
that the guard did not match. Callers never read-then-write.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Collection, Dict, List, Optional

import structlog

from ..gateways.exceptions import DataIntegrityError, ValidationError
from ..gateways.models import (
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


# Fields that can never change after the order row is created
IMMUTABLE_FIELDS = frozenset({
    "order_id",
    "buyer_id",
    "seller_id",
    "items",
    "subtotal",
    "delivery_fee",
    "total_amount",
    "created_at",
})


def check_mutable(current: Order, changes: Dict[str, Any]) -> None:
    """
    Reject changes that would break order invariants.

    Raises:
        DataIntegrityError: On an immutable field or a payment_reference rewrite
    """
    frozen = IMMUTABLE_FIELDS.intersection(changes)
    if frozen:
        raise DataIntegrityError(f"Attempt to modify immutable order fields: {sorted(frozen)}")

    if "payment_reference" in changes and current.payment_reference is not None \
            and changes["payment_reference"] != current.payment_reference:
        raise DataIntegrityError(
            f"payment_reference of order {current.order_id} is immutable once set"
        )


class OrderRepository(ABC):
    """
    Abstract persistence collaborator for orders, the refund and payout
    ledgers, reservations and processed webhook events.
    """

    # =========================================================================
    # Orders
    # =========================================================================

    @abstractmethod
    async def add(self, order: Order) -> Order:
        """
        Insert a new order.

        Raises:
            DataIntegrityError: If the order id already exists
        """
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        """Get order by id, or None."""
        pass

    @abstractmethod
    async def find_by_payment_reference(self, payment_reference: str) -> List[Order]:
        """Get every order backed by a payment reference."""
        pass

    @abstractmethod
    async def conditional_update(
        self,
        order_id: str,
        changes: Dict[str, Any],
        statuses: Optional[Collection[OrderStatus]] = None,
        guards: Optional[Dict[str, Collection[Any]]] = None
    ) -> Optional[Order]:
        """
        Atomically apply changes if the row still matches the guard.

        Args:
            order_id: Order to update
            changes: Field -> new value (status included)
            statuses: Allowed current statuses (None: any)
            guards: Extra field -> allowed current values

        Returns:
            The updated order, or None if the order is missing or the guard
            did not match

        Raises:
            DataIntegrityError: If the change breaks an order invariant or
                the store fails
        """
        pass

    @abstractmethod
    async def find_stale(
        self,
        status: OrderStatus,
        timestamp_field: str,
        before: datetime,
        limit: int = 100,
        guards: Optional[Dict[str, Collection[Any]]] = None
    ) -> List[Order]:
        """
        Range query for the expiry sweeper.

        Args:
            status: Status to match
            timestamp_field: Order timestamp column to compare
            before: Return orders whose timestamp is strictly older
            limit: Maximum number of orders
            guards: Extra field -> allowed values

        Returns:
            Matching orders, oldest first
        """
        pass

    # =========================================================================
    # Refund ledger (keyed by refund_key)
    # =========================================================================

    @abstractmethod
    async def claim_refund(self, record: RefundRecord) -> Optional[RefundRecord]:
        """
        Atomically claim the right to issue a refund for a payment.

        Inserts a PENDING ledger row, or flips a FAILED row back to PENDING.

        Returns:
            The claimed record, or None if a refund for this refund_key is
            already pending or processed
        """
        pass

    @abstractmethod
    async def get_refund(self, refund_key: str) -> Optional[RefundRecord]:
        """Get refund ledger row by refund key."""
        pass

    @abstractmethod
    async def find_refunds_by_payment(self, payment_reference: str) -> List[RefundRecord]:
        """Get every ledger row for a payment reference."""
        pass

    @abstractmethod
    async def save_refund(self, record: RefundRecord) -> RefundRecord:
        """Persist the outcome of a claimed refund."""
        pass

    @abstractmethod
    async def find_stale_refunds(self, before: datetime, limit: int = 100) -> List[RefundRecord]:
        """
        Get PENDING claims with no processor refund id, last touched before ``before``.

        A claim is only in that state while its holder calls the processor,
        so an old one was abandoned by a process that died mid-call.
        """
        pass

    @abstractmethod
    async def release_refund_claim(self, refund_key: str, before: datetime, error: str) -> Optional[RefundRecord]:
        """
        Atomically flip an abandoned claim from PENDING to FAILED.

        Only applies while the row is PENDING, has no refund id and was last
        updated before ``before``.

        Returns:
            The released record, or None if the guard did not match
        """
        pass

    # =========================================================================
    # Payout ledger (keyed by order_id)
    # =========================================================================

    @abstractmethod
    async def claim_payout(self, record: PayoutRecord) -> Optional[PayoutRecord]:
        """
        Atomically claim the right to pay a seller for an order.

        Inserts a PENDING ledger row, or flips a FAILED row back to PENDING.

        Returns:
            The claimed record, or None if the payout is already pending or paid
        """
        pass

    @abstractmethod
    async def get_payout(self, order_id: str) -> Optional[PayoutRecord]:
        """Get payout ledger row by order id."""
        pass

    @abstractmethod
    async def find_payout_by_reference(self, reference: str) -> Optional[PayoutRecord]:
        """Get payout ledger row by transfer reference."""
        pass

    @abstractmethod
    async def save_payout(self, record: PayoutRecord) -> PayoutRecord:
        """Persist the outcome of a claimed payout."""
        pass

    # =========================================================================
    # Item reservations
    # =========================================================================

    @abstractmethod
    async def reserve(self, item_id: str, reserved_by: str, reserved_until: datetime,
                      now: Optional[datetime] = None) -> bool:
        """
        Reserve an item unless someone else holds a live reservation.

        Returns:
            True if the reservation is now held by reserved_by
        """
        pass

    @abstractmethod
    async def get_reservation(self, item_id: str) -> Optional[Reservation]:
        """Get current reservation for an item."""
        pass

    @abstractmethod
    async def release_reservations(
        self,
        item_ids: Collection[str],
        reserved_by: Optional[str] = None,
        expired_before: Optional[datetime] = None
    ) -> int:
        """
        Clear reservations.

        Args:
            item_ids: Items to release
            reserved_by: Only release holds owned by this buyer
            expired_before: Only release holds that ended before this time

        Returns:
            Number of reservations cleared
        """
        pass

    @abstractmethod
    async def find_expired_reservations(self, now: datetime, limit: int = 100) -> List[Reservation]:
        """Get reservations whose reserved_until has passed."""
        pass

    # =========================================================================
    # Webhook de-duplication
    # =========================================================================

    @abstractmethod
    async def record_event(self, event_id: str) -> bool:
        """
        Remember a processed webhook event.

        Returns:
            True the first time an event id is seen, False afterwards
        """
        pass

    @abstractmethod
    async def forget_event(self, event_id: str) -> None:
        """Drop a recorded event so a redelivery is processed again."""
        pass

    async def close(self) -> None:
        """Release storage resources."""
        return None


def _matches(order: Order, statuses, guards) -> bool:
    if statuses is not None and order.status not in statuses:
        return False
    for field_name, allowed in (guards or {}).items():
        if getattr(order, field_name) not in allowed:
            return False
    return True


class InMemoryOrderRepository(OrderRepository):
    """
    Dictionary-backed repository.

    A single asyncio.Lock makes every method atomic with respect to other
    coroutines on the same event loop. Suitable for tests, sandbox runs and
    single-process deployments.
    """

    def __init__(self):
        """Initialize empty store."""
        self._orders: Dict[str, Order] = {}
        self._refunds: Dict[str, RefundRecord] = {}           # refund_key -> record
        self._payouts: Dict[str, PayoutRecord] = {}           # order_id -> record
        self._reservations: Dict[str, Reservation] = {}       # item_id -> reservation
        self._events: set = set()
        self._lock = asyncio.Lock()

        logger.info("InMemoryOrderRepository initialized")

    async def add(self, order: Order) -> Order:
        async with self._lock:
            if order.order_id in self._orders:
                raise DataIntegrityError(f"Order {order.order_id} already exists")
            self._orders[order.order_id] = order
            return replace(order)

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return replace(order) if order else None

    async def find_by_payment_reference(self, payment_reference: str) -> List[Order]:
        async with self._lock:
            return [
                replace(o) for o in self._orders.values()
                if o.payment_reference == payment_reference
            ]

    async def conditional_update(
        self,
        order_id: str,
        changes: Dict[str, Any],
        statuses: Optional[Collection[OrderStatus]] = None,
        guards: Optional[Dict[str, Collection[Any]]] = None
    ) -> Optional[Order]:
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None or not _matches(current, statuses, guards):
                return None

            check_mutable(current, changes)
            try:
                updated = current.with_changes(**{"updated_at": utcnow(), **changes})
            except (ValidationError, TypeError) as e:
                raise DataIntegrityError(f"Update of order {order_id} rejected: {e}")

            self._orders[order_id] = updated
            return replace(updated)

    async def find_stale(
        self,
        status: OrderStatus,
        timestamp_field: str,
        before: datetime,
        limit: int = 100,
        guards: Optional[Dict[str, Collection[Any]]] = None
    ) -> List[Order]:
        async with self._lock:
            candidates = [
                o for o in self._orders.values()
                if o.status == status
                and getattr(o, timestamp_field) is not None
                and getattr(o, timestamp_field) < before
                and _matches(o, None, guards)
            ]
            candidates.sort(key=lambda o: getattr(o, timestamp_field))
            return [replace(o) for o in candidates[:limit]]

    async def claim_refund(self, record: RefundRecord) -> Optional[RefundRecord]:
        async with self._lock:
            existing = self._refunds.get(record.refund_key)
            if existing is None:
                claimed = replace(record, status=RefundStatus.PENDING, attempts=1)
            elif existing.status == RefundStatus.FAILED:
                claimed = replace(
                    existing,
                    order_id=record.order_id,
                    amount=record.amount,
                    reason=record.reason,
                    status=RefundStatus.PENDING,
                    attempts=existing.attempts + 1,
                    last_error=None,
                    updated_at=utcnow()
                )
            else:
                return None

            self._refunds[record.refund_key] = claimed
            return replace(claimed)

    async def get_refund(self, refund_key: str) -> Optional[RefundRecord]:
        async with self._lock:
            record = self._refunds.get(refund_key)
            return replace(record) if record else None

    async def find_refunds_by_payment(self, payment_reference: str) -> List[RefundRecord]:
        async with self._lock:
            return [
                replace(r) for r in self._refunds.values()
                if r.payment_reference == payment_reference
            ]

    async def save_refund(self, record: RefundRecord) -> RefundRecord:
        async with self._lock:
            if record.refund_key not in self._refunds:
                raise DataIntegrityError(f"No refund claimed for {record.refund_key}")
            saved = replace(record, updated_at=utcnow())
            self._refunds[record.refund_key] = saved
            return replace(saved)

    async def find_stale_refunds(self, before: datetime, limit: int = 100) -> List[RefundRecord]:
        async with self._lock:
            stale = [
                r for r in self._refunds.values()
                if r.status == RefundStatus.PENDING and r.refund_id is None and r.updated_at < before
            ]
            stale.sort(key=lambda r: r.updated_at)
            return [replace(r) for r in stale[:limit]]

    async def release_refund_claim(self, refund_key: str, before: datetime, error: str) -> Optional[RefundRecord]:
        async with self._lock:
            record = self._refunds.get(refund_key)
            if record is None or record.status != RefundStatus.PENDING \
                    or record.refund_id is not None or record.updated_at >= before:
                return None
            released = replace(record, status=RefundStatus.FAILED, last_error=error, updated_at=utcnow())
            self._refunds[refund_key] = released
            return replace(released)

    async def claim_payout(self, record: PayoutRecord) -> Optional[PayoutRecord]:
        async with self._lock:
            existing = self._payouts.get(record.order_id)
            if existing is None:
                claimed = replace(record, status=PayoutStatus.PENDING, attempts=1)
            elif existing.status == PayoutStatus.FAILED:
                claimed = replace(
                    existing,
                    recipient=record.recipient,
                    amount=record.amount,
                    status=PayoutStatus.PENDING,
                    attempts=existing.attempts + 1,
                    last_error=None,
                    updated_at=utcnow()
                )
            else:
                return None

            self._payouts[record.order_id] = claimed
            return replace(claimed)

    async def get_payout(self, order_id: str) -> Optional[PayoutRecord]:
        async with self._lock:
            record = self._payouts.get(order_id)
            return replace(record) if record else None

    async def find_payout_by_reference(self, reference: str) -> Optional[PayoutRecord]:
        async with self._lock:
            for record in self._payouts.values():
                if record.reference == reference:
                    return replace(record)
            return None

    async def save_payout(self, record: PayoutRecord) -> PayoutRecord:
        async with self._lock:
            if record.order_id not in self._payouts:
                raise DataIntegrityError(f"No payout claimed for order {record.order_id}")
            saved = replace(record, updated_at=utcnow())
            self._payouts[record.order_id] = saved
            return replace(saved)

    async def reserve(self, item_id: str, reserved_by: str, reserved_until: datetime,
                      now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        async with self._lock:
            existing = self._reservations.get(item_id)
            if existing and existing.reserved_by != reserved_by and not existing.is_expired(now):
                return False
            self._reservations[item_id] = Reservation(item_id, reserved_by, reserved_until)
            return True

    async def get_reservation(self, item_id: str) -> Optional[Reservation]:
        async with self._lock:
            reservation = self._reservations.get(item_id)
            return replace(reservation) if reservation else None

    async def release_reservations(
        self,
        item_ids: Collection[str],
        reserved_by: Optional[str] = None,
        expired_before: Optional[datetime] = None
    ) -> int:
        released = 0
        async with self._lock:
            for item_id in item_ids:
                reservation = self._reservations.get(item_id)
                if reservation is None:
                    continue
                if reserved_by is not None and reservation.reserved_by != reserved_by:
                    continue
                if expired_before is not None and reservation.reserved_until > expired_before:
                    continue
                del self._reservations[item_id]
                released += 1
        return released

    async def find_expired_reservations(self, now: datetime, limit: int = 100) -> List[Reservation]:
        async with self._lock:
            expired = [r for r in self._reservations.values() if r.is_expired(now)]
            expired.sort(key=lambda r: r.reserved_until)
            return [replace(r) for r in expired[:limit]]

    async def record_event(self, event_id: str) -> bool:
        async with self._lock:
            if event_id in self._events:
                return False
            self._events.add(event_id)
            return True

    async def forget_event(self, event_id: str) -> None:
        async with self._lock:
            self._events.discard(event_id)

    @property
    def order_count(self) -> int:
        """Get total number of stored orders."""
        return len(self._orders)
