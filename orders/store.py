"""
Purpose: The Order Store contract (the only shared mutable resource).
What it does:
- Declares the abstract store every routing decision reads from and writes to:
   - get(order_id)
   - query(OrderQuery)
   - insert(order)
   - update(order_id, changes, expected_revision=...)
   - subscribe(OrderQuery, callback) -> unsubscribe
- Declares the shared order-number counter.
- Declares the store error taxonomy.

Rule: Conditional writes are expressed through `expected_revision`; a store that
cannot honour it must raise ConcurrentUpdateError rather than overwrite.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional

from .models import Order, OrderStatus

OrderCallback = Callable[[Order], None]
Unsubscribe = Callable[[], None]


class StoreError(Exception):
    """Base class for Order Store failures."""
    pass


class StoreUnavailableError(StoreError):
    """Raised when the store cannot be reached or answers with an I/O failure."""
    pass


class OrderNotFoundError(StoreError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class DuplicateOrderError(StoreError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} already exists")
        self.order_id = order_id


class ConcurrentUpdateError(StoreError):
    """Raised when a conditional update lost the race against another writer."""

    def __init__(self, order_id: str, expected_revision: Optional[str] = None):
        super().__init__(
            f"Order {order_id} changed since revision {expected_revision!r} was read"
        )
        self.order_id = order_id
        self.expected_revision = expected_revision


@dataclass(frozen=True)
class OrderQuery:
    """
    Conjunctive filter over orders. Unset filters match everything.

    - status: exact status match
    - unlocked_only: pharmacy_id is unset
    - deadline_before: deadline is set and strictly earlier than this instant
    - targeted_pharmacy_id: the pharmacy is among the current targets
    """
    status: Optional[OrderStatus] = None
    unlocked_only: bool = False
    deadline_before: Optional[datetime] = None
    targeted_pharmacy_id: Optional[str] = None

    def matches(self, order: Order) -> bool:
        if self.status is not None and order.status != self.status:
            return False
        if self.unlocked_only and order.is_locked:
            return False
        if self.deadline_before is not None:
            if order.deadline is None or not order.deadline < self.deadline_before:
                return False
        if self.targeted_pharmacy_id is not None:
            if self.targeted_pharmacy_id not in order.targeted_pharmacy_ids:
                return False
        return True


def overdue_orders_query(now: datetime) -> OrderQuery:
    """
    The deadline sweep's predicate: open, unlocked orders whose response window lapsed.
    """
    return OrderQuery(
        status=OrderStatus.AWAITING_QUOTES,
        unlocked_only=True,
        deadline_before=now,
    )


def pharmacy_inbox_query(pharmacy_id: str) -> OrderQuery:
    """
    What a pharmacy terminal subscribes to: orders currently inviting it to respond.
    """
    return OrderQuery(status=OrderStatus.AWAITING_QUOTES, targeted_pharmacy_id=pharmacy_id)


class OrderStore(ABC):
    """
    Persistent, subscribable store of Order records.

    Implementations must issue a fresh `revision` on every successful write and
    reject an update whose `expected_revision` no longer matches.
    """

    @abstractmethod
    def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    def query(self, predicate: OrderQuery) -> List[Order]:
        pass

    @abstractmethod
    def insert(self, order: Order) -> Order:
        """
        Persist a brand-new order. Returns it stamped with its first revision.
        Raises DuplicateOrderError if the id is taken.
        """
        pass

    @abstractmethod
    def update(
        self,
        order_id: str,
        changes: Mapping[str, Any],
        *,
        expected_revision: Optional[str] = None,
    ) -> Order:
        """
        Apply a partial update (Order attribute name -> new value).

        If `expected_revision` is given the write only lands when the stored
        order still carries that revision; otherwise ConcurrentUpdateError.
        Raises OrderNotFoundError for unknown ids.
        """
        pass

    @abstractmethod
    def subscribe(self, predicate: OrderQuery, callback: OrderCallback) -> Unsubscribe:
        pass


class OrderCounter(ABC):
    """
    Shared monotonic counter behind human-readable order ids.
    """

    @abstractmethod
    def next_order_number(self) -> int:
        """Atomically increment and return the new value."""
        pass
