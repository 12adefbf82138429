"""
Purpose: In-process Order Store and order counter.
What it does:
- InMemoryOrderStore: dict-backed store with per-document revisions,
  conditional updates and synchronous change subscriptions
- InMemoryOrderCounter: lock-protected atomic increment

Used by tests, the simulation script and single-process deployments.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
from dataclasses import fields, replace
from typing import Any, Dict, List, Mapping, Optional

from orders.models import Order
from orders.store import (
    ConcurrentUpdateError,
    DuplicateOrderError,
    OrderCallback,
    OrderCounter,
    OrderNotFoundError,
    OrderQuery,
    OrderStore,
    Unsubscribe,
)

logger = logging.getLogger(__name__)

_WRITABLE_FIELDS = {f.name for f in fields(Order)} - {"id", "revision"}


class _Subscription:
    """
    One listener. Deliveries are serialised and never go backwards: an order
    version older than the last one handed to this listener is dropped.
    """

    def __init__(self, predicate: OrderQuery, callback: OrderCallback):
        self.predicate = predicate
        self.callback = callback
        self.active = True
        self._lock = threading.RLock()
        self._delivered: Dict[str, int] = {}

    def deliver(self, order: Order) -> None:
        with self._lock:
            if not self.active:
                return
            revision = int(order.revision)
            if self._delivered.get(order.id, 0) >= revision:
                return
            self._delivered[order.id] = revision
            try:
                self.callback(order)
            except Exception:
                # a broken listener must not fail the writer
                logger.exception("Subscriber callback failed for order %s", order.id)

    def cancel(self) -> None:
        with self._lock:
            self.active = False


def _detached(order: Order) -> Order:
    # payload is the only mutable field on Order
    return replace(order, payload=copy.deepcopy(order.payload))


class InMemoryOrderStore(OrderStore):
    """
    Subscribers are called after every write whose new version matches their
    query, or whose previous version did (so an order leaving an inbox is seen).
    On subscribe, every currently matching order is delivered once.

    Orders handed out are detached copies: mutating one never touches stored state.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._orders: Dict[str, Order] = {}
        self._revisions = itertools.count(1)
        self._subscribers: Dict[int, _Subscription] = {}
        self._subscriber_ids = itertools.count(1)

    def _next_revision(self) -> str:
        return str(next(self._revisions))

    # --- reads ---

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
        return _detached(order) if order is not None else None

    def query(self, predicate: OrderQuery) -> List[Order]:
        with self._lock:
            matching = [order for order in self._orders.values() if predicate.matches(order)]
        return [_detached(order) for order in matching]

    def all_orders(self) -> List[Order]:
        with self._lock:
            orders = list(self._orders.values())
        return [_detached(order) for order in orders]

    # --- writes ---

    def insert(self, order: Order) -> Order:
        with self._lock:
            if order.id in self._orders:
                raise DuplicateOrderError(order.id)
            stored = replace(order, payload=copy.deepcopy(order.payload), revision=self._next_revision())
            self._orders[order.id] = stored

        self._publish(None, stored)
        return _detached(stored)

    def update(
        self,
        order_id: str,
        changes: Mapping[str, Any],
        *,
        expected_revision: Optional[str] = None,
    ) -> Order:
        unknown = set(changes) - _WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields {sorted(unknown)} on order {order_id}")

        changes = dict(changes)
        if "payload" in changes:
            changes["payload"] = copy.deepcopy(changes["payload"])

        with self._lock:
            previous = self._orders.get(order_id)
            if previous is None:
                raise OrderNotFoundError(order_id)
            if expected_revision is not None and previous.revision != expected_revision:
                raise ConcurrentUpdateError(order_id, expected_revision)

            stored = replace(previous, revision=self._next_revision(), **changes)
            self._orders[order_id] = stored

        self._publish(previous, stored)
        return _detached(stored)

    # --- subscriptions ---

    def subscribe(self, predicate: OrderQuery, callback: OrderCallback) -> Unsubscribe:
        subscription = _Subscription(predicate, callback)
        with self._lock:
            subscriber_id = next(self._subscriber_ids)
            self._subscribers[subscriber_id] = subscription
            initial = [order for order in self._orders.values() if predicate.matches(order)]

        for order in initial:
            subscription.deliver(_detached(order))

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(subscriber_id, None)
            subscription.cancel()

        return unsubscribe

    def _publish(self, previous: Optional[Order], current: Order) -> None:
        with self._lock:
            subscribers = list(self._subscribers.values())

        for subscription in subscribers:
            if subscription.predicate.matches(current) or (
                previous is not None and subscription.predicate.matches(previous)
            ):
                subscription.deliver(_detached(current))


class InMemoryOrderCounter(OrderCounter):
    """
    Starts after `start`, so the first order is CMD-<start + 1>.
    """

    def __init__(self, start: int = 20):
        self._lock = threading.Lock()
        self._value = start

    def next_order_number(self) -> int:
        with self._lock:
            self._value += 1
            return self._value
