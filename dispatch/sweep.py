"""
Purpose: The deadline sweep (the active time-based "heartbeat").
What it does:
Periodically queries the store for open, unlocked orders whose deadline lapsed
and drives each one through the reassignment engine. Silence = refusal.

Any number of sweepers may run at once (one per client): each write is
conditional on the revision it read and re-checks `deadline < now`, so a
second sweeper on the same order finds it already moved and skips it.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from orders.models import Order
from orders.store import OrderStore, overdue_orders_query
from pharmacies.directory import PharmacyDirectory

from .commit import apply_order_update
from .errors import StaleActionError
from .notifications import LoggingNotifier, safe_notify
from .policy import DispatchPolicy, RoutingConfigSource, default_dispatch_policy
from .reassignment import Reassignment, handle_timeout

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DeadlineSweep:

    def __init__(
        self,
        store: OrderStore,
        directory: PharmacyDirectory,
        config_source: RoutingConfigSource,
        notifier=None,
        policy: Optional[DispatchPolicy] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.directory = directory
        self.config_source = config_source
        self.notifier = notifier or LoggingNotifier()
        self.policy = policy or default_dispatch_policy()
        self.clock = clock

    def run_cycle(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        One pass over overdue orders. Each order is handled independently:
        a failure on one is logged and counted, never allowed to block the rest.
        """
        now = now or self.clock()
        stats = {"checked": 0, "reassigned": 0, "closed": 0, "cancelled": 0, "skipped": 0, "errors": 0}

        overdue = self.store.query(overdue_orders_query(now))
        stats["checked"] = len(overdue)

        for order in overdue:
            try:
                result = self._expire(order.id, now)
            except StaleActionError as stale:
                logger.debug("Sweep skipped order %s: %s", order.id, stale.reason)
                stats["skipped"] += 1
                continue
            except Exception:
                # retried on the next tick, the order is still overdue
                logger.exception("Error sweeping order %s", order.id)
                stats["errors"] += 1
                continue

            if result.cancelled:
                logger.warning("Order %s cancelled: no pharmacy left to ask", order.id)
                stats["cancelled"] += 1
            elif result.order.deadline is None:
                stats["closed"] += 1
            else:
                stats["reassigned"] += 1

            safe_notify(self.notifier, result.notification)

        if overdue:
            logger.info("Deadline sweep complete: %s", stats)
        return stats

    def _expire(self, order_id: str, now: datetime) -> Reassignment:
        outcome: Dict[str, Reassignment] = {}

        def mutate(current: Order) -> Order:
            if not current.is_open_for_routing:
                raise StaleActionError(order_id, "no longer open for routing")
            if current.deadline is None or not current.deadline < now:
                raise StaleActionError(order_id, "deadline not reached")

            # eligibility and fan-out are re-read on every attempt
            outcome["result"] = handle_timeout(
                current,
                self.directory.list(),
                broadcast_count=self.config_source.current().broadcast_count,
                policy=self.policy,
                now=now,
            )
            return outcome["result"].order

        committed = apply_order_update(
            self.store, order_id, mutate, max_attempts=self.policy.max_commit_attempts,
        )
        return Reassignment(order=committed, notification=outcome["result"].notification)

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """
        Blocking loop, one cycle per `sweep_interval_seconds` until `stop_event` is set.
        Meant for a background thread or a dedicated worker process.
        """
        stop_event = stop_event or threading.Event()
        logger.info("Deadline sweep started (interval %.1fs)", self.policy.sweep_interval_seconds)

        while not stop_event.is_set():
            try:
                self.run_cycle()
            except Exception:
                # store unreachable for the query itself; try again next tick
                logger.exception("Deadline sweep cycle failed")
            stop_event.wait(self.policy.sweep_interval_seconds)

        logger.info("Deadline sweep stopped")
