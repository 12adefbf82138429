"""
Purpose: Orchestrator for new orders (the "glue").
What it does:
Accepts a new prescription order, ranks the online pharmacies by distance and
stamps the order with its first target(s) and response deadline before it is
inserted into the store. Round-robin invites the single nearest pharmacy,
broadcast invites the `broadcast_count` nearest at once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from orders.models import Order, OrderStatus, PrescriptionItem, RoutingMode, format_order_id
from orders.store import OrderCounter, OrderStore
from pharmacies.directory import PharmacyDirectory
from pharmacies.models import Pharmacy

from .candidate_filter import build_base_candidates
from .errors import NoCandidateError
from .notifications import LoggingNotifier, Notification, Severity, safe_notify
from .policy import (
    DispatchPolicy,
    RoutingConfig,
    RoutingConfigSource,
    default_dispatch_policy,
)
from .scoring import rank_candidates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchTargets:
    target_ids: Tuple[str, ...]
    deadline: datetime


def select_initial_targets(
    pharmacies: Sequence[Pharmacy],
    config: RoutingConfig,
    *,
    policy: Optional[DispatchPolicy] = None,
    now: Optional[datetime] = None,
) -> DispatchTargets:
    """
    Eligible = online (a new order has no refusals yet), ranked by distance.
    Raises NoCandidateError when nobody is online.
    """
    policy = policy or default_dispatch_policy()
    now = now or datetime.now(timezone.utc)

    ranked = rank_candidates(build_base_candidates(pharmacies))
    if not ranked:
        raise NoCandidateError()

    if config.mode == RoutingMode.BROADCAST:
        chosen = ranked[:config.broadcast_count]
    else:
        chosen = ranked[:1]

    return DispatchTargets(
        target_ids=tuple(pharmacy.id for pharmacy in chosen),
        deadline=now + policy.response_window,
    )


class OrderDispatcher:
    """
    Creates orders already routed to their first pharmacy (or pharmacies).
    """

    def __init__(
        self,
        store: OrderStore,
        directory: PharmacyDirectory,
        config_source: RoutingConfigSource,
        counter: OrderCounter,
        notifier=None,
        policy: Optional[DispatchPolicy] = None,
    ):
        self.store = store
        self.directory = directory
        self.config_source = config_source
        self.counter = counter
        self.notifier = notifier or LoggingNotifier()
        self.policy = policy or default_dispatch_policy()

    def create_order(
        self,
        items: Iterable[PrescriptionItem],
        payload: Optional[Dict[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Routes first, then allocates an id and inserts. When no pharmacy is
        online nothing is written: the patient gets an urgent notification and
        NoCandidateError propagates so the UI can show the failure.
        """
        now = now or datetime.now(timezone.utc)
        config = self.config_source.current()

        try:
            targets = select_initial_targets(self.directory.list(), config, policy=self.policy, now=now)
        except NoCandidateError:
            safe_notify(self.notifier, Notification(
                message="No pharmacy available right now, your order was not created",
                severity=Severity.URGENT,
            ))
            logger.warning("Order creation aborted: no online pharmacy (mode=%s)", config.mode.value)
            raise

        order_id = format_order_id(self.counter.next_order_number())
        order = Order(
            id=order_id,
            status=OrderStatus.AWAITING_QUOTES,
            routing_mode=config.mode,
            targeted_pharmacy_ids=targets.target_ids,
            deadline=targets.deadline,
            items=tuple(items),
            payload=dict(payload or {}),
            created_at=now,
        )
        order = self.store.insert(order)

        target_names = ", ".join(self.directory.name_of(pid) for pid in targets.target_ids)
        logger.info(
            "Order %s dispatched (%s) to %s, deadline %s",
            order.id, config.mode.value, target_names, targets.deadline.isoformat(),
        )
        safe_notify(self.notifier, Notification(
            message=f"New order {order.id} sent to {target_names}",
            severity=Severity.INFO,
            order_id=order.id,
        ))
        return order
