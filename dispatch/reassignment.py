"""
Purpose: Reassignment engine (what happens after a refusal or a silent deadline).
What it does:

Pure functions of (order, directory snapshot, policy, now) -> next order version.
Nothing here reads or writes the store: callers wrap these in
`dispatch.commit.apply_order_update` so concurrent engines cannot double-apply them.

Round-robin cascade:
  evict current target -> refused; next nearest eligible becomes the single target
  with a fresh deadline; nobody left -> CANCELLED.

Broadcast:
  a refusing target leaves the target set; when the window lapses, silent targets
  count as refusals. If quotes exist bidding closes (patient decides), otherwise the
  invitation expands to the next `broadcast_count` eligible pharmacies; nobody left
  -> CANCELLED.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from orders.models import Order, OrderStatus, RoutingMode
from pharmacies.models import Pharmacy

from .candidate_filter import build_base_candidates
from .notifications import Notification, Severity
from .policy import DispatchPolicy, default_dispatch_policy
from .scoring import rank_candidates
from .state_machines.order_state import cancel_for_exhaustion


@dataclass(frozen=True)
class Reassignment:
    """
    The next version of an order plus the advisory message to emit once it is committed.
    """
    order: Order
    notification: Optional[Notification] = None

    @property
    def cancelled(self) -> bool:
        return self.order.status == OrderStatus.CANCELLED


def _append_unique(ids: Tuple[str, ...], new_ids: Iterable[str]) -> Tuple[str, ...]:
    result = list(ids)
    for pharmacy_id in new_ids:
        if pharmacy_id not in result:
            result.append(pharmacy_id)
    return tuple(result)


def _without(ids: Tuple[str, ...], removed: Iterable[str]) -> Tuple[str, ...]:
    removed = set(removed)
    return tuple(pharmacy_id for pharmacy_id in ids if pharmacy_id not in removed)


def ranked_candidates(pharmacies: Sequence[Pharmacy], excluded_ids: Iterable[str]) -> List[Pharmacy]:
    return rank_candidates(build_base_candidates(pharmacies, excluded_ids=excluded_ids))


def _cancelled(order: Order) -> Reassignment:
    return Reassignment(
        order=cancel_for_exhaustion(order),
        notification=Notification(
            message=f"No pharmacy available for order {order.id}",
            severity=Severity.URGENT,
            order_id=order.id,
        ),
    )


def reassign(
    order: Order,
    pharmacies: Sequence[Pharmacy],
    *,
    evicted_pharmacy_id: Optional[str] = None,
    policy: Optional[DispatchPolicy] = None,
    now: Optional[datetime] = None,
) -> Reassignment:
    """
    Round-robin cascade step.

    The evicted pharmacy (default: the current target) is added to the refusal set,
    then the nearest online pharmacy that never refused becomes the sole target.
    """
    policy = policy or default_dispatch_policy()
    now = now or datetime.now(timezone.utc)

    evicted = evicted_pharmacy_id or order.current_target
    refused = _append_unique(order.refused_by_pharmacy_ids, [evicted] if evicted else [])
    order = replace(order, refused_by_pharmacy_ids=refused)

    candidates = ranked_candidates(pharmacies, excluded_ids=refused)
    if not candidates:
        return _cancelled(order)

    next_pharmacy = candidates[0]
    return Reassignment(
        order=replace(
            order,
            targeted_pharmacy_ids=(next_pharmacy.id,),
            deadline=now + policy.response_window,
        ),
        notification=Notification(
            message=f"Order {order.id} transferred to {next_pharmacy.name}",
            severity=Severity.INFO,
            order_id=order.id,
        ),
    )


def expand_broadcast(
    order: Order,
    pharmacies: Sequence[Pharmacy],
    *,
    broadcast_count: int,
    policy: Optional[DispatchPolicy] = None,
    now: Optional[datetime] = None,
) -> Reassignment:
    """
    Invite the next `broadcast_count` eligible pharmacies that have not refused
    and are not already invited.
    """
    policy = policy or default_dispatch_policy()
    now = now or datetime.now(timezone.utc)

    excluded = set(order.refused_by_pharmacy_ids) | set(order.targeted_pharmacy_ids)
    candidates = ranked_candidates(pharmacies, excluded_ids=excluded)[:broadcast_count]
    if not candidates and not order.targeted_pharmacy_ids:
        return _cancelled(order)

    targets = _append_unique(order.targeted_pharmacy_ids, [p.id for p in candidates])
    return Reassignment(
        order=replace(order, targeted_pharmacy_ids=targets, deadline=now + policy.response_window),
        notification=Notification(
            message=f"Order {order.id} broadcast to {', '.join(p.name for p in candidates)}",
            severity=Severity.INFO,
            order_id=order.id,
        ) if candidates else None,
    )


def refuse_broadcast(
    order: Order,
    pharmacies: Sequence[Pharmacy],
    refusing_pharmacy_id: str,
    *,
    broadcast_count: int,
    policy: Optional[DispatchPolicy] = None,
    now: Optional[datetime] = None,
) -> Reassignment:
    """
    One invited pharmacy declines. The others keep their invitation and deadline;
    only an emptied target set triggers an expansion.
    """
    order = replace(
        order,
        refused_by_pharmacy_ids=_append_unique(order.refused_by_pharmacy_ids, [refusing_pharmacy_id]),
        targeted_pharmacy_ids=_without(order.targeted_pharmacy_ids, [refusing_pharmacy_id]),
        accepted_by_pharmacy_ids=_without(order.accepted_by_pharmacy_ids, [refusing_pharmacy_id]),
    )
    if order.targeted_pharmacy_ids:
        return Reassignment(order=order)

    return expand_broadcast(order, pharmacies, broadcast_count=broadcast_count, policy=policy, now=now)


def expire_broadcast(
    order: Order,
    pharmacies: Sequence[Pharmacy],
    *,
    broadcast_count: int,
    policy: Optional[DispatchPolicy] = None,
    now: Optional[datetime] = None,
) -> Reassignment:
    """
    Response window lapsed on a broadcast order. Targets that never quoted are
    treated as refusals (silence = refusal), including ones still drafting.
    """
    quoting_ids = tuple(quote.pharmacy_id for quote in order.quotes)
    silent_ids = _without(order.targeted_pharmacy_ids, quoting_ids)

    order = replace(
        order,
        refused_by_pharmacy_ids=_append_unique(order.refused_by_pharmacy_ids, silent_ids),
        targeted_pharmacy_ids=_without(order.targeted_pharmacy_ids, silent_ids),
        accepted_by_pharmacy_ids=_without(order.accepted_by_pharmacy_ids, silent_ids),
    )

    if order.quotes:
        # Bidding closes: the patient now chooses among what was submitted.
        return Reassignment(
            order=replace(order, targeted_pharmacy_ids=quoting_ids, deadline=None),
            notification=Notification(
                message=f"Bidding closed for order {order.id} with {len(order.quotes)} quote(s)",
                severity=Severity.INFO,
                order_id=order.id,
            ),
        )

    return expand_broadcast(order, pharmacies, broadcast_count=broadcast_count, policy=policy, now=now)


def handle_refusal(
    order: Order,
    pharmacies: Sequence[Pharmacy],
    refusing_pharmacy_id: str,
    *,
    broadcast_count: int,
    policy: Optional[DispatchPolicy] = None,
    now: Optional[datetime] = None,
) -> Reassignment:
    """
    Branches on the mode snapshotted on the order, never on live config.
    """
    if order.routing_mode == RoutingMode.BROADCAST:
        return refuse_broadcast(
            order, pharmacies, refusing_pharmacy_id,
            broadcast_count=broadcast_count, policy=policy, now=now,
        )
    return reassign(order, pharmacies, evicted_pharmacy_id=refusing_pharmacy_id, policy=policy, now=now)


def handle_timeout(
    order: Order,
    pharmacies: Sequence[Pharmacy],
    *,
    broadcast_count: int,
    policy: Optional[DispatchPolicy] = None,
    now: Optional[datetime] = None,
) -> Reassignment:
    """
    Deadline lapsed without a lock. An order with no recorded target cannot be
    cascaded from anywhere and is cancelled directly.
    """
    if not order.targeted_pharmacy_ids:
        return _cancelled(order)

    if order.routing_mode == RoutingMode.BROADCAST:
        return expire_broadcast(order, pharmacies, broadcast_count=broadcast_count, policy=policy, now=now)
    return reassign(order, pharmacies, policy=policy, now=now)
