"""
Purpose: Optimistic read-compare-write against the Order Store.
What it does:
Every routing write goes through `apply_order_update`:

1. read the order (and its revision)
2. compute the next version with a pure `mutate(order)`
3. write only the changed fields, conditional on the revision read in (1)
4. on ConcurrentUpdateError, start over from (1) against the fresh state

`mutate` re-validates its guards on every attempt, so the loser of a race
sees the winner's write and raises StaleActionError instead of overwriting it.
"""

from __future__ import annotations

import logging
from typing import Callable

from orders.models import Order
from orders.store import ConcurrentUpdateError, OrderStore

from .errors import StaleActionError

logger = logging.getLogger(__name__)

OrderMutation = Callable[[Order], Order]


def apply_order_update(
    store: OrderStore,
    order_id: str,
    mutate: OrderMutation,
    *,
    max_attempts: int = 5,
) -> Order:
    """
    Returns the committed order (or the unchanged order if `mutate` had nothing to do).
    Raises StaleActionError if the order is missing or `mutate` rejects it,
    ConcurrentUpdateError if every attempt lost a race.
    """
    last_conflict = None

    for attempt in range(1, max_attempts + 1):
        current = store.get(order_id)
        if current is None:
            raise StaleActionError(order_id, "order not found")

        updated = mutate(current)
        changes = updated.changes_since(current)
        if not changes:
            return current

        try:
            return store.update(order_id, changes, expected_revision=current.revision)
        except ConcurrentUpdateError as conflict:
            last_conflict = conflict
            logger.info(
                "Order %s changed under us (attempt %d/%d), re-reading",
                order_id, attempt, max_attempts,
            )

    raise last_conflict
