"""Routing error taxonomy."""

from __future__ import annotations

from typing import Optional


class DispatchError(Exception):
    """Base class for routing failures that callers are expected to handle."""
    pass


class NoCandidateError(DispatchError):
    """
    No eligible pharmacy at dispatch or reassignment time.
    Recovered by cancelling the order (reassignment) or skipping creation (dispatch).
    """

    def __init__(self, order_id: Optional[str] = None):
        if order_id:
            message = f"No pharmacy available for order {order_id}"
        else:
            message = "No pharmacy available"
        super().__init__(message)
        self.order_id = order_id


class StaleActionError(DispatchError):
    """
    A response or command arrived for an order that is already locked,
    terminal, no longer targeting the sender, or missing.
    Treated as a no-op: the caller should refresh to the current truth.
    """

    def __init__(self, order_id: str, reason: str):
        super().__init__(f"Stale action on order {order_id}: {reason}")
        self.order_id = order_id
        self.reason = reason
