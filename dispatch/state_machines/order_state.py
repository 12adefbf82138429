from dataclasses import replace
from typing import Dict, Set

from orders.models import Order, OrderStatus


class OrderStateException(Exception):
    """Raised when an invalid state transition is attempted."""
    pass


# from_status -> allowed to_status
VALID_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING_ANALYSIS: {OrderStatus.AWAITING_QUOTES, OrderStatus.CANCELLED},
    OrderStatus.AWAITING_QUOTES: {OrderStatus.PREPARING, OrderStatus.CANCELLED},
    OrderStatus.PREPARING: {OrderStatus.READY_FOR_PICKUP},
    OrderStatus.READY_FOR_PICKUP: {OrderStatus.OUT_FOR_DELIVERY},
    OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.DELIVERED},
}

TERMINAL_STATUSES: Set[OrderStatus] = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}


def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, set())


def transition_order(order: Order, to_status: OrderStatus) -> Order:
    """
    Returns a copy of the order in `to_status`. The input is never mutated.
    """
    if not can_transition(order.status, to_status):
        raise OrderStateException(
            f"Cannot transition order {order.id} from {order.status.value} to {to_status.value}"
        )
    return replace(order, status=to_status)


def cancel_for_exhaustion(order: Order) -> Order:
    """
    The only road to CANCELLED: nobody eligible is left to serve the order.
    Targets are cleared so no terminal keeps showing the offer.
    """
    cancelled = transition_order(order, OrderStatus.CANCELLED)
    return replace(cancelled, targeted_pharmacy_ids=(), deadline=None)


def transition_to_preparing(order: Order) -> Order:
    """
    Patient picked a quote and paid: routing is over for this order.
    """
    if order.status != OrderStatus.AWAITING_QUOTES:
        raise OrderStateException(f"Order {order.id} is not AWAITING_QUOTES. Current: {order.status.value}")
    return replace(transition_order(order, OrderStatus.PREPARING), deadline=None)
