from dataclasses import replace
from datetime import timedelta

import pytest

from dispatch.state_machines.order_state import (
    OrderStateException,
    can_transition,
    cancel_for_exhaustion,
    transition_order,
    transition_to_preparing,
)
from orders.models import (
    ItemAvailability,
    Order,
    OrderStatus,
    PrescriptionItem,
    Quote,
    RoutingMode,
    format_order_id,
)
from orders.quotes import QuoteValidationError, build_quote, quote_total, validate_quote_items


@pytest.fixture
def open_order(now):
    return Order(
        id="CMD-21",
        status=OrderStatus.AWAITING_QUOTES,
        routing_mode=RoutingMode.ROUND_ROBIN,
        targeted_pharmacy_ids=("ph-3",),
        deadline=now + timedelta(minutes=5),
        created_at=now,
        revision="1",
    )


def test_format_order_id():
    assert format_order_id(21) == "CMD-21"


def test_revision_takes_no_part_in_equality_or_diff(open_order):
    other = replace(open_order, revision="7")

    assert other == open_order
    assert other.changes_since(open_order) == {}


def test_changes_since_lists_only_changed_fields(open_order, now):
    moved = replace(open_order, targeted_pharmacy_ids=("ph-1",), refused_by_pharmacy_ids=("ph-3",))

    assert moved.changes_since(open_order) == {
        "targeted_pharmacy_ids": ("ph-1",),
        "refused_by_pharmacy_ids": ("ph-3",),
    }


def test_lock_and_open_flags(open_order):
    assert open_order.is_open_for_routing
    assert open_order.current_target == "ph-3"

    locked = replace(open_order, pharmacy_id="ph-3")
    assert locked.is_locked
    assert not locked.is_open_for_routing

    cancelled = replace(open_order, status=OrderStatus.CANCELLED)
    assert not cancelled.is_open_for_routing


def test_quote_from(open_order):
    quote = Quote("ph-3", "Pharmacie d'Héron", (), 1000.0, 500, 15)
    order = replace(open_order, quotes=(quote,))

    assert order.quote_from("ph-3") is quote
    assert order.quote_from("ph-1") is None


# -------------------------
# Quotes
# -------------------------

def test_validate_rejects_empty_quote():
    with pytest.raises(QuoteValidationError) as exc:
        validate_quote_items([])
    assert exc.value.errors == ["A quote needs at least one item"]


def test_validate_collects_every_problem():
    items = [
        PrescriptionItem("  ", availability=ItemAvailability.AVAILABLE, price=100.0),
        PrescriptionItem("Amoxicilline", availability=ItemAvailability.AVAILABLE, price=None),
        PrescriptionItem("Insuline", quantity=0, availability=ItemAvailability.AVAILABLE, price=900.0),
    ]

    with pytest.raises(QuoteValidationError) as exc:
        validate_quote_items(items)

    assert len(exc.value.errors) == 3
    assert "name is required" in exc.value.errors[0]
    assert "price must be > 0" in exc.value.errors[1]
    assert "quantity must be >= 1" in exc.value.errors[2]


def test_unavailable_items_need_no_price_and_are_not_billed():
    items = [
        PrescriptionItem("Amoxicilline", quantity=2, availability=ItemAvailability.AVAILABLE, price=1000.0),
        PrescriptionItem("Ventoline", availability=ItemAvailability.UNAVAILABLE),
        PrescriptionItem("Doliprane", availability=ItemAvailability.GENERIC_AVAILABLE, price=250.0),
    ]

    validate_quote_items(items)
    assert quote_total(items) == 2250.0


def test_build_quote_freezes_items_and_total(priced_items):
    quote = build_quote("ph-1", "Pharmacie de la Paix", priced_items, delivery_fee=500, estimated_time=20)

    assert quote.items == tuple(priced_items)
    assert quote.total_amount == 2700.0
    assert quote.delivery_fee == 500
    assert quote.estimated_time == 20


# -------------------------
# Order state machine
# -------------------------

def test_valid_transitions():
    assert can_transition(OrderStatus.AWAITING_QUOTES, OrderStatus.PREPARING)
    assert can_transition(OrderStatus.PREPARING, OrderStatus.READY_FOR_PICKUP)
    assert not can_transition(OrderStatus.AWAITING_QUOTES, OrderStatus.DELIVERED)
    assert not can_transition(OrderStatus.CANCELLED, OrderStatus.AWAITING_QUOTES)


def test_invalid_transition_raises(open_order):
    with pytest.raises(OrderStateException):
        transition_order(open_order, OrderStatus.DELIVERED)


def test_cancel_for_exhaustion_clears_routing(open_order):
    cancelled = cancel_for_exhaustion(open_order)

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.targeted_pharmacy_ids == ()
    assert cancelled.deadline is None
    # input untouched
    assert open_order.status == OrderStatus.AWAITING_QUOTES


def test_transition_to_preparing(open_order):
    preparing = transition_to_preparing(open_order)
    assert preparing.status == OrderStatus.PREPARING
    assert preparing.deadline is None

    with pytest.raises(OrderStateException):
        transition_to_preparing(preparing)
