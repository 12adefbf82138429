import logging
import threading
from datetime import timedelta

import pytest

from dispatch.dispatcher import OrderDispatcher
from dispatch.errors import StaleActionError
from dispatch.resolver import PharmacyAction, ResponseResolver
from dispatch.sweep import DeadlineSweep
from orders.models import ItemAvailability, OrderStatus, PrescriptionItem, RoutingMode
from orders.quotes import QuoteValidationError
from storage.memory import InMemoryOrderCounter, InMemoryOrderStore


class RacingStore(InMemoryOrderStore):
    """
    Runs `competitor` once, right before the next conditional write lands,
    i.e. after the writer has already read the order.
    """

    def __init__(self):
        super().__init__()
        self.competitor = None

    def update(self, order_id, changes, *, expected_revision=None):
        competitor, self.competitor = self.competitor, None
        if competitor is not None:
            competitor()
        return super().update(order_id, changes, expected_revision=expected_revision)


@pytest.fixture
def racing_engine(directory, config_source, notifier, policy):
    store = RacingStore()
    return (
        store,
        OrderDispatcher(store, directory, config_source, InMemoryOrderCounter(), notifier, policy),
        ResponseResolver(store, directory, config_source, notifier, policy),
        DeadlineSweep(store, directory, config_source, notifier, policy),
    )


@pytest.fixture
def broadcast_order(dispatcher, config_source, prescription, now):
    config_source.update(mode=RoutingMode.BROADCAST, broadcast_count=2)
    return dispatcher.create_order(prescription, now=now)


@pytest.fixture
def round_robin_order(dispatcher, prescription, now):
    return dispatcher.create_order(prescription, now=now)


# -------------------------
# accept / refuse
# -------------------------

def test_accept_locks_round_robin_order(resolver, notifier, round_robin_order):
    order = resolver.accept(round_robin_order.id, "ph-3")

    assert order.pharmacy_id == "ph-3"
    assert order.pharmacy_name == "Pharmacie d'Héron"
    assert order.accepted_by_pharmacy_ids == ("ph-3",)
    assert order.status == OrderStatus.AWAITING_QUOTES
    assert notifier.messages()[-1] == f"Order {order.id} accepted by Pharmacie d'Héron"


def test_accept_by_non_target_is_stale(resolver, store, round_robin_order):
    with pytest.raises(StaleActionError):
        resolver.accept(round_robin_order.id, "ph-1")

    assert store.get(round_robin_order.id).revision == round_robin_order.revision


def test_accept_after_lock_is_stale(resolver, round_robin_order):
    resolver.accept(round_robin_order.id, "ph-3")

    with pytest.raises(StaleActionError):
        resolver.accept(round_robin_order.id, "ph-3")


def test_accept_unknown_order_is_stale(resolver):
    with pytest.raises(StaleActionError) as exc:
        resolver.accept("CMD-999", "ph-3")
    assert exc.value.reason == "order not found"


def test_refuse_cascades_round_robin(resolver, round_robin_order, now, policy):
    order = resolver.refuse(round_robin_order.id, "ph-3", now=now)

    assert order.targeted_pharmacy_ids == ("ph-1",)
    assert order.refused_by_pharmacy_ids == ("ph-3",)
    assert order.deadline == now + policy.response_window


def test_refuse_twice_is_stale(resolver, round_robin_order, now):
    resolver.refuse(round_robin_order.id, "ph-3", now=now)

    with pytest.raises(StaleActionError):
        resolver.refuse(round_robin_order.id, "ph-3", now=now)


def test_refuse_after_lock_is_stale(resolver, round_robin_order, now):
    resolver.accept(round_robin_order.id, "ph-3")

    with pytest.raises(StaleActionError):
        resolver.refuse(round_robin_order.id, "ph-3", now=now)


def test_respond_swallows_stale_actions(resolver, round_robin_order, caplog):
    with caplog.at_level(logging.WARNING, logger="dispatch.resolver"):
        assert resolver.respond(round_robin_order.id, "ph-2", PharmacyAction.ACCEPT) is None

    assert "Ignored" in caplog.text


def test_respond_dispatches_actions(resolver, round_robin_order):
    refused = resolver.respond(round_robin_order.id, "ph-3", PharmacyAction.REFUSE)
    assert refused.current_target == "ph-1"

    accepted = resolver.respond(round_robin_order.id, "ph-1", "accept")
    assert accepted.pharmacy_id == "ph-1"


def test_concurrent_accepts_only_one_pharmacy_wins(racing_engine, prescription, now):
    store, dispatcher, resolver, sweep = racing_engine
    order = dispatcher.create_order(prescription, now=now)

    # ph-3 reads the order; before its lock lands the window lapses,
    # the sweep hands the order to ph-1 and ph-1 accepts
    def competitor():
        sweep.run_cycle(now=now + timedelta(seconds=301))
        resolver.accept(order.id, "ph-1")

    store.competitor = competitor

    with pytest.raises(StaleActionError):
        resolver.accept(order.id, "ph-3")

    final = store.get(order.id)
    assert final.pharmacy_id == "ph-1"
    assert final.accepted_by_pharmacy_ids == ("ph-1",)
    assert final.refused_by_pharmacy_ids == ("ph-3",)


def test_refuse_retries_against_fresh_state(racing_engine, prescription, now):
    store, dispatcher, resolver, _ = racing_engine
    order = dispatcher.create_order(prescription, now=now)
    store.competitor = lambda: store.update(order.id, {"payload": {"note": "edited"}})

    refused = resolver.refuse(order.id, "ph-3", now=now)

    assert refused.payload == {"note": "edited"}
    assert refused.targeted_pharmacy_ids == ("ph-1",)


# -------------------------
# quotes
# -------------------------

def test_round_robin_quote_requires_lock(resolver, round_robin_order, priced_items):
    with pytest.raises(StaleActionError):
        resolver.submit_quote(round_robin_order.id, "ph-3", priced_items)

    resolver.accept(round_robin_order.id, "ph-3")
    order = resolver.submit_quote(round_robin_order.id, "ph-3", priced_items)

    assert len(order.quotes) == 1
    assert order.quotes[0].total_amount == 2700.0
    assert order.quotes[0].delivery_fee == 500
    assert order.quotes[0].estimated_time == 15


def test_invalid_quote_writes_nothing(resolver, store, round_robin_order):
    resolver.accept(round_robin_order.id, "ph-3")
    before = store.get(round_robin_order.id)
    draft = [PrescriptionItem("Amoxicilline", availability=ItemAvailability.AVAILABLE)]

    with pytest.raises(QuoteValidationError):
        resolver.submit_quote(round_robin_order.id, "ph-3", draft)

    assert store.get(round_robin_order.id).revision == before.revision


def test_one_quote_per_pharmacy(resolver, round_robin_order, priced_items):
    resolver.accept(round_robin_order.id, "ph-3")
    resolver.submit_quote(round_robin_order.id, "ph-3", priced_items, delivery_fee=300, estimated_time=30)

    with pytest.raises(StaleActionError):
        resolver.submit_quote(round_robin_order.id, "ph-3", priced_items)


def test_broadcast_accept_does_not_lock(resolver, store, broadcast_order):
    order = resolver.accept(broadcast_order.id, "ph-3")
    assert order.accepted_by_pharmacy_ids == ("ph-3",)
    assert not order.is_locked

    again = resolver.accept(broadcast_order.id, "ph-3")
    assert again.revision == order.revision


def test_broadcast_quote_requires_accept(resolver, broadcast_order, priced_items):
    with pytest.raises(StaleActionError):
        resolver.submit_quote(broadcast_order.id, "ph-1", priced_items)


def test_refuse_after_quoting_is_stale(resolver, broadcast_order, priced_items, now):
    resolver.accept(broadcast_order.id, "ph-3")
    resolver.submit_quote(broadcast_order.id, "ph-3", priced_items)

    with pytest.raises(StaleActionError):
        resolver.refuse(broadcast_order.id, "ph-3", now=now)


# -------------------------
# select_quote / mark_ready
# -------------------------

def test_select_quote_commits_the_order(resolver, notifier, broadcast_order, priced_items):
    resolver.accept(broadcast_order.id, "ph-3")
    resolver.submit_quote(broadcast_order.id, "ph-3", priced_items, delivery_fee=400)

    order = resolver.select_quote(broadcast_order.id, "ph-3", payment_method="waafi", payment_type="delivery")

    assert order.status == OrderStatus.PREPARING
    assert order.pharmacy_id == "ph-3"
    assert order.pharmacy_name == "Pharmacie d'Héron"
    assert order.total_amount == 2700.0
    assert order.delivery_fee == 400
    assert order.items == tuple(priced_items)
    assert order.deadline is None
    assert order.payload["paymentMethod"] == "waafi"
    assert order.payload["paymentType"] == "delivery"
    assert notifier.messages()[-1] == (
        f"Payment confirmed for order {order.id}, preparation in progress"
    )


def test_select_quote_locks_out_other_bidders(resolver, broadcast_order, priced_items):
    resolver.accept(broadcast_order.id, "ph-3")
    resolver.accept(broadcast_order.id, "ph-1")
    resolver.submit_quote(broadcast_order.id, "ph-3", priced_items)
    resolver.select_quote(broadcast_order.id, "ph-3")

    with pytest.raises(StaleActionError):
        resolver.submit_quote(broadcast_order.id, "ph-1", priced_items)
    with pytest.raises(StaleActionError):
        resolver.select_quote(broadcast_order.id, "ph-3")


def test_select_quote_without_quote_is_stale(resolver, broadcast_order):
    with pytest.raises(StaleActionError):
        resolver.select_quote(broadcast_order.id, "ph-1")


def test_concurrent_selections_commit_once(resolver, store, broadcast_order, priced_items):
    for pharmacy_id in ("ph-3", "ph-1"):
        resolver.accept(broadcast_order.id, pharmacy_id)
        resolver.submit_quote(broadcast_order.id, pharmacy_id, priced_items)

    barrier = threading.Barrier(2)
    outcomes = {}

    def select(pharmacy_id):
        barrier.wait()
        try:
            outcomes[pharmacy_id] = resolver.select_quote(broadcast_order.id, pharmacy_id)
        except StaleActionError as stale:
            outcomes[pharmacy_id] = stale

    threads = [threading.Thread(target=select, args=(pid,)) for pid in ("ph-3", "ph-1")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [pid for pid, outcome in outcomes.items() if not isinstance(outcome, StaleActionError)]
    assert len(winners) == 1
    assert store.get(broadcast_order.id).pharmacy_id == winners[0]


def test_select_quote_race_loser_sees_winner(racing_engine, config_source, prescription, priced_items, now):
    store, dispatcher, resolver, _ = racing_engine
    config_source.update(mode=RoutingMode.BROADCAST, broadcast_count=2)
    order = dispatcher.create_order(prescription, now=now)
    for pharmacy_id in ("ph-3", "ph-1"):
        resolver.accept(order.id, pharmacy_id)
        resolver.submit_quote(order.id, pharmacy_id, priced_items)

    store.competitor = lambda: resolver.select_quote(order.id, "ph-1")

    with pytest.raises(StaleActionError):
        resolver.select_quote(order.id, "ph-3")

    assert store.get(order.id).pharmacy_id == "ph-1"


def test_mark_ready(resolver, round_robin_order, priced_items):
    resolver.accept(round_robin_order.id, "ph-3")
    resolver.submit_quote(round_robin_order.id, "ph-3", priced_items)

    with pytest.raises(StaleActionError):
        resolver.mark_ready(round_robin_order.id, "ph-3")

    resolver.select_quote(round_robin_order.id, "ph-3")

    with pytest.raises(StaleActionError):
        resolver.mark_ready(round_robin_order.id, "ph-1")

    ready = resolver.mark_ready(round_robin_order.id, "ph-3")
    assert ready.status == OrderStatus.READY_FOR_PICKUP


def test_actions_on_cancelled_order_are_stale(resolver, round_robin_order, priced_items, now):
    for pharmacy_id in ("ph-3", "ph-1", "ph-2"):
        order = resolver.refuse(round_robin_order.id, pharmacy_id, now=now)
    assert order.status == OrderStatus.CANCELLED

    with pytest.raises(StaleActionError):
        resolver.accept(round_robin_order.id, "ph-2")
    with pytest.raises(StaleActionError):
        resolver.submit_quote(round_robin_order.id, "ph-2", priced_items)
