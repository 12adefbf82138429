"""
End-to-end routing flows against the in-memory store, with the reference
roster: ph-1 (1.2km), ph-2 (2.5km), ph-3 (0.8km), all online.
"""
from datetime import timedelta

from dispatch.dispatcher import OrderDispatcher
from dispatch.resolver import ResponseResolver
from orders.models import OrderStatus, RoutingMode
from orders.store import pharmacy_inbox_query
from pharmacies.directory import PharmacyDirectory, default_pharmacies
from pharmacies.models import Pharmacy
from storage.memory import InMemoryOrderCounter


def test_round_robin_cascade_until_accept(dispatcher, resolver, sweep, store, prescription, now, policy):
    order = dispatcher.create_order(prescription, now=now)
    assert order.targeted_pharmacy_ids == ("ph-3",)

    # ph-3 refuses: next by distance is ph-1 with a fresh window
    refused_at = now + timedelta(seconds=10)
    order = resolver.refuse(order.id, "ph-3", now=refused_at)
    assert order.targeted_pharmacy_ids == ("ph-1",)
    assert order.deadline == refused_at + policy.response_window

    # ph-1 stays silent: the sweep hands the order to ph-2
    lapsed_at = order.deadline + timedelta(seconds=1)
    stats = sweep.run_cycle(now=lapsed_at)
    assert stats["reassigned"] == 1
    assert store.get(order.id).targeted_pharmacy_ids == ("ph-2",)

    order = resolver.accept(order.id, "ph-2")

    assert order.pharmacy_id == "ph-2"
    assert order.accepted_by_pharmacy_ids == ("ph-2",)
    assert order.refused_by_pharmacy_ids == ("ph-3", "ph-1")
    assert order.status == OrderStatus.AWAITING_QUOTES


def test_broadcast_parallel_quotes(dispatcher, resolver, store, config_source, prescription, priced_items, now):
    config_source.update(mode=RoutingMode.BROADCAST, broadcast_count=2)

    order = dispatcher.create_order(prescription, now=now)
    assert order.targeted_pharmacy_ids == ("ph-3", "ph-1")

    resolver.accept(order.id, "ph-3")
    resolver.accept(order.id, "ph-1")
    resolver.submit_quote(order.id, "ph-1", priced_items, delivery_fee=400)
    order = resolver.submit_quote(order.id, "ph-3", priced_items)

    assert [q.pharmacy_id for q in order.quotes] == ["ph-1", "ph-3"]
    assert order.accepted_by_pharmacy_ids == ("ph-3", "ph-1")
    assert order.pharmacy_id is None
    assert order.status == OrderStatus.AWAITING_QUOTES


def test_broadcast_patient_picks_cheapest_after_bidding_closes(
    dispatcher, resolver, sweep, store, config_source, notifier, prescription, priced_items, now,
):
    config_source.update(mode=RoutingMode.BROADCAST, broadcast_count=3)
    order = dispatcher.create_order(prescription, now=now)

    resolver.accept(order.id, "ph-2")
    resolver.submit_quote(order.id, "ph-2", priced_items, delivery_fee=200)
    resolver.accept(order.id, "ph-1")
    resolver.submit_quote(order.id, "ph-1", priced_items, delivery_fee=800)
    resolver.refuse(order.id, "ph-3", now=now)

    sweep.run_cycle(now=now + timedelta(minutes=6))
    closed = store.get(order.id)
    assert closed.deadline is None
    assert set(closed.targeted_pharmacy_ids) == {"ph-1", "ph-2"}

    cheapest = min(closed.quotes, key=lambda q: q.total_amount + q.delivery_fee)
    order = resolver.select_quote(order.id, cheapest.pharmacy_id, payment_method="cash")
    order = resolver.mark_ready(order.id, cheapest.pharmacy_id)

    assert order.pharmacy_id == "ph-2"
    assert order.status == OrderStatus.READY_FOR_PICKUP
    assert f"Bidding closed for order {order.id} with 2 quote(s)" in notifier.messages()


def test_broadcast_silence_expands_then_cancels(dispatcher, sweep, store, config_source, prescription, now):
    config_source.update(mode=RoutingMode.BROADCAST, broadcast_count=2)
    order = dispatcher.create_order(prescription, now=now)

    sweep.run_cycle(now=now + timedelta(minutes=6))
    expanded = store.get(order.id)
    assert expanded.targeted_pharmacy_ids == ("ph-2",)
    assert expanded.refused_by_pharmacy_ids == ("ph-3", "ph-1")

    sweep.run_cycle(now=now + timedelta(minutes=12))
    assert store.get(order.id).status == OrderStatus.CANCELLED


def test_live_broadcast_count_applies_to_expansion(store, config_source, notifier, policy, prescription, now):
    extra = [Pharmacy.new(f"ph-{index}", f"Pharmacie {index}", distance) for index, distance in ((4, 3.0), (5, 3.5), (6, 4.0))]
    directory = PharmacyDirectory(default_pharmacies() + extra)
    dispatcher = OrderDispatcher(store, directory, config_source, InMemoryOrderCounter(), notifier, policy)
    resolver = ResponseResolver(store, directory, config_source, notifier, policy)

    config_source.update(mode=RoutingMode.BROADCAST, broadcast_count=1)
    order = dispatcher.create_order(prescription, now=now)
    assert order.targeted_pharmacy_ids == ("ph-3",)

    config_source.update(broadcast_count=3)
    order = resolver.refuse(order.id, "ph-3", now=now)

    assert order.targeted_pharmacy_ids == ("ph-1", "ph-2", "ph-4")


def test_pharmacy_inbox_subscription_follows_the_cascade(dispatcher, resolver, store, prescription, now):
    order = dispatcher.create_order(prescription, now=now)
    ph1_inbox = []
    unsubscribe = store.subscribe(pharmacy_inbox_query("ph-1"), ph1_inbox.append)

    resolver.refuse(order.id, "ph-3", now=now)
    resolver.accept(order.id, "ph-1")
    unsubscribe()

    assert [o.current_target for o in ph1_inbox] == ["ph-1", "ph-1"]
    assert ph1_inbox[-1].pharmacy_id == "ph-1"
