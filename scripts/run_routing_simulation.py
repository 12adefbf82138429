import csv
import logging
import os
import random
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from dispatch.dispatcher import OrderDispatcher
from dispatch.errors import NoCandidateError, StaleActionError
from dispatch.notifications import InMemoryNotifier, Severity
from dispatch.policy import InMemoryRoutingConfigSource, RoutingConfig, default_dispatch_policy
from dispatch.resolver import ResponseResolver
from dispatch.sweep import DeadlineSweep
from orders.models import ItemAvailability, OrderStatus, PrescriptionItem, RoutingMode
from pharmacies.directory import PharmacyDirectory, default_pharmacies
from storage.memory import InMemoryOrderCounter, InMemoryOrderStore

CATALOGUE = [
    PrescriptionItem("Amoxicilline", "500mg", 2),
    PrescriptionItem("Paracétamol", "1g", 1),
    PrescriptionItem("Ibuprofène", "400mg", 1),
    PrescriptionItem("Insuline glargine", "100UI/ml", 1, is_cold_chain=True),
    PrescriptionItem("Oméprazole", "20mg", 1),
    PrescriptionItem("Metformine", "850mg", 3),
]

RESULT_COLUMNS = [
    "order_id", "routing_mode", "final_status", "pharmacy_id",
    "refusals", "quotes", "total_amount", "sweep_rounds",
]


def load_directory(filepath: Optional[str] = None) -> PharmacyDirectory:
    if filepath is None:
        return PharmacyDirectory(default_pharmacies())

    # Resolve the correct path depending on where the user runs the script from.
    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    absolute_path = filepath if os.path.isabs(filepath) else os.path.join(base_dir, filepath)
    return PharmacyDirectory.from_csv(absolute_path)


def price_items(items, rng: random.Random) -> List[PrescriptionItem]:
    return [
        replace(item, availability=ItemAvailability.AVAILABLE, price=float(rng.randint(200, 3000)))
        for item in items
    ]


def run_simulation(
    num_orders: int = 20,
    mode: RoutingMode = RoutingMode.ROUND_ROBIN,
    broadcast_count: int = 3,
    pharmacies_file: Optional[str] = None,
    output_file: Optional[str] = "routing_results.csv",
    accept_probability: float = 0.4,
    refuse_probability: float = 0.3,
    max_rounds: int = 50,
    seed: Optional[int] = None,
) -> Dict[str, int]:
    """
    Drives `num_orders` orders through creation, random pharmacy responses
    (accept + quote / refuse / silence) and deadline sweeps on a simulated clock.
    The patient picks the cheapest quote once one is available.
    """
    print("=== STARTING ROUTING SIMULATION ===")
    rng = random.Random(seed)

    # 1. Configure System
    directory = load_directory(pharmacies_file)
    store = InMemoryOrderStore()
    notifier = InMemoryNotifier()
    policy = default_dispatch_policy()
    config_source = InMemoryRoutingConfigSource(RoutingConfig(mode=RoutingMode(mode), broadcast_count=broadcast_count))

    clock = [datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)]
    dispatcher = OrderDispatcher(store, directory, config_source, InMemoryOrderCounter(), notifier, policy)
    resolver = ResponseResolver(store, directory, config_source, notifier, policy)
    sweep = DeadlineSweep(store, directory, config_source, notifier, policy, clock=lambda: clock[0])

    online = sum(1 for pharmacy in directory.list() if pharmacy.online)
    print(f"Loaded {len(directory.list())} pharmacies ({online} online), mode={config_source.current().mode.value}\n")

    summary = {
        "orders": 0,
        "not_created": 0,
        "ready": 0,
        "cancelled": 0,
        "unresolved": 0,
        "quotes": 0,
        "refusals": 0,
        "urgent_notifications": 0,
    }
    rows = []

    # 2. Run every order to a resolution
    for _ in range(num_orders):
        items = rng.sample(CATALOGUE, rng.randint(1, 3))
        try:
            order = dispatcher.create_order(items, {"patientName": f"Patient {rng.randint(100, 999)}"}, now=clock[0])
        except NoCandidateError:
            summary["not_created"] += 1
            print("[FAILED] No pharmacy online, order not created")
            continue
        summary["orders"] += 1

        sweep_rounds = 0
        for _ in range(max_rounds):
            order = store.get(order.id)
            if order.status != OrderStatus.AWAITING_QUOTES or order.deadline is None:
                break
            if order.routing_mode == RoutingMode.ROUND_ROBIN and order.is_locked:
                break

            acted = silent = False
            for pharmacy_id in order.targeted_pharmacy_ids:
                if order.quote_from(pharmacy_id) is not None:
                    continue
                roll = rng.random()
                try:
                    if roll < accept_probability:
                        resolver.accept(order.id, pharmacy_id)
                        resolver.submit_quote(order.id, pharmacy_id, price_items(order.items, rng))
                        acted = True
                    elif roll < accept_probability + refuse_probability:
                        resolver.refuse(order.id, pharmacy_id, now=clock[0])
                        acted = True
                    else:
                        silent = True
                except StaleActionError:
                    # the order moved on (cascade or lock) while we were answering
                    continue

            if silent or not acted:
                # nobody else is going to answer: let the window lapse
                clock[0] += policy.response_window + timedelta(seconds=1)
                sweep.run_cycle()
                sweep_rounds += 1

        order = store.get(order.id)
        if order.status == OrderStatus.AWAITING_QUOTES and order.quotes:
            cheapest = min(order.quotes, key=lambda q: q.total_amount + q.delivery_fee)
            resolver.select_quote(order.id, cheapest.pharmacy_id, payment_method="cash", payment_type="delivery")
            order = resolver.mark_ready(order.id, cheapest.pharmacy_id)

        if order.status == OrderStatus.READY_FOR_PICKUP:
            summary["ready"] += 1
            print(f"[SUCCESS] {order.id} -> {order.pharmacy_name} ({order.total_amount:.0f} + {order.delivery_fee:.0f})")
        elif order.status == OrderStatus.CANCELLED:
            summary["cancelled"] += 1
            print(f"[FAILED] {order.id} -> cancelled after {len(order.refused_by_pharmacy_ids)} refusal(s)")
        else:
            summary["unresolved"] += 1
            print(f"[PENDING] {order.id} -> still {order.status.value}")

        summary["quotes"] += len(order.quotes)
        summary["refusals"] += len(order.refused_by_pharmacy_ids)
        rows.append([
            order.id,
            order.routing_mode.value,
            order.status.value,
            order.pharmacy_id or "",
            len(order.refused_by_pharmacy_ids),
            len(order.quotes),
            order.total_amount if order.total_amount is not None else "",
            sweep_rounds,
        ])

    summary["urgent_notifications"] = len(notifier.messages(Severity.URGENT))

    # 3. Save results
    if output_file:
        with open(output_file, "w", newline="") as file:
            writer = csv.writer(file)
            writer.writerow(RESULT_COLUMNS)
            writer.writerows(rows)
        print(f"\nResults written to '{output_file}'.")

    print("\n=== SIMULATION COMPLETE ===")
    print(f"Orders ready for pickup: {summary['ready']} / {summary['orders']}")
    print(f"Orders cancelled: {summary['cancelled']}")
    print(f"Orders not created: {summary['not_created']}")
    return summary


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    run_simulation(num_orders=30, mode=RoutingMode.ROUND_ROBIN, seed=42)
    run_simulation(num_orders=30, mode=RoutingMode.BROADCAST, broadcast_count=2, output_file="routing_results_broadcast.csv", seed=42)
