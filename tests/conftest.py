from datetime import datetime, timezone

import pytest

from dispatch.dispatcher import OrderDispatcher
from dispatch.notifications import InMemoryNotifier
from dispatch.policy import InMemoryRoutingConfigSource, default_dispatch_policy
from dispatch.resolver import ResponseResolver
from dispatch.sweep import DeadlineSweep
from orders.models import ItemAvailability, PrescriptionItem
from pharmacies.directory import PharmacyDirectory, default_pharmacies
from storage.memory import InMemoryOrderCounter, InMemoryOrderStore

T0 = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return T0


@pytest.fixture
def directory():
    # ph-3 (0.8km) < ph-1 (1.2km) < ph-2 (2.5km)
    return PharmacyDirectory(default_pharmacies())


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def policy():
    return default_dispatch_policy()


@pytest.fixture
def config_source():
    return InMemoryRoutingConfigSource()


@pytest.fixture
def prescription():
    return [
        PrescriptionItem("Amoxicilline", "500mg", 2),
        PrescriptionItem("Paracétamol", "1g", 1),
    ]


@pytest.fixture
def priced_items():
    return [
        PrescriptionItem("Amoxicilline", "500mg", 2, availability=ItemAvailability.AVAILABLE, price=1200.0),
        PrescriptionItem("Paracétamol", "1g", 1, availability=ItemAvailability.GENERIC_AVAILABLE, price=300.0, is_generic=True),
    ]


@pytest.fixture
def dispatcher(store, directory, config_source, notifier, policy):
    return OrderDispatcher(store, directory, config_source, InMemoryOrderCounter(), notifier, policy)


@pytest.fixture
def resolver(store, directory, config_source, notifier, policy):
    return ResponseResolver(store, directory, config_source, notifier, policy)


@pytest.fixture
def sweep(store, directory, config_source, notifier, policy):
    return DeadlineSweep(store, directory, config_source, notifier, policy, clock=lambda: T0)
