"""
Purpose: Order Store, order counter and routing config backed by Firestore.
What it does:
- Maps Order <-> Firestore document (camelCase field names, typed values)
- FirestoreOrderStore: conditional PATCH on the document updateTime (the revision),
  structured queries for the sweep and pharmacy inboxes, polling subscriptions
- FirestoreOrderCounter: counters/orders.lastOrderNumber via a server-side increment
- FirestoreRoutingConfigSource: the admin-editable config/routing document

HTTP details live in storage.firestore_client; value encoding in storage.firestore_codec.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional

from dispatch.policy import RoutingConfig, RoutingConfigSource, default_routing_config
from orders.models import (
    ItemAvailability,
    Order,
    OrderStatus,
    PrescriptionItem,
    Quote,
    RoutingMode,
)
from orders.store import (
    ConcurrentUpdateError,
    DuplicateOrderError,
    OrderCallback,
    OrderCounter,
    OrderNotFoundError,
    OrderQuery,
    OrderStore,
    Unsubscribe,
)

from .firestore_client import (
    FirestoreAlreadyExists,
    FirestoreClient,
    FirestoreNotFound,
    FirestorePreconditionFailed,
)
from .firestore_codec import decode_fields, encode_fields, encode_value

logger = logging.getLogger(__name__)

ORDERS_COLLECTION = "orders"

# Order attribute -> document field
ORDER_FIELDS = {
    "status": "status",
    "routing_mode": "routingMode",
    "targeted_pharmacy_ids": "targetedPharmacyIds",
    "refused_by_pharmacy_ids": "refusedByPharmacyIds",
    "accepted_by_pharmacy_ids": "acceptedByPharmacyIds",
    "deadline": "deadline",
    "pharmacy_id": "pharmacyId",
    "pharmacy_name": "pharmacyName",
    "quotes": "quotes",
    "items": "items",
    "total_amount": "totalAmount",
    "delivery_fee": "deliveryFee",
    "payload": "payload",
    "created_at": "timestamp",
}


#----------------
# Document mapping
#----------------
def item_to_dict(item: PrescriptionItem) -> Dict[str, Any]:
    return {
        "name": item.name,
        "dosage": item.dosage,
        "quantity": item.quantity,
        "isPsychotropic": item.is_psychotropic,
        "isColdChain": item.is_cold_chain,
        "availability": item.availability.value,
        "price": item.price,
        "isGeneric": item.is_generic,
        "packaging": item.packaging,
    }


def item_from_dict(data: Dict[str, Any]) -> PrescriptionItem:
    price = data.get("price")
    return PrescriptionItem(
        name=data.get("name", ""),
        dosage=data.get("dosage") or "",
        quantity=int(data.get("quantity", 1)),
        is_psychotropic=bool(data.get("isPsychotropic", False)),
        is_cold_chain=bool(data.get("isColdChain", False)),
        availability=ItemAvailability(data.get("availability", ItemAvailability.PENDING.value)),
        price=float(price) if price is not None else None,
        is_generic=bool(data.get("isGeneric", False)),
        packaging=data.get("packaging"),
    )


def quote_to_dict(quote: Quote) -> Dict[str, Any]:
    return {
        "pharmacyId": quote.pharmacy_id,
        "pharmacyName": quote.pharmacy_name,
        "items": [item_to_dict(item) for item in quote.items],
        "totalAmount": float(quote.total_amount),
        "deliveryFee": float(quote.delivery_fee),
        "estimatedTime": int(quote.estimated_time),
    }


def quote_from_dict(data: Dict[str, Any]) -> Quote:
    return Quote(
        pharmacy_id=data["pharmacyId"],
        pharmacy_name=data.get("pharmacyName", data["pharmacyId"]),
        items=tuple(item_from_dict(item) for item in data.get("items") or []),
        total_amount=float(data.get("totalAmount", 0)),
        delivery_fee=float(data.get("deliveryFee", 0)),
        estimated_time=int(data.get("estimatedTime", 0)),
    )


def _wire_value(attribute: str, value: Any) -> Any:
    if attribute == "quotes":
        return [quote_to_dict(quote) for quote in value]
    if attribute == "items":
        return [item_to_dict(item) for item in value]
    if attribute in ("targeted_pharmacy_ids", "refused_by_pharmacy_ids", "accepted_by_pharmacy_ids"):
        return list(value)
    if attribute == "total_amount" or attribute == "delivery_fee":
        return float(value) if value is not None else None
    return value


def order_to_fields(order: Order) -> Dict[str, Any]:
    data = {
        wire: _wire_value(attribute, getattr(order, attribute))
        for attribute, wire in ORDER_FIELDS.items()
    }
    return encode_fields(data)


def order_from_document(document: Dict[str, Any]) -> Order:
    data = decode_fields(document.get("fields", {}))
    order_id = document["name"].rsplit("/", 1)[-1]

    def _optional_float(key: str) -> Optional[float]:
        value = data.get(key)
        return float(value) if value is not None else None

    kwargs: Dict[str, Any] = dict(
        id=order_id,
        status=OrderStatus(data["status"]),
        routing_mode=RoutingMode(data.get("routingMode", RoutingMode.ROUND_ROBIN.value)),
        targeted_pharmacy_ids=tuple(data.get("targetedPharmacyIds") or ()),
        refused_by_pharmacy_ids=tuple(data.get("refusedByPharmacyIds") or ()),
        accepted_by_pharmacy_ids=tuple(data.get("acceptedByPharmacyIds") or ()),
        deadline=data.get("deadline"),
        pharmacy_id=data.get("pharmacyId"),
        pharmacy_name=data.get("pharmacyName"),
        quotes=tuple(quote_from_dict(quote) for quote in data.get("quotes") or []),
        items=tuple(item_from_dict(item) for item in data.get("items") or []),
        total_amount=_optional_float("totalAmount"),
        delivery_fee=_optional_float("deliveryFee"),
        payload=data.get("payload") or {},
        revision=document.get("updateTime"),
    )
    if data.get("timestamp") is not None:
        kwargs["created_at"] = data["timestamp"]
    return Order(**kwargs)


#----------------
# Structured queries
#----------------
def _field_filter(field_path: str, op: str, value: Dict[str, Any]) -> Dict[str, Any]:
    return {"fieldFilter": {"field": {"fieldPath": field_path}, "op": op, "value": value}}


def build_where(predicate: OrderQuery) -> Optional[Dict[str, Any]]:
    filters: List[Dict[str, Any]] = []
    if predicate.status is not None:
        filters.append(_field_filter("status", "EQUAL", encode_value(predicate.status)))
    if predicate.unlocked_only:
        filters.append({"unaryFilter": {"field": {"fieldPath": "pharmacyId"}, "op": "IS_NULL"}})
    if predicate.deadline_before is not None:
        filters.append(_field_filter("deadline", "LESS_THAN", encode_value(predicate.deadline_before)))
    if predicate.targeted_pharmacy_id is not None:
        filters.append(_field_filter(
            "targetedPharmacyIds", "ARRAY_CONTAINS", encode_value(predicate.targeted_pharmacy_id),
        ))

    if not filters:
        return None
    if len(filters) == 1:
        return filters[0]
    return {"compositeFilter": {"op": "AND", "filters": filters}}


class PollingSubscription:
    """
    Re-runs one query every `interval` seconds and calls back for each order whose
    revision changed since the last poll, plus each order that dropped out of the result.
    """

    def __init__(self, store: "FirestoreOrderStore", predicate: OrderQuery, callback: OrderCallback, interval: float,
                 stop_timeout: float = 10.0):
        self.store = store
        self.predicate = predicate
        self.callback = callback
        self.interval = interval
        self.stop_timeout = stop_timeout
        self._seen: Dict[str, Optional[str]] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll(self) -> int:
        """
        One polling round. Returns how many callbacks fired.
        """
        current = {order.id: order for order in self.store.query(self.predicate)}
        changed = [
            order for order_id, order in current.items()
            if self._seen.get(order_id, "") != order.revision
        ]

        for order_id in set(self._seen) - set(current):
            left = self.store.get(order_id)
            if left is not None:
                changed.append(left)

        self._seen = {order_id: order.revision for order_id, order in current.items()}

        for order in changed:
            if self._stop.is_set():
                break
            try:
                self.callback(order)
            except Exception:
                logger.exception("Subscriber callback failed for order %s", order.id)
        return len(changed)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll()
            except Exception:
                logger.exception("Polling %s failed", self.predicate)
            self._stop.wait(self.interval)

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="order-subscription", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Once this returns, the callback is not called again. Safe to call from the callback itself.
        """
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(self.stop_timeout if timeout is None else timeout)
            if thread.is_alive():
                logger.warning("Subscription to %s did not stop within the timeout", self.predicate)


class FirestoreOrderStore(OrderStore):

    def __init__(self, client: FirestoreClient, collection: str = ORDERS_COLLECTION, poll_interval: float = 1.0):
        self.client = client
        self.collection = collection
        self.poll_interval = poll_interval

    def get(self, order_id: str) -> Optional[Order]:
        document = self.client.get_document(self.collection, order_id)
        return order_from_document(document) if document else None

    def query(self, predicate: OrderQuery) -> List[Order]:
        documents = self.client.run_query(self.collection, build_where(predicate))
        orders = [order_from_document(document) for document in documents]
        return [order for order in orders if predicate.matches(order)]

    def insert(self, order: Order) -> Order:
        try:
            document = self.client.create_document(self.collection, order.id, order_to_fields(order))
        except FirestoreAlreadyExists as exc:
            raise DuplicateOrderError(order.id) from exc
        return replace(order, revision=document.get("updateTime"))

    def update(
        self,
        order_id: str,
        changes: Mapping[str, Any],
        *,
        expected_revision: Optional[str] = None,
    ) -> Order:
        unknown = set(changes) - set(ORDER_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields {sorted(unknown)} on order {order_id}")

        data = {ORDER_FIELDS[attribute]: _wire_value(attribute, value) for attribute, value in changes.items()}
        try:
            document = self.client.patch_document(
                self.collection,
                order_id,
                encode_fields(data),
                field_paths=list(data),
                update_time=expected_revision,
                must_exist=True,
            )
        except FirestoreNotFound as exc:
            raise OrderNotFoundError(order_id) from exc
        except FirestorePreconditionFailed as exc:
            if expected_revision is None:
                raise OrderNotFoundError(order_id) from exc
            raise ConcurrentUpdateError(order_id, expected_revision) from exc

        return order_from_document(document)

    def subscribe(self, predicate: OrderQuery, callback: OrderCallback) -> Unsubscribe:
        subscription = PollingSubscription(
            self, predicate, callback, self.poll_interval,
            stop_timeout=self.poll_interval + self.client.timeout,
        )
        subscription.start()
        return subscription.stop


class FirestoreOrderCounter(OrderCounter):

    def __init__(
        self,
        client: FirestoreClient,
        collection: str = "counters",
        document_id: str = "orders",
        field_path: str = "lastOrderNumber",
    ):
        self.client = client
        self.collection = collection
        self.document_id = document_id
        self.field_path = field_path

    def next_order_number(self) -> int:
        return self.client.increment(self.collection, self.document_id, self.field_path)


class FirestoreRoutingConfigSource(RoutingConfigSource):
    """
    Reads config/routing on every call so an admin edit applies to the next decision.
    A missing document is created with the defaults.
    """

    def __init__(self, client: FirestoreClient, collection: str = "config", document_id: str = "routing"):
        self.client = client
        self.collection = collection
        self.document_id = document_id

    @staticmethod
    def _to_fields(config: RoutingConfig) -> Dict[str, Any]:
        return encode_fields({"mode": config.mode.value, "broadcastCount": config.broadcast_count})

    @staticmethod
    def _from_document(document: Dict[str, Any]) -> RoutingConfig:
        data = decode_fields(document.get("fields", {}))
        defaults = default_routing_config()
        config = RoutingConfig(
            mode=RoutingMode(data.get("mode", defaults.mode.value)),
            broadcast_count=int(data.get("broadcastCount", defaults.broadcast_count)),
        )
        config.validate()
        return config

    def current(self) -> RoutingConfig:
        document = self.client.get_document(self.collection, self.document_id)
        if document is not None:
            return self._from_document(document)

        config = default_routing_config()
        try:
            self.client.create_document(self.collection, self.document_id, self._to_fields(config))
            logger.info("Created default routing config document %s/%s", self.collection, self.document_id)
        except FirestoreAlreadyExists:
            # someone else created it between our read and write
            document = self.client.get_document(self.collection, self.document_id)
            if document is not None:
                return self._from_document(document)
        return config

    def update(
        self,
        *,
        mode: Optional[RoutingMode] = None,
        broadcast_count: Optional[int] = None,
    ) -> RoutingConfig:
        config = self.current()
        if mode is not None:
            config = replace(config, mode=RoutingMode(mode))
        if broadcast_count is not None:
            config = replace(config, broadcast_count=broadcast_count)
        config.validate()

        self.client.patch_document(
            self.collection,
            self.document_id,
            self._to_fields(config),
            field_paths=["mode", "broadcastCount"],
        )
        logger.info("Routing config set to %s (broadcast_count=%d)", config.mode.value, config.broadcast_count)
        return config
