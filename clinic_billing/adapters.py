"""In-process adapters for the billing ports.

These implement every lookup and store without a database. They are
deterministic and intended for unit tests and local development. Order,
payment and audit writes are staged on the transaction and only applied
when it commits; stock is taken at reservation time and handed back on
rollback, so a rolled-back invocation leaves everything untouched, just
like the SQL stores.
"""

import threading
import uuid
from collections import Counter
from contextlib import contextmanager
from dataclasses import replace
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from .domain import (
    Appointment,
    AuditEntry,
    Order,
    OrderDraft,
    Patient,
    Payment,
    PaymentDraft,
    Product,
    StockLevel,
    StockRequest,
    StockShortage,
    aggregate_stock_requests,
)
from .errors import NotFoundError


class InMemoryTransaction:
    """Handle yielded by ``InMemoryTransactionManager.begin()``."""

    def __init__(self):
        self._on_commit = []
        self._on_rollback = []

    def on_commit(self, fn) -> None:
        self._on_commit.append(fn)

    def on_rollback(self, fn) -> None:
        self._on_rollback.append(fn)

    def commit(self) -> None:
        for fn in self._on_commit:
            fn()

    def rollback(self) -> None:
        for fn in reversed(self._on_rollback):
            fn()


class InMemoryTransactionManager:
    def __init__(self):
        self.commits = 0
        self.rollbacks = 0

    @contextmanager
    def begin(self):
        tx = InMemoryTransaction()
        try:
            yield tx
        except BaseException:
            tx.rollback()
            self.rollbacks += 1
            raise
        tx.commit()
        self.commits += 1


class InMemoryPatientDirectory:
    def __init__(self, patients: Optional[List[Patient]] = None):
        self.patients = {p.id: p for p in patients or []}
        self.calls = Counter()

    def find_one(self, patient_id: UUID) -> Optional[Patient]:
        self.calls["find_one"] += 1
        return self.patients.get(patient_id)


class InMemoryAppointmentBook:
    """Appointments plus the tax-inclusive price of each one's service."""

    def __init__(self, appointments: Optional[List[Appointment]] = None,
                 prices: Optional[Dict[UUID, Decimal]] = None):
        self.appointments = {a.id: a for a in appointments or []}
        self.prices = dict(prices or {})
        self.calls = Counter()

    def find_one(self, appointment_id: UUID) -> Optional[Appointment]:
        self.calls["find_one"] += 1
        return self.appointments.get(appointment_id)

    def get_service_price(self, appointment_id: UUID) -> Optional[Decimal]:
        self.calls["get_service_price"] += 1
        return self.prices.get(appointment_id)


class InMemoryProductCatalog:
    def __init__(self, products: Optional[List[Product]] = None):
        self.products = {p.id: p for p in products or []}
        self.calls = Counter()

    def find_by_id(self, product_id: UUID) -> Optional[Product]:
        self.calls["find_by_id"] += 1
        return self.products.get(product_id)

    def get_price_by_id(self, product_id: UUID) -> Optional[Decimal]:
        self.calls["get_price_by_id"] += 1
        p = self.products.get(product_id)
        return p.price if p else None


class InMemoryStock:
    """Stock per (storage, product) with names for shortage reports.

    ``reserve`` checks and decrements under one lock, so a unit taken by an
    open transaction is not available to any other. The decrement is
    undone if that transaction rolls back.
    """

    def __init__(self, storages: Optional[Dict[UUID, str]] = None,
                 levels: Optional[Dict[Tuple[UUID, UUID], int]] = None,
                 product_names: Optional[Dict[UUID, str]] = None):
        self.storages = dict(storages or {})
        self.levels = dict(levels or {})  # (storage_id, product_id) -> quantity
        self.product_names = dict(product_names or {})
        self.calls = Counter()
        self._lock = threading.Lock()

    def set(self, storage_id: UUID, product_id: UUID, quantity: int) -> None:
        with self._lock:
            self.levels[(storage_id, product_id)] = quantity

    def get_stock_by_storage_and_product(self, storage_id: UUID, product_id: UUID) -> Optional[StockLevel]:
        self.calls["get_stock"] += 1
        if storage_id not in self.storages:
            return None
        return StockLevel(
            product_id=product_id,
            storage_id=storage_id,
            storage_name=self.storages[storage_id],
            quantity=self.levels.get((storage_id, product_id), 0),
        )

    def reserve(self, tx: InMemoryTransaction, items: List[StockRequest]) -> List[StockShortage]:
        totals = aggregate_stock_requests(items)
        shortages = []
        with self._lock:
            self.calls["reserve"] += 1
            for (product_id, storage_id), requested in totals.items():
                available = self.levels.get((storage_id, product_id), 0)
                if available < requested:
                    shortages.append(
                        StockShortage(
                            product_id=product_id,
                            product_name=self.product_names.get(product_id, ""),
                            storage_id=storage_id,
                            storage_name=self.storages.get(storage_id, ""),
                            requested=requested,
                            available=available,
                        )
                    )
            if shortages:
                return shortages
            for (product_id, storage_id), requested in totals.items():
                self.levels[(storage_id, product_id)] -= requested

        def restore():
            with self._lock:
                for (product_id, storage_id), requested in totals.items():
                    self.levels[(storage_id, product_id)] += requested

        tx.on_rollback(restore)
        return shortages


class InMemoryOrderStore:
    def __init__(self):
        self.orders: Dict[UUID, Order] = {}
        self._staged: Dict[UUID, Order] = {}
        self.calls = Counter()
        self.fail_on = None  # name of the method that should raise

    def _maybe_fail(self, name):
        self.calls[name] += 1
        if self.fail_on == name:
            raise RuntimeError(f"order store {name} failed")

    def code_exists(self, tx: InMemoryTransaction, code: str) -> bool:
        self.calls["code_exists"] += 1
        return any(o.code == code for o in [*self.orders.values(), *self._staged.values()])

    def create(self, tx: InMemoryTransaction, draft: OrderDraft) -> Order:
        self._maybe_fail("create")
        order = Order(
            id=uuid.uuid4(),
            code=draft.code,
            type=draft.type,
            status=draft.status,
            movement_type_id=draft.movement_type_id,
            reference_id=draft.reference_id,
            source_id=draft.source_id,
            target_id=draft.target_id,
            currency=draft.currency,
            subtotal=draft.subtotal,
            tax=draft.tax,
            total=draft.total,
            date=draft.date,
            metadata=None,
            due_date=draft.due_date,
            notes=draft.notes,
        )
        self._staged[order.id] = order
        tx.on_commit(lambda: self.orders.__setitem__(order.id, self._staged.pop(order.id)))
        tx.on_rollback(lambda: self._staged.pop(order.id, None))
        return order

    def update(self, tx: InMemoryTransaction, order_id: UUID, *, subtotal, tax, total, metadata) -> Order:
        self._maybe_fail("update")
        current = self._staged.get(order_id) or self.orders.get(order_id)
        if current is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=str(order_id))
        updated = replace(current, subtotal=subtotal, tax=tax, total=total, metadata=metadata)
        if order_id in self._staged:
            self._staged[order_id] = updated
        else:
            tx.on_commit(lambda: self.orders.__setitem__(order_id, updated))
        return updated


class InMemoryPaymentStore:
    def __init__(self):
        self.payments: List[Payment] = []
        self.calls = Counter()

    def create(self, tx: InMemoryTransaction, draft: PaymentDraft) -> Payment:
        self.calls["create"] += 1
        payment = Payment(
            id=uuid.uuid4(),
            order_id=draft.order_id,
            amount=draft.amount,
            date=draft.date,
            description=draft.description,
            status=draft.status,
            type=draft.type,
            payment_method=draft.payment_method,
        )
        tx.on_commit(lambda: self.payments.append(payment))
        return payment


class InMemoryAuditLog:
    def __init__(self):
        self.entries: List[AuditEntry] = []
        self.calls = Counter()
        self.fail = False

    def record(self, tx: InMemoryTransaction, entry: AuditEntry) -> None:
        self.calls["record"] += 1
        if self.fail:
            raise RuntimeError("audit sink unavailable")
        tx.on_commit(lambda: self.entries.append(entry))
