"""Domain models and ports for billing.

This module holds the enums and dataclasses exchanged between the billing
core and its collaborators, plus the protocol definitions (ports) the
orchestrator depends on: patient, appointment, product and stock lookups,
and the transactional stores for orders, payments and audit records.

Every write port takes the transaction handle as its first argument. The
handle is whatever ``TransactionManager.begin()`` yields (a SQLAlchemy
``Session`` in production); it is never held as hidden global state.
"""

from collections import OrderedDict
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, List, Optional, Protocol
from uuid import UUID


# ---- Enums ----
class OrderType(str, Enum):
    MEDICAL_PRESCRIPTION_ORDER = "MEDICAL_PRESCRIPTION_ORDER"
    MEDICAL_APPOINTMENT_ORDER = "MEDICAL_APPOINTMENT_ORDER"
    PRODUCT_SALE_ORDER = "PRODUCT_SALE_ORDER"


class OrderStatus(str, Enum):
    """Order lifecycle. Billing only ever creates DRAFT or PENDING orders."""

    DRAFT = "DRAFT"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    DIGITAL_WALLET = "DIGITAL_WALLET"


class PaymentType(str, Enum):
    REGULAR = "REGULAR"
    REFUND = "REFUND"
    PARTIAL_PAYMENT = "PARTIAL"
    ADJUSTMENT = "ADJUSTMENT"
    COMPENSATION = "COMPENSATION"


class AuditActionType(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class BillingState(str, Enum):
    """Steps of a single billing invocation."""

    VALIDATING = "VALIDATING"
    CHECKING_STOCK = "CHECKING_STOCK"
    BUILDING = "BUILDING"
    PERSISTING = "PERSISTING"
    SCHEDULING_PAYMENT = "SCHEDULING_PAYMENT"
    AUDITING = "AUDITING"
    DONE = "DONE"
    SOFT_FAIL = "SOFT_FAIL"
    HARD_FAIL = "HARD_FAIL"


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class UserData:
    """The acting user, as resolved by the authentication layer."""

    id: UUID
    name: str = ""


@dataclass(frozen=True)
class Patient:
    id: UUID
    name: str
    last_name: str = ""
    dni: str = ""
    address: str = ""
    phone: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.name} {self.last_name or ''}".strip()


@dataclass(frozen=True)
class Appointment:
    id: UUID
    patient_id: UUID
    service_id: Optional[UUID] = None
    service_name: str = ""
    staff_id: Optional[UUID] = None
    branch_id: Optional[UUID] = None
    status: str = "PENDING"
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    appointment_type: str = ""

    @property
    def is_pending(self) -> bool:
        return self.status == "PENDING"


@dataclass(frozen=True)
class Product:
    id: UUID
    name: str
    price: Decimal
    is_active: bool = True


@dataclass(frozen=True)
class StockLevel:
    product_id: UUID
    storage_id: UUID
    storage_name: str
    quantity: int


@dataclass(frozen=True)
class StockRequest:
    """A requested (product, storage, quantity) triple."""

    product_id: UUID
    storage_id: UUID
    quantity: int


@dataclass(frozen=True)
class StockShortage:
    """One product/storage pair that cannot cover the requested quantity."""

    product_id: UUID
    product_name: str
    storage_id: UUID
    storage_name: str
    requested: int
    available: int


@dataclass(frozen=True)
class ProductLine:
    """Product priced for billing.

    Attributes:
        unit_price: Tax-inclusive unit price.
        subtotal: Pre-tax line amount, unrounded.
    """

    product_id: UUID
    product_name: str
    storage_id: UUID
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


@dataclass(frozen=True)
class ServiceLine:
    """Appointment service priced for billing (one unit per appointment)."""

    appointment_id: UUID
    service_id: Optional[UUID]
    service_name: str
    price: Decimal
    subtotal: Decimal


@dataclass
class BillingRequest:
    """Normalized billing request handed to the orchestrator."""

    patient_id: UUID
    movement_type_id: UUID
    appointment_ids: List[UUID] = field(default_factory=list)
    products: List[StockRequest] = field(default_factory=list)
    recipe_id: Optional[UUID] = None
    branch_id: Optional[UUID] = None
    currency: Optional[str] = None
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    total: Optional[Decimal] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationInput:
    """Everything a generator needs to build an order draft."""

    request: BillingRequest
    patient: Patient
    appointments: List[Appointment] = field(default_factory=list)
    product_lines: List[ProductLine] = field(default_factory=list)
    service_lines: List[ServiceLine] = field(default_factory=list)


@dataclass
class OrderDraft:
    """An order built by a generator but not yet persisted."""

    code: str
    type: OrderType
    status: OrderStatus
    movement_type_id: UUID
    reference_id: Optional[str]
    source_id: Optional[str]
    target_id: Optional[str]
    currency: str
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    date: datetime
    metadata: Any
    due_date: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass
class Order:
    id: UUID
    code: str
    type: OrderType
    status: OrderStatus
    movement_type_id: UUID
    reference_id: Optional[str]
    source_id: Optional[str]
    target_id: Optional[str]
    currency: str
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    date: datetime
    metadata: Any
    due_date: Optional[datetime] = None
    notes: Optional[str] = None
    is_active: bool = True
    payments: List["Payment"] = field(default_factory=list)


@dataclass
class PaymentDraft:
    order_id: UUID
    amount: Decimal
    date: datetime
    description: str
    status: PaymentStatus = PaymentStatus.PENDING
    type: PaymentType = PaymentType.REGULAR
    payment_method: PaymentMethod = PaymentMethod.CASH


@dataclass
class Payment:
    id: UUID
    order_id: UUID
    amount: Decimal
    date: datetime
    description: str
    status: PaymentStatus
    type: PaymentType
    payment_method: PaymentMethod


@dataclass(frozen=True)
class AuditEntry:
    entity_id: UUID
    entity_type: str
    action: AuditActionType
    performed_by_id: UUID
    created_at: datetime


@dataclass
class BillingResult:
    """Outcome of a billing invocation.

    ``success`` is False only for a stock shortage; every other failure is
    raised as a ``BillingError``.
    """

    success: bool
    message: str
    order: Optional[Order] = None
    unavailable_products: List[StockShortage] = field(default_factory=list)


def aggregate_stock_requests(items: Iterable[StockRequest]) -> "OrderedDict[tuple, int]":
    """Sum quantities per (product_id, storage_id), keeping first-seen order."""
    totals: "OrderedDict[tuple, int]" = OrderedDict()
    for it in items:
        key = (it.product_id, it.storage_id)
        totals[key] = totals.get(key, 0) + it.quantity
    return totals


# ---- Ports (DIP) ----
class PatientLookup(Protocol):
    def find_one(self, patient_id: UUID) -> Optional[Patient]:
        """Return the patient or None when it does not exist."""
        raise NotImplementedError()


class AppointmentLookup(Protocol):
    def find_one(self, appointment_id: UUID) -> Optional[Appointment]:
        """Return the appointment or None when it does not exist."""
        raise NotImplementedError()

    def get_service_price(self, appointment_id: UUID) -> Optional[Decimal]:
        """Return the tax-inclusive price of the appointment's service."""
        raise NotImplementedError()


class ProductLookup(Protocol):
    def find_by_id(self, product_id: UUID) -> Optional[Product]:
        raise NotImplementedError()

    def get_price_by_id(self, product_id: UUID) -> Optional[Decimal]:
        """Return the tax-inclusive unit price, or None if unknown."""
        raise NotImplementedError()


class StockLookup(Protocol):
    def get_stock_by_storage_and_product(
        self, storage_id: UUID, product_id: UUID
    ) -> Optional[StockLevel]:
        """Return the stock level, or None when the storage does not exist.

        A storage without a row for the product reports quantity 0.
        """
        raise NotImplementedError()


class StockReserver(Protocol):
    def reserve(self, tx, items: List[StockRequest]) -> List[StockShortage]:
        """Atomically decrement stock inside ``tx``.

        Returns the shortages found; callers must abort ``tx`` when the
        list is not empty.
        """
        raise NotImplementedError()


class OrderStore(Protocol):
    def code_exists(self, tx, code: str) -> bool:
        """Whether an order with ``code`` is already stored or staged in ``tx``."""
        raise NotImplementedError()

    def create(self, tx, draft: OrderDraft) -> Order:
        raise NotImplementedError()

    def update(self, tx, order_id: UUID, *, subtotal: Decimal, tax: Decimal,
               total: Decimal, metadata: Any) -> Order:
        raise NotImplementedError()


class PaymentStore(Protocol):
    def create(self, tx, draft: PaymentDraft) -> Payment:
        raise NotImplementedError()


class AuditSink(Protocol):
    def record(self, tx, entry: AuditEntry) -> None:
        raise NotImplementedError()


class TransactionManager(Protocol):
    def begin(self) -> AbstractContextManager:
        """Open a transaction and yield its handle.

        Leaving the block normally commits; an exception rolls everything
        back and propagates.
        """
        raise NotImplementedError()
