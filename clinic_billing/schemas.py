"""Pydantic schemas for the billing API.

Request bodies use camelCase keys. ``to_domain`` maps a validated request
onto the ``BillingRequest`` handed to the orchestrator; the ``*Out``
models shape responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .config import CURRENCIES
from .domain import BillingRequest, Order, Payment, PaymentMethod, StockRequest, StockShortage
from .metadata import dump_metadata


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProductRequestIn(_CamelModel):
    """One requested product line.

    Attributes:
        product_id: Product to bill.
        storage_id: Storage the units are taken from.
        quantity: Positive number of units.
    """

    product_id: UUID
    storage_id: UUID
    quantity: int = Field(gt=0)


class _BillingFieldsIn(_CamelModel):
    """Fields shared by every billing request. Unknown keys are rejected."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    patient_id: UUID
    movement_type_id: UUID
    branch_id: Optional[UUID] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    notes: Optional[str] = Field(default=None, max_length=2000)
    due_date: Optional[datetime] = None
    total: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    payment_method: PaymentMethod = PaymentMethod.CASH
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Normalize the currency to upper case and check it is supported.

        Raises:
            ValueError: When the currency is not in the supported set.
        """
        if v is None:
            return v
        v2 = v.upper()
        if v2 not in CURRENCIES:
            raise ValueError("Unsupported currency")
        return v2


class _BillingRequestIn(_BillingFieldsIn):
    products: list[ProductRequestIn] = Field(default_factory=list)

    def _products(self) -> list[StockRequest]:
        return [
            StockRequest(product_id=p.product_id, storage_id=p.storage_id, quantity=p.quantity)
            for p in self.products
        ]


class CreateMedicalPrescriptionBillingDTO(_BillingRequestIn):
    """Bill a fulfilled prescription: products plus appointment services."""

    appointment_ids: list[UUID] = Field(default_factory=list)
    recipe_id: Optional[UUID] = None

    def to_domain(self) -> BillingRequest:
        return BillingRequest(
            patient_id=self.patient_id,
            movement_type_id=self.movement_type_id,
            appointment_ids=list(self.appointment_ids),
            products=self._products(),
            recipe_id=self.recipe_id,
            branch_id=self.branch_id,
            currency=self.currency,
            notes=self.notes,
            due_date=self.due_date,
            total=self.total,
            payment_method=self.payment_method,
            metadata=dict(self.metadata),
        )


class CreateProductSaleBillingDTO(_BillingRequestIn):
    """Bill a direct product sale. Appointments are not accepted."""

    def to_domain(self) -> BillingRequest:
        return BillingRequest(
            patient_id=self.patient_id,
            movement_type_id=self.movement_type_id,
            products=self._products(),
            branch_id=self.branch_id,
            currency=self.currency,
            notes=self.notes,
            due_date=self.due_date,
            total=self.total,
            payment_method=self.payment_method,
            metadata=dict(self.metadata),
        )


class CreateAppointmentBillingDTO(_BillingFieldsIn):
    """Bill the service of one pending appointment. Products are not accepted."""

    appointment_id: UUID

    def to_domain(self) -> BillingRequest:
        return BillingRequest(
            patient_id=self.patient_id,
            movement_type_id=self.movement_type_id,
            appointment_ids=[self.appointment_id],
            branch_id=self.branch_id,
            currency=self.currency,
            notes=self.notes,
            due_date=self.due_date,
            total=self.total,
            payment_method=self.payment_method,
            metadata=dict(self.metadata),
        )


# ---- Responses ----
class PaymentOut(_CamelModel):
    id: UUID
    amount: Decimal
    status: str
    type: str
    payment_method: str
    description: str
    date: datetime

    @classmethod
    def from_domain(cls, p: Payment) -> "PaymentOut":
        return cls(
            id=p.id,
            amount=p.amount,
            status=p.status.value,
            type=p.type.value,
            payment_method=p.payment_method.value,
            description=p.description,
            date=p.date,
        )


class OrderOut(_CamelModel):
    id: UUID
    code: str
    type: str
    status: str
    movement_type_id: UUID
    reference_id: Optional[str] = None
    source_id: Optional[str] = None
    target_id: Optional[str] = None
    currency: str
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    date: datetime
    due_date: Optional[datetime] = None
    notes: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    payments: list[PaymentOut] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, o: Order) -> "OrderOut":
        return cls(
            id=o.id,
            code=o.code,
            type=o.type.value,
            status=o.status.value,
            movement_type_id=o.movement_type_id,
            reference_id=o.reference_id,
            source_id=o.source_id,
            target_id=o.target_id,
            currency=o.currency,
            subtotal=o.subtotal,
            tax=o.tax,
            total=o.total,
            date=o.date,
            due_date=o.due_date,
            notes=o.notes,
            metadata=dump_metadata(o.metadata) if o.metadata is not None else None,
            payments=[PaymentOut.from_domain(p) for p in o.payments],
        )


class UnavailableProductOut(_CamelModel):
    product_id: UUID
    product_name: str
    storage_id: UUID
    storage_name: str
    requested_quantity: int
    available_quantity: int

    @classmethod
    def from_domain(cls, s: StockShortage) -> "UnavailableProductOut":
        return cls(
            product_id=s.product_id,
            product_name=s.product_name,
            storage_id=s.storage_id,
            storage_name=s.storage_name,
            requested_quantity=s.requested,
            available_quantity=s.available,
        )


class ShortageOut(_CamelModel):
    unavailable_products: list[UnavailableProductOut]


class BillingResponse(BaseModel):
    success: bool
    message: str
    data: Any = None


class OrderListOut(BaseModel):
    count: int
    page: int
    page_size: int
    results: list[dict[str, Any]]
