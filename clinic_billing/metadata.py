"""Typed order metadata.

Each order type carries its own metadata shape, discriminated by
``transactionType``. ``customFields`` is the free-form map for extra
client data. Money is kept as ``Decimal`` and dumps to strings in JSON
mode, so stored metadata never goes through binary floats.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PatientDetails(_CamelModel):
    """Snapshot of the patient at billing time."""

    patient_id: UUID
    full_name: str
    dni: str = ""
    address: str = ""
    phone: str = ""


class ProductItem(_CamelModel):
    """A priced product line.

    ``unit_price`` includes tax; ``subtotal`` excludes it and is rounded
    for display only (totals are computed from the unrounded values).
    """

    product_id: UUID
    name: str
    storage_id: UUID
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


class ServiceItem(_CamelModel):
    """A priced service line coming from an appointment."""

    appointment_id: UUID
    service_id: UUID | None = None
    name: str
    price: Decimal
    subtotal: Decimal


class TransactionDetails(_CamelModel):
    products_subtotal: Decimal = Decimal("0.00")
    services_subtotal: Decimal = Decimal("0.00")
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    tax_rate: Decimal


class PrescriptionOrderDetails(_CamelModel):
    branch_id: UUID | None = None
    staff_id: UUID | None = None
    patient_id: UUID
    prescription_id: UUID | None = None
    prescription_date: datetime
    appointment_ids: list[UUID] = Field(default_factory=list)


class SaleOrderDetails(_CamelModel):
    branch_id: UUID | None = None
    patient_id: UUID
    storage_ids: list[UUID] = Field(default_factory=list)


class AppointmentOrderDetails(_CamelModel):
    appointment_id: UUID
    patient_id: UUID
    branch_id: UUID | None = None
    staff_id: UUID | None = None
    service_id: UUID | None = None
    appointment_type: str = ""
    appointment_start: datetime | None = None
    appointment_end: datetime | None = None
    consultation_date: datetime


class MedicalPrescriptionMetadata(_CamelModel):
    transaction_type: Literal["PRESCRIPTION"] = "PRESCRIPTION"
    patient_details: PatientDetails
    order_details: PrescriptionOrderDetails
    products: list[ProductItem] = Field(default_factory=list)
    services: list[ServiceItem] = Field(default_factory=list)
    transaction_details: TransactionDetails
    total_overridden: bool = False
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class ProductSaleMetadata(_CamelModel):
    transaction_type: Literal["SALE"] = "SALE"
    patient_details: PatientDetails
    order_details: SaleOrderDetails
    products: list[ProductItem] = Field(default_factory=list)
    transaction_details: TransactionDetails
    total_overridden: bool = False
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class MedicalAppointmentMetadata(_CamelModel):
    transaction_type: Literal["APPOINTMENT"] = "APPOINTMENT"
    patient_details: PatientDetails
    order_details: AppointmentOrderDetails
    services: list[ServiceItem] = Field(default_factory=list)
    transaction_details: TransactionDetails
    total_overridden: bool = False
    custom_fields: dict[str, Any] = Field(default_factory=dict)


OrderMetadata = Annotated[
    Union[MedicalPrescriptionMetadata, ProductSaleMetadata, MedicalAppointmentMetadata],
    Field(discriminator="transaction_type"),
]

_metadata_adapter = TypeAdapter(OrderMetadata)


def dump_metadata(metadata) -> dict:
    """Serialize metadata to a JSON-safe dict (camelCase keys)."""
    return metadata.model_dump(mode="json", by_alias=True)


def load_metadata(raw: dict | None):
    """Rebuild the typed metadata from its stored JSON form."""
    if raw is None:
        return None
    return _metadata_adapter.validate_python(raw)
