"""Order generators: one strategy per order type.

A generator turns a ``GenerationInput`` (validated patient, appointments
and priced lines) into an unsaved ``OrderDraft`` with typed metadata.
Generators are stateless and never write; shared behaviour lives in the
helper functions below rather than in a base class.
"""

import random
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Protocol

from .config import settings
from .domain import GenerationInput, OrderDraft, OrderStatus, OrderType
from .errors import ValidationError
from .logging_filters import get_logger
from .metadata import (
    AppointmentOrderDetails,
    MedicalAppointmentMetadata,
    MedicalPrescriptionMetadata,
    PatientDetails,
    PrescriptionOrderDetails,
    ProductItem,
    ProductSaleMetadata,
    SaleOrderDetails,
    ServiceItem,
    TransactionDetails,
)
from .tax import ZERO, TaxCalculator, round2

logger = get_logger("generators")


class OrderGenerator(Protocol):
    """Strategy interface implemented by every order generator."""

    type: OrderType
    code_prefix: str

    def can_handle(self, order_type: OrderType) -> bool:
        ...

    def calculate_total(self, data: GenerationInput) -> Decimal:
        ...

    def generate(self, data: GenerationInput) -> OrderDraft:
        ...


# ---- Shared helpers ----
def create_order_base(status: OrderStatus = OrderStatus.PENDING, currency: str | None = None) -> dict:
    """Default fields shared by every generated order."""
    return {
        "status": status,
        "date": datetime.now(timezone.utc),
        "currency": currency or getattr(settings, "BILLING_DEFAULT_CURRENCY", "PEN"),
    }


def generate_code(prefix: str) -> str:
    """Human-readable order code, e.g. ``MP-2024-0042``."""
    year = datetime.now(timezone.utc).year
    return f"{prefix}-{year}-{random.randint(0, 9999):04d}"


def sum_line_group(subtotals: Iterable[Decimal]) -> Decimal:
    """Sum unrounded line subtotals and round the group once."""
    return round2(sum(subtotals, ZERO))


def patient_details(patient) -> PatientDetails:
    return PatientDetails(
        patient_id=patient.id,
        full_name=patient.full_name,
        dni=patient.dni or "",
        address=patient.address or "",
        phone=patient.phone or "",
    )


def product_items(lines) -> list[ProductItem]:
    return [
        ProductItem(
            product_id=ln.product_id,
            name=ln.product_name,
            storage_id=ln.storage_id,
            quantity=ln.quantity,
            unit_price=round2(ln.unit_price),
            subtotal=round2(ln.subtotal),
        )
        for ln in lines
    ]


def service_items(lines) -> list[ServiceItem]:
    return [
        ServiceItem(
            appointment_id=ln.appointment_id,
            service_id=ln.service_id,
            name=ln.service_name,
            price=round2(ln.price),
            subtotal=round2(ln.subtotal),
        )
        for ln in lines
    ]


def _override_or(data: GenerationInput, compute) -> Decimal:
    # An explicit total wins over the derived one and is used verbatim.
    if data.request.total is not None:
        logger.warning(
            "order total overridden by request",
            extra={"patient_id": str(data.request.patient_id), "total": str(data.request.total)},
        )
        return data.request.total
    return compute()


# ---- Generators ----
class MedicalPrescriptionGenerator:
    """Builds orders for fulfilled medical prescriptions.

    Products and appointment services are priced separately; each group is
    rounded before the two are added, and tax is computed once on the
    combined subtotal.
    """

    type = OrderType.MEDICAL_PRESCRIPTION_ORDER
    code_prefix = "MP"

    def __init__(self, tax_calculator: TaxCalculator):
        self.tax = tax_calculator

    def can_handle(self, order_type: OrderType) -> bool:
        return order_type == self.type

    def calculate_total(self, data: GenerationInput) -> Decimal:
        return _override_or(
            data,
            lambda: sum_line_group(ln.subtotal for ln in data.product_lines)
            + sum_line_group(ln.subtotal for ln in data.service_lines),
        )

    def generate(self, data: GenerationInput) -> OrderDraft:
        req = data.request
        if not data.product_lines and not data.service_lines:
            raise ValidationError("A prescription order needs at least one product or appointment")

        breakdown = self.tax.apply(self.calculate_total(data))
        base = create_order_base(OrderStatus.PENDING, req.currency)

        # The first appointment's doctor is the staff reference for the whole batch.
        first = data.appointments[0] if data.appointments else None
        staff_id = first.staff_id if first else None
        branch_id = req.branch_id or (first.branch_id if first else None)

        if req.recipe_id is not None:
            reference_id = str(req.recipe_id)
        else:
            reference_id = str(first.id) if first else None

        metadata = MedicalPrescriptionMetadata(
            patient_details=patient_details(data.patient),
            order_details=PrescriptionOrderDetails(
                branch_id=branch_id,
                staff_id=staff_id,
                patient_id=data.patient.id,
                prescription_id=req.recipe_id,
                prescription_date=base["date"],
                appointment_ids=[a.id for a in data.appointments],
            ),
            products=product_items(data.product_lines),
            services=service_items(data.service_lines),
            transaction_details=TransactionDetails(
                products_subtotal=sum_line_group(ln.subtotal for ln in data.product_lines),
                services_subtotal=sum_line_group(ln.subtotal for ln in data.service_lines),
                subtotal=breakdown.subtotal,
                tax=breakdown.tax,
                total=breakdown.total,
                tax_rate=self.tax.rate,
            ),
            total_overridden=req.total is not None,
            custom_fields=dict(req.metadata or {}),
        )

        return OrderDraft(
            code=generate_code(self.code_prefix),
            type=self.type,
            status=base["status"],
            movement_type_id=req.movement_type_id,
            reference_id=reference_id,
            source_id=str(data.patient.id),
            target_id=str(staff_id) if staff_id else None,
            currency=base["currency"],
            subtotal=breakdown.subtotal,
            tax=breakdown.tax,
            total=breakdown.total,
            date=base["date"],
            due_date=req.due_date,
            notes=req.notes,
            metadata=metadata,
        )


class ProductSaleGenerator:
    """Builds orders for direct product sales to a patient."""

    type = OrderType.PRODUCT_SALE_ORDER
    code_prefix = "PS"

    def __init__(self, tax_calculator: TaxCalculator):
        self.tax = tax_calculator

    def can_handle(self, order_type: OrderType) -> bool:
        return order_type == self.type

    def calculate_total(self, data: GenerationInput) -> Decimal:
        return _override_or(data, lambda: sum_line_group(ln.subtotal for ln in data.product_lines))

    def generate(self, data: GenerationInput) -> OrderDraft:
        req = data.request
        if data.service_lines or data.appointments:
            raise ValidationError("A product sale cannot bill appointment services")
        if not data.product_lines:
            raise ValidationError("A product sale needs at least one product")

        breakdown = self.tax.apply(self.calculate_total(data))
        base = create_order_base(OrderStatus.PENDING, req.currency)

        storage_ids = list(dict.fromkeys(ln.storage_id for ln in data.product_lines))
        metadata = ProductSaleMetadata(
            patient_details=patient_details(data.patient),
            order_details=SaleOrderDetails(
                branch_id=req.branch_id,
                patient_id=data.patient.id,
                storage_ids=storage_ids,
            ),
            products=product_items(data.product_lines),
            transaction_details=TransactionDetails(
                products_subtotal=sum_line_group(ln.subtotal for ln in data.product_lines),
                subtotal=breakdown.subtotal,
                tax=breakdown.tax,
                total=breakdown.total,
                tax_rate=self.tax.rate,
            ),
            total_overridden=req.total is not None,
            custom_fields=dict(req.metadata or {}),
        )

        return OrderDraft(
            code=generate_code(self.code_prefix),
            type=self.type,
            status=base["status"],
            movement_type_id=req.movement_type_id,
            reference_id=None,  # direct sale, no source document
            source_id=str(data.patient.id),
            target_id=None,
            currency=base["currency"],
            subtotal=breakdown.subtotal,
            tax=breakdown.tax,
            total=breakdown.total,
            date=base["date"],
            due_date=req.due_date,
            notes=req.notes,
            metadata=metadata,
        )


class AppointmentGenerator:
    """Builds the order for the service of a single pending appointment.

    The appointment must still be PENDING: billing a completed or
    cancelled appointment again is rejected before anything is written.
    """

    type = OrderType.MEDICAL_APPOINTMENT_ORDER
    code_prefix = "MA"

    def __init__(self, tax_calculator: TaxCalculator):
        self.tax = tax_calculator

    def can_handle(self, order_type: OrderType) -> bool:
        return order_type == self.type

    def calculate_total(self, data: GenerationInput) -> Decimal:
        return _override_or(data, lambda: sum_line_group(ln.subtotal for ln in data.service_lines))

    def generate(self, data: GenerationInput) -> OrderDraft:
        req = data.request
        if data.product_lines:
            raise ValidationError("An appointment order cannot bill products")
        if len(data.appointments) != 1 or len(data.service_lines) != 1:
            raise ValidationError("An appointment order bills exactly one appointment")
        appt = data.appointments[0]
        if not appt.is_pending:
            raise ValidationError(
                f"Appointment {appt.id} is {appt.status}; only PENDING appointments can be billed",
                appointment_id=str(appt.id),
                status=appt.status,
            )

        breakdown = self.tax.apply(self.calculate_total(data))
        base = create_order_base(OrderStatus.PENDING, req.currency)

        metadata = MedicalAppointmentMetadata(
            patient_details=patient_details(data.patient),
            order_details=AppointmentOrderDetails(
                appointment_id=appt.id,
                patient_id=data.patient.id,
                branch_id=req.branch_id or appt.branch_id,
                staff_id=appt.staff_id,
                service_id=appt.service_id,
                appointment_type=appt.appointment_type,
                appointment_start=appt.start,
                appointment_end=appt.end,
                consultation_date=base["date"],
            ),
            services=service_items(data.service_lines),
            transaction_details=TransactionDetails(
                services_subtotal=sum_line_group(ln.subtotal for ln in data.service_lines),
                subtotal=breakdown.subtotal,
                tax=breakdown.tax,
                total=breakdown.total,
                tax_rate=self.tax.rate,
            ),
            total_overridden=req.total is not None,
            custom_fields=dict(req.metadata or {}),
        )

        return OrderDraft(
            code=generate_code(self.code_prefix),
            type=self.type,
            status=base["status"],
            movement_type_id=req.movement_type_id,
            reference_id=str(appt.id),
            source_id=str(data.patient.id),
            target_id=str(appt.staff_id) if appt.staff_id else None,
            currency=base["currency"],
            subtotal=breakdown.subtotal,
            tax=breakdown.tax,
            total=breakdown.total,
            date=base["date"],
            due_date=req.due_date,
            notes=req.notes,
            metadata=metadata,
        )
