"""Unit tests for order generators.

Generators are pure: these tests build ``GenerationInput`` by hand and
check the resulting drafts and metadata.
"""

import re
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from clinic_billing.domain import (
    Appointment,
    BillingRequest,
    GenerationInput,
    OrderStatus,
    OrderType,
    Patient,
    ProductLine,
    ServiceLine,
)
from clinic_billing.errors import ValidationError
from clinic_billing.generators import (
    AppointmentGenerator,
    MedicalPrescriptionGenerator,
    ProductSaleGenerator,
    generate_code,
    sum_line_group,
)
from clinic_billing.metadata import (
    MedicalAppointmentMetadata,
    MedicalPrescriptionMetadata,
    ProductSaleMetadata,
    dump_metadata,
    load_metadata,
)
from clinic_billing.tax import TaxCalculator

TAX = TaxCalculator("0.18")
PATIENT = Patient(id=uuid.uuid4(), name="Ana", last_name="Quispe", dni="45879632")
STORAGE = uuid.uuid4()


def product_line(price, qty, name="Product"):
    price = Decimal(price)
    return ProductLine(
        product_id=uuid.uuid4(), product_name=name, storage_id=STORAGE,
        quantity=qty, unit_price=price, subtotal=TAX.net_of_tax(price) * qty,
    )


def service_line(appt, price):
    price = Decimal(price)
    return ServiceLine(
        appointment_id=appt.id, service_id=appt.service_id, service_name=appt.service_name,
        price=price, subtotal=TAX.net_of_tax(price),
    )


def make_input(products=(), appointments=(), services=(), **req):
    request = BillingRequest(patient_id=PATIENT.id, movement_type_id=uuid.uuid4(), **req)
    return GenerationInput(
        request=request, patient=PATIENT, appointments=list(appointments),
        product_lines=list(products), service_lines=list(services),
    )


def test_code_format():
    assert re.fullmatch(r"MP-\d{4}-\d{4}", generate_code("MP"))


def test_prescription_reference_basket_totals():
    data = make_input(products=[product_line("10.00", 2), product_line("15.00", 1)])
    draft = MedicalPrescriptionGenerator(TAX).generate(data)
    assert draft.type == OrderType.MEDICAL_PRESCRIPTION_ORDER
    assert draft.status == OrderStatus.PENDING
    assert (draft.subtotal, draft.tax, draft.total) == (Decimal("29.66"), Decimal("5.34"), Decimal("35.00"))
    assert draft.currency == "PEN"
    assert draft.code.startswith("MP-")


def test_prescription_rounds_each_group_before_adding():
    appt = Appointment(id=uuid.uuid4(), patient_id=PATIENT.id, service_name="Consult", staff_id=uuid.uuid4())
    products = [product_line("10.00", 2), product_line("15.00", 1)]
    services = [service_line(appt, "59.00")]
    draft = MedicalPrescriptionGenerator(TAX).generate(
        make_input(products=products, appointments=[appt], services=services)
    )
    expected = sum_line_group(p.subtotal for p in products) + sum_line_group(s.subtotal for s in services)
    assert draft.subtotal == expected == Decimal("79.66")
    assert draft.total == draft.subtotal + draft.tax


def test_prescription_metadata_snapshot_and_first_staff():
    first = Appointment(id=uuid.uuid4(), patient_id=PATIENT.id, service_name="Consult",
                        staff_id=uuid.uuid4(), branch_id=uuid.uuid4())
    second = Appointment(id=uuid.uuid4(), patient_id=PATIENT.id, service_name="Lab",
                         staff_id=uuid.uuid4())
    data = make_input(
        appointments=[first, second],
        services=[service_line(first, "59.00"), service_line(second, "23.60")],
        metadata={"origin": "kiosk"},
    )
    draft = MedicalPrescriptionGenerator(TAX).generate(data)
    meta = draft.metadata

    assert isinstance(meta, MedicalPrescriptionMetadata)
    assert meta.patient_details.full_name == "Ana Quispe"
    assert meta.order_details.staff_id == first.staff_id
    assert meta.order_details.branch_id == first.branch_id
    assert draft.target_id == str(first.staff_id)
    assert draft.reference_id == str(first.id)
    assert draft.source_id == str(PATIENT.id)
    assert [s.name for s in meta.services] == ["Consult", "Lab"]
    assert meta.custom_fields == {"origin": "kiosk"}


def test_prescription_reference_prefers_recipe():
    recipe = uuid.uuid4()
    draft = MedicalPrescriptionGenerator(TAX).generate(
        make_input(products=[product_line("10.00", 1)], recipe_id=recipe)
    )
    assert draft.reference_id == str(recipe)
    assert draft.metadata.order_details.prescription_id == recipe


def test_explicit_total_overrides_derived_subtotal():
    data = make_input(products=[product_line("10.00", 2)], total=Decimal("50.00"))
    draft = MedicalPrescriptionGenerator(TAX).generate(data)
    assert draft.subtotal == Decimal("50.00")
    assert draft.tax == Decimal("9.00")
    assert draft.total == Decimal("59.00")
    assert draft.metadata.total_overridden is True


def test_prescription_without_lines_is_rejected():
    with pytest.raises(ValidationError):
        MedicalPrescriptionGenerator(TAX).generate(make_input())


def test_product_sale_draft():
    data = make_input(products=[product_line("15.00", 1)], currency="USD")
    draft = ProductSaleGenerator(TAX).generate(data)
    assert draft.type == OrderType.PRODUCT_SALE_ORDER
    assert draft.code.startswith("PS-")
    assert draft.reference_id is None
    assert draft.currency == "USD"
    assert isinstance(draft.metadata, ProductSaleMetadata)
    assert draft.metadata.order_details.storage_ids == [STORAGE]


def test_product_sale_rejects_services():
    appt = Appointment(id=uuid.uuid4(), patient_id=PATIENT.id)
    with pytest.raises(ValidationError):
        ProductSaleGenerator(TAX).generate(
            make_input(products=[product_line("10.00", 1)], appointments=[appt],
                       services=[service_line(appt, "10.00")])
        )


def test_metadata_json_uses_camel_case_and_string_money():
    draft = MedicalPrescriptionGenerator(TAX).generate(make_input(products=[product_line("10.00", 2)]))
    raw = dump_metadata(draft.metadata)
    assert raw["transactionType"] == "PRESCRIPTION"
    assert raw["transactionDetails"]["total"] == "20.00"
    assert raw["customFields"] == {}
    assert isinstance(load_metadata(raw), MedicalPrescriptionMetadata)


def pending_appointment(**kw):
    kw.setdefault("status", "PENDING")
    return Appointment(
        id=uuid.uuid4(), patient_id=PATIENT.id, service_id=uuid.uuid4(), service_name="Cardiology",
        staff_id=uuid.uuid4(), branch_id=uuid.uuid4(), appointment_type="CONSULTA",
        start=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
        end=datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc),
        **kw,
    )


def test_appointment_draft():
    appt = pending_appointment()
    draft = AppointmentGenerator(TAX).generate(
        make_input(appointments=[appt], services=[service_line(appt, "118.00")])
    )
    assert draft.type == OrderType.MEDICAL_APPOINTMENT_ORDER
    assert re.fullmatch(r"MA-\d{4}-\d{4}", draft.code)
    assert draft.reference_id == str(appt.id)
    assert draft.target_id == str(appt.staff_id)
    assert (draft.subtotal, draft.tax, draft.total) == (Decimal("100.00"), Decimal("18.00"), Decimal("118.00"))

    meta = draft.metadata
    assert isinstance(meta, MedicalAppointmentMetadata)
    assert meta.order_details.appointment_type == "CONSULTA"
    assert meta.order_details.appointment_start == appt.start
    assert meta.order_details.appointment_end == appt.end
    assert meta.order_details.branch_id == appt.branch_id
    assert [s.appointment_id for s in meta.services] == [appt.id]
    assert meta.transaction_details.services_subtotal == Decimal("100.00")


@pytest.mark.parametrize("status", ["COMPLETED", "CANCELLED"])
def test_appointment_must_be_pending(status):
    appt = pending_appointment(status=status)
    with pytest.raises(ValidationError) as exc:
        AppointmentGenerator(TAX).generate(
            make_input(appointments=[appt], services=[service_line(appt, "59.00")])
        )
    assert exc.value.details["status"] == status


def test_appointment_order_rejects_products_and_batches():
    first, second = pending_appointment(), pending_appointment()
    gen = AppointmentGenerator(TAX)
    with pytest.raises(ValidationError):
        gen.generate(make_input(products=[product_line("10.00", 1)], appointments=[first],
                                services=[service_line(first, "59.00")]))
    with pytest.raises(ValidationError):
        gen.generate(make_input(appointments=[first, second],
                                services=[service_line(first, "59.00"), service_line(second, "59.00")]))


def test_appointment_metadata_round_trips_through_json():
    appt = pending_appointment()
    draft = AppointmentGenerator(TAX).generate(
        make_input(appointments=[appt], services=[service_line(appt, "59.00")])
    )
    raw = dump_metadata(draft.metadata)
    assert raw["transactionType"] == "APPOINTMENT"
    assert raw["orderDetails"]["appointmentId"] == str(appt.id)
    assert isinstance(load_metadata(raw), MedicalAppointmentMetadata)
