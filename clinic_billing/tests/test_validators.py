"""Tests for request validation, appointment checks and line pricing."""

import uuid
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from clinic_billing.domain import BillingRequest, Product, StockRequest
from clinic_billing.errors import NotFoundError, ValidationError
from clinic_billing.pricing import LinePricer, ProductCache
from clinic_billing.validators import AppointmentValidator, find_patient, validate_request


def request(memory, **kw):
    return BillingRequest(patient_id=memory.ids.patient, movement_type_id=memory.ids.movement_type, **kw)


def test_empty_request_is_rejected(memory):
    with pytest.raises(ValidationError):
        validate_request(request(memory))


def test_non_positive_quantity_is_rejected(memory):
    ids = memory.ids
    with pytest.raises(ValidationError):
        validate_request(request(memory, products=[StockRequest(ids.product_a, ids.storage, 0)]))


def test_repeated_appointment_is_rejected(memory):
    ids = memory.ids
    with pytest.raises(ValidationError):
        validate_request(request(memory, appointment_ids=[ids.appointment, ids.appointment]))


def test_unknown_patient(memory):
    with pytest.raises(NotFoundError):
        find_patient(memory.patients, uuid.uuid4())


def test_appointments_keep_request_order(memory):
    ids = memory.ids
    out = AppointmentValidator(memory.appointments).validate(
        ids.patient, [ids.second_appointment, ids.appointment]
    )
    assert [a.id for a in out] == [ids.second_appointment, ids.appointment]


def test_appointments_with_executor(memory):
    ids = memory.ids
    with ThreadPoolExecutor(max_workers=2) as pool:
        out = AppointmentValidator(memory.appointments, pool).validate(
            ids.patient, [ids.appointment, ids.second_appointment]
        )
    assert [a.id for a in out] == [ids.appointment, ids.second_appointment]


def test_missing_appointment(memory):
    with pytest.raises(NotFoundError):
        AppointmentValidator(memory.appointments).validate(memory.ids.patient, [uuid.uuid4()])


def test_appointment_of_another_patient(memory):
    ids = memory.ids
    with pytest.raises(ValidationError):
        AppointmentValidator(memory.appointments).validate(ids.patient, [ids.other_appointment])


def test_product_lines_are_priced_net_of_tax(memory):
    ids = memory.ids
    pricer = LinePricer(memory.products, memory.appointments, memory.tax)
    (line,) = pricer.price_products([StockRequest(ids.product_a, ids.storage, 2)])
    assert line.unit_price == Decimal("10.00")
    assert line.subtotal == Decimal("10.00") / Decimal("1.18") * 2


def test_inactive_product_cannot_be_billed(memory):
    inactive = Product(id=uuid.uuid4(), name="Discontinued", price=Decimal("5.00"), is_active=False)
    memory.products.products[inactive.id] = inactive
    pricer = LinePricer(memory.products, memory.appointments, memory.tax)
    with pytest.raises(ValidationError):
        pricer.price_products([StockRequest(inactive.id, memory.ids.storage, 1)])


def test_missing_service_price(memory):
    ids = memory.ids
    memory.appointments.prices.pop(ids.appointment)
    pricer = LinePricer(memory.products, memory.appointments, memory.tax)
    appt = memory.appointments.find_one(ids.appointment)
    with pytest.raises(NotFoundError):
        pricer.price_services([appt])


def test_product_without_price_is_not_found(memory):
    unpriced = Product(id=uuid.uuid4(), name="Sample", price=None)
    memory.products.products[unpriced.id] = unpriced
    pricer = LinePricer(memory.products, memory.appointments, memory.tax)
    with pytest.raises(NotFoundError):
        pricer.price_products([StockRequest(unpriced.id, memory.ids.storage, 1)])


def test_product_cache_asks_the_catalog_once(memory):
    ids = memory.ids
    cache = ProductCache(memory.products)
    assert cache.find_by_id(ids.product_a).name == "Amoxicillin 500mg"
    assert cache.get_price_by_id(ids.product_a) == Decimal("10.00")
    assert cache.find_by_id(uuid.uuid4()) is None
    assert memory.products.calls["find_by_id"] == 2
    assert memory.products.calls["get_price_by_id"] == 0
