"""Shared fixtures: settings overrides, a seeded SQLite database, the API
client and an in-memory wiring of the orchestrator."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from clinic_billing import config
from clinic_billing.adapters import (
    InMemoryAppointmentBook,
    InMemoryAuditLog,
    InMemoryOrderStore,
    InMemoryPatientDirectory,
    InMemoryPaymentStore,
    InMemoryProductCatalog,
    InMemoryStock,
    InMemoryTransactionManager,
)
from clinic_billing.db import get_session_factory, init_db, make_session_factory
from clinic_billing.domain import Appointment, Patient, Product
from clinic_billing.models import (
    AppointmentModel,
    PatientModel,
    ProductModel,
    StockModel,
    StorageModel,
)
from clinic_billing.orchestrator import BillingOrchestrator
from clinic_billing.registry import build_default_registry
from clinic_billing.tax import TaxCalculator


class _SettingsOverride:
    """Set attributes on ``config.settings`` for the duration of a test."""

    def __init__(self, monkeypatch):
        object.__setattr__(self, "_mp", monkeypatch)

    def __setattr__(self, name, value):
        self._mp.setattr(config.settings, name, value, raising=False)

    def __getattr__(self, name):
        return getattr(config.settings, name)


@pytest.fixture
def settings(monkeypatch):
    return _SettingsOverride(monkeypatch)


@pytest.fixture(autouse=True)
def use_local_lookups_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.BILLING_LOOKUP_WORKERS = 1


# ---- SQL ----
@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def seed(session_factory):
    """Patient with a billed and a pending appointment, a second patient, one
    storage and two products.

    Prices include 18% tax. Stock: product A x5, product B x1.
    """
    ids = SimpleNamespace(
        patient=uuid.uuid4(),
        other_patient=uuid.uuid4(),
        doctor=uuid.uuid4(),
        branch=uuid.uuid4(),
        appointment=uuid.uuid4(),
        pending_appointment=uuid.uuid4(),
        other_appointment=uuid.uuid4(),
        storage=uuid.uuid4(),
        product_a=uuid.uuid4(),
        product_b=uuid.uuid4(),
        movement_type=uuid.uuid4(),
        user=uuid.uuid4(),
    )
    with session_factory() as s, s.begin():
        s.add_all([
            PatientModel(id=ids.patient, name="Ana", last_name="Quispe", dni="45879632"),
            PatientModel(id=ids.other_patient, name="Luis", last_name="Rojas"),
            StorageModel(id=ids.storage, name="Main pharmacy"),
            ProductModel(id=ids.product_a, name="Amoxicillin 500mg", price=Decimal("10.00")),
            ProductModel(id=ids.product_b, name="Ibuprofen 400mg", price=Decimal("15.00")),
        ])
        s.flush()
        s.add_all([
            AppointmentModel(
                id=ids.appointment, patient_id=ids.patient, staff_id=ids.doctor,
                branch_id=ids.branch, service_id=uuid.uuid4(), service_name="General consultation",
                service_price=Decimal("59.00"), status="COMPLETED",
            ),
            AppointmentModel(
                id=ids.pending_appointment, patient_id=ids.patient, staff_id=ids.doctor,
                branch_id=ids.branch, service_id=uuid.uuid4(), service_name="Cardiology check-up",
                service_price=Decimal("118.00"), status="PENDING", appointment_type="CONSULTA",
                start=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
                end=datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc),
            ),
            AppointmentModel(
                id=ids.other_appointment, patient_id=ids.other_patient, staff_id=uuid.uuid4(),
                service_name="Dermatology", service_price=Decimal("80.00"),
            ),
            StockModel(storage_id=ids.storage, product_id=ids.product_a, quantity=5),
            StockModel(storage_id=ids.storage, product_id=ids.product_b, quantity=1),
        ])
    return ids


@pytest.fixture
def client(session_factory):
    from clinic_billing.main import app

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


# ---- In-memory ----
@pytest.fixture
def memory():
    """In-memory collaborators mirroring the SQL seed, plus an orchestrator factory."""
    ids = SimpleNamespace(
        patient=uuid.uuid4(),
        other_patient=uuid.uuid4(),
        doctor=uuid.uuid4(),
        second_doctor=uuid.uuid4(),
        branch=uuid.uuid4(),
        appointment=uuid.uuid4(),
        second_appointment=uuid.uuid4(),
        done_appointment=uuid.uuid4(),
        other_appointment=uuid.uuid4(),
        storage=uuid.uuid4(),
        product_a=uuid.uuid4(),
        product_b=uuid.uuid4(),
        movement_type=uuid.uuid4(),
        user=uuid.uuid4(),
    )
    w = SimpleNamespace(ids=ids)
    w.patients = InMemoryPatientDirectory([
        Patient(id=ids.patient, name="Ana", last_name="Quispe", dni="45879632"),
        Patient(id=ids.other_patient, name="Luis", last_name="Rojas"),
    ])
    w.appointments = InMemoryAppointmentBook(
        [
            Appointment(id=ids.appointment, patient_id=ids.patient, service_name="General consultation",
                        staff_id=ids.doctor, branch_id=ids.branch),
            Appointment(id=ids.second_appointment, patient_id=ids.patient, service_name="Follow-up",
                        staff_id=ids.second_doctor, branch_id=ids.branch),
            Appointment(id=ids.done_appointment, patient_id=ids.patient, service_name="Vaccination",
                        staff_id=ids.doctor, status="COMPLETED"),
            Appointment(id=ids.other_appointment, patient_id=ids.other_patient, service_name="Dermatology"),
        ],
        prices={
            ids.appointment: Decimal("59.00"),
            ids.second_appointment: Decimal("23.60"),
            ids.done_appointment: Decimal("35.40"),
            ids.other_appointment: Decimal("80.00"),
        },
    )
    w.products = InMemoryProductCatalog([
        Product(id=ids.product_a, name="Amoxicillin 500mg", price=Decimal("10.00")),
        Product(id=ids.product_b, name="Ibuprofen 400mg", price=Decimal("15.00")),
    ])
    w.stock = InMemoryStock(
        storages={ids.storage: "Main pharmacy"},
        levels={(ids.storage, ids.product_a): 5, (ids.storage, ids.product_b): 1},
        product_names={ids.product_a: "Amoxicillin 500mg", ids.product_b: "Ibuprofen 400mg"},
    )
    w.orders = InMemoryOrderStore()
    w.payments = InMemoryPaymentStore()
    w.audit = InMemoryAuditLog()
    w.transactions = InMemoryTransactionManager()
    w.tax = TaxCalculator("0.18")

    def orchestrator(**overrides):
        kwargs = dict(
            registry=build_default_registry(w.tax),
            patients=w.patients,
            appointments=w.appointments,
            products=w.products,
            stock=w.stock,
            reserver=w.stock,
            orders=w.orders,
            payments=w.payments,
            audit=w.audit,
            transactions=w.transactions,
            tax_calculator=w.tax,
        )
        kwargs.update(overrides)
        return BillingOrchestrator(**kwargs)

    w.orchestrator = orchestrator
    return w
