"""SQLAlchemy models for billing.

Patients, appointments, products, storages and stock are owned by other
modules of the clinic backend; they are mapped here read-mostly so the
billing core can look them up and reserve stock in the same database.
Orders, payments, audit records and idempotency keys belong to billing.

Money columns are ``Numeric(12, 2)`` and come back as ``Decimal``.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, mapped_column, relationship

MONEY = Numeric(12, 2)


def _now():
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class PatientModel(Base):
    __tablename__ = "patients"

    id = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name = mapped_column(String(120), nullable=False)
    last_name = mapped_column(String(120), nullable=True)
    dni = mapped_column(String(20), nullable=True)
    address = mapped_column(String(255), nullable=True)
    phone = mapped_column(String(30), nullable=True)
    is_active = mapped_column(Boolean, default=True, nullable=False)


class AppointmentModel(Base):
    __tablename__ = "appointments"

    id = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = mapped_column(Uuid, ForeignKey("patients.id"), nullable=False)
    staff_id = mapped_column(Uuid, nullable=True)
    branch_id = mapped_column(Uuid, nullable=True)
    service_id = mapped_column(Uuid, nullable=True)
    service_name = mapped_column(String(120), nullable=False, default="")
    service_price = mapped_column(MONEY, nullable=True)  # tax-inclusive
    status = mapped_column(String(32), nullable=False, default="PENDING")
    start = mapped_column(DateTime(timezone=True), nullable=True)
    end = mapped_column(DateTime(timezone=True), nullable=True)
    appointment_type = mapped_column("type", String(40), nullable=True)
    is_active = mapped_column(Boolean, default=True, nullable=False)


class ProductModel(Base):
    __tablename__ = "products"

    id = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name = mapped_column(String(120), nullable=False)
    price = mapped_column(MONEY, nullable=True)  # tax-inclusive
    is_active = mapped_column(Boolean, default=True, nullable=False)


class StorageModel(Base):
    __tablename__ = "storages"

    id = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name = mapped_column(String(120), nullable=False)


class StockModel(Base):
    """Available quantity of a product in a storage."""

    __tablename__ = "stock"
    __table_args__ = (CheckConstraint("quantity >= 0", name="ck_stock_quantity_non_negative"),)

    storage_id = mapped_column(Uuid, ForeignKey("storages.id"), primary_key=True)
    product_id = mapped_column(Uuid, ForeignKey("products.id"), primary_key=True)
    quantity = mapped_column(Integer, nullable=False, default=0)


class OrderModel(Base):
    __tablename__ = "orders"

    id = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code = mapped_column(String(32), nullable=False, unique=True)
    type = mapped_column(String(40), nullable=False, index=True)
    status = mapped_column(String(20), nullable=False, index=True)
    movement_type_id = mapped_column(Uuid, nullable=False)
    reference_id = mapped_column(String(64), nullable=True, index=True)
    source_id = mapped_column(String(64), nullable=True)
    target_id = mapped_column(String(64), nullable=True)
    currency = mapped_column(String(3), nullable=False, default="PEN")
    subtotal = mapped_column(MONEY, nullable=False, default=0)
    tax = mapped_column(MONEY, nullable=False, default=0)
    total = mapped_column(MONEY, nullable=False, default=0)
    date = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    due_date = mapped_column(DateTime(timezone=True), nullable=True)
    notes = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    order_metadata = mapped_column("metadata", JSON, nullable=True)
    is_active = mapped_column(Boolean, default=True, nullable=False)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    payments = relationship("PaymentModel", back_populates="order", order_by="PaymentModel.created_at")


class PaymentModel(Base):
    __tablename__ = "payments"

    id = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = mapped_column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    amount = mapped_column(MONEY, nullable=False)
    status = mapped_column(String(20), nullable=False)
    type = mapped_column(String(20), nullable=False)
    payment_method = mapped_column(String(20), nullable=False)
    description = mapped_column(String(255), nullable=True)
    date = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    is_active = mapped_column(Boolean, default=True, nullable=False)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    order = relationship("OrderModel", back_populates="payments")


class AuditLogModel(Base):
    __tablename__ = "audit_logs"

    id = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_id = mapped_column(Uuid, nullable=False, index=True)
    entity_type = mapped_column(String(40), nullable=False)
    action = mapped_column(String(20), nullable=False)
    performed_by_id = mapped_column(Uuid, nullable=False)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class IdempotencyKeyModel(Base):
    """Stored responses for requests carrying an ``Idempotency-Key``.

    ``response_status`` stays 0 while the first request is in flight.
    """

    __tablename__ = "idempotency_keys"

    key = mapped_column(String(200), primary_key=True)
    request_hash = mapped_column(String(64), nullable=False)
    response_status = mapped_column(Integer, nullable=False, default=0)
    response_body = mapped_column(JSON, nullable=False, default=dict)
    order_id = mapped_column(Uuid, nullable=True)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
