"""SQLAlchemy implementations of the billing ports.

Lookups open a short session per call and return domain dataclasses.
Writers never open their own session: they work on the ``Session`` handed
to them by ``SqlTransactionManager.begin()`` and only flush, so committing
stays with the caller.
"""

from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from .domain import (
    Appointment,
    AuditEntry,
    Order,
    OrderDraft,
    OrderStatus,
    OrderType,
    Patient,
    Payment,
    PaymentDraft,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    Product,
    StockLevel,
    StockRequest,
    StockShortage,
    aggregate_stock_requests,
)
from .errors import NotFoundError
from .metadata import dump_metadata, load_metadata
from .models import (
    AppointmentModel,
    AuditLogModel,
    OrderModel,
    PatientModel,
    PaymentModel,
    ProductModel,
    StockModel,
    StorageModel,
)


def _to_payment(row: PaymentModel) -> Payment:
    return Payment(
        id=row.id,
        order_id=row.order_id,
        amount=row.amount,
        date=row.date,
        description=row.description or "",
        status=PaymentStatus(row.status),
        type=PaymentType(row.type),
        payment_method=PaymentMethod(row.payment_method),
    )


def _to_order(row: OrderModel, payments: Optional[List[Payment]] = None) -> Order:
    return Order(
        id=row.id,
        code=row.code,
        type=OrderType(row.type),
        status=OrderStatus(row.status),
        movement_type_id=row.movement_type_id,
        reference_id=row.reference_id,
        source_id=row.source_id,
        target_id=row.target_id,
        currency=row.currency,
        subtotal=row.subtotal,
        tax=row.tax,
        total=row.total,
        date=row.date,
        metadata=load_metadata(row.order_metadata),
        due_date=row.due_date,
        notes=row.notes,
        is_active=row.is_active,
        payments=payments if payments is not None else [],
    )


def _metadata_json(metadata):
    if metadata is None or isinstance(metadata, dict):
        return metadata
    return dump_metadata(metadata)


# ---- Lookups ----
class SqlPatientRepository:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def find_one(self, patient_id: UUID) -> Optional[Patient]:
        with self.session_factory() as s:
            row = s.get(PatientModel, patient_id)
            if row is None or not row.is_active:
                return None
            return Patient(
                id=row.id,
                name=row.name,
                last_name=row.last_name or "",
                dni=row.dni or "",
                address=row.address or "",
                phone=row.phone or "",
            )


class SqlAppointmentRepository:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def find_one(self, appointment_id: UUID) -> Optional[Appointment]:
        with self.session_factory() as s:
            row = s.get(AppointmentModel, appointment_id)
            if row is None or not row.is_active:
                return None
            return Appointment(
                id=row.id,
                patient_id=row.patient_id,
                service_id=row.service_id,
                service_name=row.service_name,
                staff_id=row.staff_id,
                branch_id=row.branch_id,
                status=row.status,
                start=row.start,
                end=row.end,
                appointment_type=row.appointment_type or "",
            )

    def get_service_price(self, appointment_id: UUID) -> Optional[Decimal]:
        with self.session_factory() as s:
            return s.scalar(
                select(AppointmentModel.service_price).where(AppointmentModel.id == appointment_id)
            )


class SqlProductRepository:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def find_by_id(self, product_id: UUID) -> Optional[Product]:
        with self.session_factory() as s:
            row = s.get(ProductModel, product_id)
            if row is None:
                return None
            return Product(id=row.id, name=row.name, price=row.price, is_active=row.is_active)

    def get_price_by_id(self, product_id: UUID) -> Optional[Decimal]:
        with self.session_factory() as s:
            return s.scalar(select(ProductModel.price).where(ProductModel.id == product_id))


class SqlStockRepository:
    """Stock lookup and transactional reservation."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get_stock_by_storage_and_product(self, storage_id: UUID, product_id: UUID) -> Optional[StockLevel]:
        with self.session_factory() as s:
            storage = s.get(StorageModel, storage_id)
            if storage is None:
                return None
            row = s.get(StockModel, (storage_id, product_id))
            return StockLevel(
                product_id=product_id,
                storage_id=storage_id,
                storage_name=storage.name,
                quantity=row.quantity if row else 0,
            )

    def reserve(self, tx: Session, items: List[StockRequest]) -> List[StockShortage]:
        """Decrement stock for every requested pair inside ``tx``.

        Each decrement is a conditional ``UPDATE ... WHERE quantity >= n``;
        a pair whose update matches no row is reported as a shortage. Pairs
        are updated in a fixed order so concurrent reservations take row
        locks in the same sequence.

        The caller must roll back ``tx`` when shortages are returned, since
        the pairs that did fit were already decremented.
        """
        totals = aggregate_stock_requests(items)
        shortages: List[StockShortage] = []
        for product_id, storage_id in sorted(totals, key=lambda k: (str(k[1]), str(k[0]))):
            requested = totals[(product_id, storage_id)]
            result = tx.execute(
                update(StockModel)
                .where(
                    StockModel.storage_id == storage_id,
                    StockModel.product_id == product_id,
                    StockModel.quantity >= requested,
                )
                .values(quantity=StockModel.quantity - requested)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                continue
            shortages.append(self._shortage(tx, product_id, storage_id, requested))
        return shortages

    @staticmethod
    def _shortage(tx: Session, product_id: UUID, storage_id: UUID, requested: int) -> StockShortage:
        available = tx.scalar(
            select(StockModel.quantity).where(
                StockModel.storage_id == storage_id, StockModel.product_id == product_id
            )
        )
        return StockShortage(
            product_id=product_id,
            product_name=tx.scalar(select(ProductModel.name).where(ProductModel.id == product_id)) or "",
            storage_id=storage_id,
            storage_name=tx.scalar(select(StorageModel.name).where(StorageModel.id == storage_id)) or "",
            requested=requested,
            available=available or 0,
        )


# ---- Stores ----
class SqlOrderRepository:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def code_exists(self, tx: Session, code: str) -> bool:
        return tx.scalar(select(OrderModel.id).where(OrderModel.code == code).limit(1)) is not None

    def create(self, tx: Session, draft: OrderDraft) -> Order:
        row = OrderModel(
            code=draft.code,
            type=draft.type.value,
            status=draft.status.value,
            movement_type_id=draft.movement_type_id,
            reference_id=draft.reference_id,
            source_id=draft.source_id,
            target_id=draft.target_id,
            currency=draft.currency,
            subtotal=draft.subtotal,
            tax=draft.tax,
            total=draft.total,
            date=draft.date,
            due_date=draft.due_date,
            notes=draft.notes,
        )
        tx.add(row)
        tx.flush()
        return _to_order(row)

    def update(self, tx: Session, order_id: UUID, *, subtotal: Decimal, tax: Decimal,
               total: Decimal, metadata) -> Order:
        row = tx.get(OrderModel, order_id)
        if row is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=str(order_id))
        row.subtotal = subtotal
        row.tax = tax
        row.total = total
        row.order_metadata = _metadata_json(metadata)
        tx.flush()
        return _to_order(row)

    def find_by_id(self, order_id: UUID) -> Optional[Order]:
        with self.session_factory() as s:
            row = s.scalar(
                select(OrderModel)
                .options(selectinload(OrderModel.payments))
                .where(OrderModel.id == order_id, OrderModel.is_active.is_(True))
            )
            if row is None:
                return None
            return _to_order(row, [_to_payment(p) for p in row.payments])

    def list(self, order_type: Optional[OrderType] = None, status: Optional[OrderStatus] = None,
             page: int = 1, page_size: int = 20) -> Tuple[int, List[Order]]:
        """Return ``(count, orders)`` for one page, newest first."""
        conditions = [OrderModel.is_active.is_(True)]
        if order_type is not None:
            conditions.append(OrderModel.type == order_type.value)
        if status is not None:
            conditions.append(OrderModel.status == status.value)

        with self.session_factory() as s:
            count = s.scalar(select(func.count()).select_from(OrderModel).where(*conditions))
            rows = s.scalars(
                select(OrderModel)
                .options(selectinload(OrderModel.payments))
                .where(*conditions)
                .order_by(OrderModel.created_at.desc(), OrderModel.code)
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).all()
            return count or 0, [_to_order(r, [_to_payment(p) for p in r.payments]) for r in rows]


class SqlPaymentRepository:
    def create(self, tx: Session, draft: PaymentDraft) -> Payment:
        row = PaymentModel(
            order_id=draft.order_id,
            amount=draft.amount,
            date=draft.date,
            description=draft.description,
            status=draft.status.value,
            type=draft.type.value,
            payment_method=draft.payment_method.value,
        )
        tx.add(row)
        tx.flush()
        return _to_payment(row)


class SqlAuditRepository:
    def record(self, tx: Session, entry: AuditEntry) -> None:
        tx.add(
            AuditLogModel(
                entity_id=entry.entity_id,
                entity_type=entry.entity_type,
                action=entry.action.value,
                performed_by_id=entry.performed_by_id,
                created_at=entry.created_at,
            )
        )
        tx.flush()
