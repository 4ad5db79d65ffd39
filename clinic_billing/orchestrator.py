"""Billing use case: turn a billing request into a persisted order.

The orchestrator runs one invocation through the steps

    VALIDATING -> CHECKING_STOCK -> BUILDING -> PERSISTING
               -> SCHEDULING_PAYMENT -> AUDITING -> DONE

with two exits: SOFT_FAIL, when stock is short (returned as data, nothing
written), and HARD_FAIL, when any ``BillingError`` or unexpected exception
aborts the run (the transaction is rolled back and the error propagates).

The stock pre-check runs outside the transaction and is not a
reservation. Inside the transaction the reserver decrements stock with a
compare-and-swap, so two requests racing for the last unit cannot both
commit; the loser rolls back and gets the same soft-failure result.
"""

import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .config import settings
from .domain import (
    AppointmentLookup,
    AuditActionType,
    AuditEntry,
    AuditSink,
    BillingRequest,
    BillingResult,
    BillingState,
    GenerationInput,
    Order,
    OrderDraft,
    OrderStore,
    OrderType,
    PatientLookup,
    PaymentDraft,
    PaymentStore,
    ProductLookup,
    StockLookup,
    StockReserver,
    TransactionManager,
    UserData,
)
from .errors import BillingError, BillingTimeoutError, PersistenceError, StockReservationConflict
from .generators import generate_code
from .logging_filters import get_logger
from .pricing import LinePricer, ProductCache
from .registry import GeneratorRegistry
from .stock import StockAvailabilityChecker
from .tax import TaxCalculator
from .validators import AppointmentValidator, find_patient, validate_request

logger = get_logger("orchestrator")

SUCCESS_MESSAGES = {
    OrderType.MEDICAL_PRESCRIPTION_ORDER: "Medical prescription order created successfully",
    OrderType.PRODUCT_SALE_ORDER: "Product sale order created successfully",
    OrderType.MEDICAL_APPOINTMENT_ORDER: "Medical appointment billing order created successfully",
}
PAYMENT_LABELS = {
    OrderType.MEDICAL_PRESCRIPTION_ORDER: "medical prescription",
    OrderType.PRODUCT_SALE_ORDER: "product sale",
    OrderType.MEDICAL_APPOINTMENT_ORDER: "medical appointment",
}
SHORTAGE_MESSAGE = "Insufficient stock for one or more products"
CODE_ATTEMPTS = 20


class _Progress:
    """Current step and deadline of one invocation."""

    def __init__(self, order_type: OrderType, timeout_secs: Optional[float], clock: Callable[[], float]):
        self.order_type = order_type
        self.state = BillingState.VALIDATING
        self.clock = clock
        self.expires_at = clock() + timeout_secs if timeout_secs else None

    def check(self) -> None:
        if self.expires_at is not None and self.clock() > self.expires_at:
            raise BillingTimeoutError(
                f"Billing exceeded its deadline during {self.state.value}",
                state=self.state.value,
            )

    def advance(self, state: BillingState) -> None:
        self.check()
        self.state = state
        logger.debug("billing step", extra={"state": state.value, "order_type": self.order_type.value})


class BillingOrchestrator:
    """Compose validation, stock checks, generation and persistence.

    This is the only billing component with side effects. All writes go
    through the handle yielded by ``transactions.begin()``, so the order,
    its totals and metadata patch, the pending payment, the audit record
    and the stock reservation commit together or not at all.

    Args:
        registry: Frozen generator registry.
        patients, appointments, products, stock: Read-only lookups.
        reserver: Transactional stock reservation.
        orders, payments, audit: Transactional stores.
        transactions: Opens the transaction scope.
        tax_calculator: Shared tax calculator (same rate as the generators).
        executor: Optional executor for concurrent appointment lookups.
        timeout_secs: Deadline per invocation; defaults to
            ``settings.BILLING_TIMEOUT_SECS``. ``0`` disables it.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        *,
        registry: GeneratorRegistry,
        patients: PatientLookup,
        appointments: AppointmentLookup,
        products: ProductLookup,
        stock: StockLookup,
        reserver: StockReserver,
        orders: OrderStore,
        payments: PaymentStore,
        audit: AuditSink,
        transactions: TransactionManager,
        tax_calculator: TaxCalculator,
        executor=None,
        timeout_secs: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.patients = patients
        self.reserver = reserver
        self.orders = orders
        self.payments = payments
        self.audit = audit
        self.transactions = transactions
        self.appointments = appointments
        self.products = products
        self.stock = stock
        self.tax = tax_calculator
        self.appointment_validator = AppointmentValidator(appointments, executor)
        self.timeout_secs = (
            timeout_secs if timeout_secs is not None else getattr(settings, "BILLING_TIMEOUT_SECS", 30)
        )
        self.clock = clock

    def execute(
        self,
        request: BillingRequest,
        user: UserData,
        order_type: OrderType = OrderType.MEDICAL_PRESCRIPTION_ORDER,
    ) -> BillingResult:
        """Run one billing invocation.

        Returns:
            BillingResult: ``success=True`` with the persisted order, or
            ``success=False`` with the unavailable products.

        Raises:
            NotFoundError: Patient, appointment, product, storage or price
                missing.
            ValidationError: Malformed request, appointment of another
                patient, or an appointment order for a non-pending
                appointment.
            GeneratorNotFoundError: No generator for ``order_type``.
            PersistenceError: Storage failure; nothing was committed.
            BillingTimeoutError: The deadline passed; nothing was committed.
        """
        progress = _Progress(order_type, self.timeout_secs, self.clock)
        try:
            generator = self.registry.resolve(order_type)
            validate_request(request)
            patient = find_patient(self.patients, request.patient_id)
            appointments = self.appointment_validator.validate(
                request.patient_id, request.appointment_ids
            )

            catalog = ProductCache(self.products)
            pricer = LinePricer(catalog, self.appointments, self.tax)

            progress.advance(BillingState.CHECKING_STOCK)
            shortages = StockAvailabilityChecker(self.stock, catalog).check_availability(request.products)
            if shortages:
                return self._soft_fail(progress, shortages)

            progress.advance(BillingState.BUILDING)
            draft = generator.generate(
                GenerationInput(
                    request=request,
                    patient=patient,
                    appointments=appointments,
                    product_lines=pricer.price_products(request.products),
                    service_lines=pricer.price_services(appointments),
                )
            )

            progress.advance(BillingState.PERSISTING)
            order = self._persist(draft, generator.code_prefix, request, user, progress)
        except StockReservationConflict as exc:
            return self._soft_fail(progress, exc.shortages)
        except BillingError as exc:
            logger.warning(
                "billing aborted",
                extra={"state": progress.state.value, "code": exc.code, "detail": exc.message},
            )
            progress.state = BillingState.HARD_FAIL
            raise
        except Exception:
            logger.exception("billing failed unexpectedly", extra={"state": progress.state.value})
            progress.state = BillingState.HARD_FAIL
            raise

        progress.state = BillingState.DONE
        logger.info(
            "order created",
            extra={"order_id": str(order.id), "code": order.code, "total": str(order.total),
                   "order_type": order_type.value},
        )
        return BillingResult(
            success=True,
            message=SUCCESS_MESSAGES.get(order_type, "Order created successfully"),
            order=order,
        )

    def _persist(self, draft: OrderDraft, code_prefix: str, request: BillingRequest,
                 user: UserData, progress: _Progress) -> Order:
        with self.transactions.begin() as tx:
            if request.products:
                shortages = self.reserver.reserve(tx, request.products)
                if shortages:
                    raise StockReservationConflict(shortages)

            draft.code = self._free_code(tx, draft.code, code_prefix)
            # create-then-patch: both writes share the transaction
            order = self.orders.create(tx, draft)
            order = self.orders.update(
                tx, order.id,
                subtotal=draft.subtotal, tax=draft.tax, total=draft.total, metadata=draft.metadata,
            )

            progress.advance(BillingState.SCHEDULING_PAYMENT)
            now = datetime.now(timezone.utc)
            label = PAYMENT_LABELS.get(order.type, order.type.value.lower())
            payment = self.payments.create(
                tx,
                PaymentDraft(
                    order_id=order.id,
                    amount=order.total,
                    date=now,
                    description=f"Pending payment for {label} billing - {order.code}",
                    payment_method=request.payment_method,
                ),
            )
            order.payments.append(payment)

            progress.advance(BillingState.AUDITING)
            self.audit.record(
                tx,
                AuditEntry(
                    entity_id=order.id,
                    entity_type="order",
                    action=AuditActionType.CREATE,
                    performed_by_id=user.id,
                    created_at=now,
                ),
            )
            progress.check()
        return order

    def _free_code(self, tx, code: str, prefix: str) -> str:
        """Return ``code`` or a fresh one if it is already taken.

        The unique index on the code column still rejects a clash with a
        concurrent transaction; that surfaces as a ``PersistenceError``.
        """
        for _ in range(CODE_ATTEMPTS):
            if not self.orders.code_exists(tx, code):
                return code
            logger.info("order code taken, drawing another", extra={"code": code})
            code = generate_code(prefix)
        raise PersistenceError(f"Could not allocate a free {prefix} order code", prefix=prefix)

    def _soft_fail(self, progress: _Progress, shortages) -> BillingResult:
        logger.warning(
            "insufficient stock",
            extra={
                "state": progress.state.value,
                "unavailable": [f"{s.product_id}@{s.storage_id}" for s in shortages],
            },
        )
        progress.state = BillingState.SOFT_FAIL
        return BillingResult(success=False, message=SHORTAGE_MESSAGE, unavailable_products=list(shortages))
