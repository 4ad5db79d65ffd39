"""Billing service API built with FastAPI.

Endpoints validate requests with the pydantic schemas, delegate to the
``BillingOrchestrator`` and map its results and errors to HTTP:

- 201 ``{success: true, message, data: Order}`` when an order is created.
- 200 ``{success: false, message, data: {unavailableProducts}}`` on a
  stock shortage.
- ``{detail: CODE, message}`` with the error's status for hard failures;
  503 ``UPSTREAM_UNAVAILABLE`` when the remote catalog cannot be reached.

Idempotency: when an ``Idempotency-Key`` header is sent, the first request
is processed and its response stored; a retry with the same payload gets
the stored response back with ``Idempotent-Replay: true``. Reusing the key
with a different payload returns 409 ``IDEMPOTENCY_CONFLICT``. A request
that ends in a 5xx releases its key so the client can retry.
"""

import time
import uuid
from typing import Annotated, Optional

import httpx
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from .db import get_engine, get_session_factory, init_db, ping
from .domain import BillingResult, OrderStatus, OrderType, UserData
from .errors import BillingError, NotFoundError, ValidationError
from .http_adapters import CircuitOpenError
from .idempotency import finalize, get_or_create_idempotent, release
from .logging_filters import get_logger
from .middleware import ApiSizeLimitMiddleware, RequestIdMiddleware
from .orchestrator import BillingOrchestrator
from .providers import build_billing_orchestrator, get_registry
from .repository import SqlOrderRepository
from .schemas import (
    BillingResponse,
    CreateAppointmentBillingDTO,
    CreateMedicalPrescriptionBillingDTO,
    CreateProductSaleBillingDTO,
    OrderListOut,
    OrderOut,
    ShortageOut,
    UnavailableProductOut,
)

logger = get_logger("api")

app = FastAPI(title="Clinic Billing Service")
app.add_middleware(ApiSizeLimitMiddleware)
app.add_middleware(RequestIdMiddleware)

UPSTREAM_BODY = {"detail": "UPSTREAM_UNAVAILABLE", "message": "Product catalog is unavailable"}


@app.on_event("startup")
def _startup_db():
    # wait briefly until the database accepts connections
    engine = get_engine()
    deadline = time.time() + 30
    while True:
        try:
            init_db(engine)
            break
        except OperationalError:
            if time.time() > deadline:
                raise
            time.sleep(1)
    get_registry()


# ---- Error mapping ----
def _error_body(exc: BillingError) -> dict:
    return {"detail": exc.code, "message": exc.message}


@app.exception_handler(BillingError)
def _billing_error(_request: Request, exc: BillingError):
    return JSONResponse(_error_body(exc), status_code=exc.http_status)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return JSONResponse(
        {"detail": "VALIDATION_ERROR", "message": "Invalid request", "errors": errors},
        status_code=400,
    )


# ---- Dependencies ----
def get_orchestrator(session_factory=Depends(get_session_factory)) -> BillingOrchestrator:
    return build_billing_orchestrator(session_factory)


def get_acting_user(
    user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None,
) -> UserData:
    """Resolve the acting user from ``X-User-Id``.

    Raises:
        ValidationError: When the header is missing or not a UUID.
    """
    try:
        return UserData(id=uuid.UUID(user_id or ""))
    except ValueError:
        raise ValidationError("X-User-Id header must be a valid UUID")


# ---- Billing ----
def _result_response(result: BillingResult) -> tuple[int, dict]:
    if result.success:
        data = OrderOut.from_domain(result.order).model_dump(mode="json", by_alias=True)
        return 201, BillingResponse(success=True, message=result.message, data=data).model_dump(mode="json")
    data = ShortageOut(
        unavailable_products=[UnavailableProductOut.from_domain(s) for s in result.unavailable_products]
    ).model_dump(mode="json", by_alias=True)
    return 200, BillingResponse(success=False, message=result.message, data=data).model_dump(mode="json")


def _bill(dto, order_type: OrderType, user: UserData, idem_key: Optional[str],
          session_factory, orchestrator: BillingOrchestrator) -> JSONResponse:
    """Run one billing request, honouring ``Idempotency-Key``."""
    if idem_key:
        payload = {"orderType": order_type.value, "body": dto.model_dump(mode="json", by_alias=True)}
        try:
            existing, rec = get_or_create_idempotent(session_factory, idem_key, payload)
        except ValueError as e:
            code = str(e)
            return JSONResponse({"detail": code, "message": "Idempotency key cannot be used"}, status_code=409)
        if existing:
            if not rec.response_status:
                return JSONResponse(
                    {"detail": "IDEMPOTENCY_IN_PROGRESS", "message": "Request is still being processed"},
                    status_code=409,
                )
            resp = JSONResponse(rec.response_body, status_code=rec.response_status)
            resp.headers["Idempotent-Replay"] = "true"
            return resp

    order_id = None
    try:
        result = orchestrator.execute(dto.to_domain(), user, order_type)
        status_code, body = _result_response(result)
        if result.order is not None:
            order_id = result.order.id
    except BillingError as e:
        status_code, body = e.http_status, _error_body(e)
    except (httpx.HTTPError, CircuitOpenError):
        logger.warning("catalog unavailable", extra={"order_type": order_type.value})
        status_code, body = 503, dict(UPSTREAM_BODY)
    except Exception:
        if idem_key:
            release(session_factory, idem_key)
        raise

    if idem_key:
        if status_code >= 500:
            release(session_factory, idem_key)
        else:
            finalize(session_factory, idem_key, status_code, body, order_id=order_id)
    return JSONResponse(body, status_code=status_code)


@app.post("/api/billing/medical-prescription")
def bill_medical_prescription(
    dto: CreateMedicalPrescriptionBillingDTO,
    user: UserData = Depends(get_acting_user),
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
    session_factory=Depends(get_session_factory),
    orchestrator: BillingOrchestrator = Depends(get_orchestrator),
):
    """Create a medical prescription order (products plus appointment services)."""
    return _bill(dto, OrderType.MEDICAL_PRESCRIPTION_ORDER, user, idempotency_key,
                 session_factory, orchestrator)


@app.post("/api/billing/product-sale")
def bill_product_sale(
    dto: CreateProductSaleBillingDTO,
    user: UserData = Depends(get_acting_user),
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
    session_factory=Depends(get_session_factory),
    orchestrator: BillingOrchestrator = Depends(get_orchestrator),
):
    """Create a product sale order."""
    return _bill(dto, OrderType.PRODUCT_SALE_ORDER, user, idempotency_key,
                 session_factory, orchestrator)


@app.post("/api/billing/appointment")
def bill_appointment(
    dto: CreateAppointmentBillingDTO,
    user: UserData = Depends(get_acting_user),
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
    session_factory=Depends(get_session_factory),
    orchestrator: BillingOrchestrator = Depends(get_orchestrator),
):
    """Create the order for a pending appointment's service."""
    return _bill(dto, OrderType.MEDICAL_APPOINTMENT_ORDER, user, idempotency_key,
                 session_factory, orchestrator)


# ---- Orders (read) ----
@app.get("/api/orders/{order_id}")
def retrieve_order(order_id: uuid.UUID, session_factory=Depends(get_session_factory)):
    order = SqlOrderRepository(session_factory).find_by_id(order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", order_id=str(order_id))
    return OrderOut.from_domain(order).model_dump(mode="json", by_alias=True)


@app.get("/api/orders")
def list_orders(
    type: Optional[OrderType] = Query(None),
    status: Optional[OrderStatus] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    session_factory=Depends(get_session_factory),
):
    count, orders = SqlOrderRepository(session_factory).list(type, status, page, page_size)
    return OrderListOut(
        count=count,
        page=page,
        page_size=page_size,
        results=[OrderOut.from_domain(o).model_dump(mode="json", by_alias=True) for o in orders],
    ).model_dump()


@app.get("/health")
def health(session_factory=Depends(get_session_factory)):
    """Liveness check including the database."""
    db_ok = ping(session_factory)
    return JSONResponse(
        {"ok": db_ok, "components": {"db": {"ok": db_ok}}},
        status_code=200 if db_ok else 503,
    )
