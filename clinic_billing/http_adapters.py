"""HTTP catalog client with retries, a circuit breaker and context headers.

``HttpCatalogClient`` implements the ``ProductLookup`` port against a
remote catalog service using ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar
    set by ``RequestIdMiddleware``.
- A circuit breaker for the catalog, so an unhealthy catalog is not
    hammered, with a HALF_OPEN trial call after a timeout.
- A retry policy with exponential backoff for transport errors and 5xx.
"""

import os
import sys
import threading
import time
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional
from uuid import UUID

import httpx

from .config import settings
from .domain import Product
from .middleware import REQUEST_ID_CTX


def _is_test_mode() -> bool:
    return (
        "pytest" in sys.modules
        or os.environ.get("PYTEST_CURRENT_TEST") is not None
        or os.environ.get("PYTEST_RUNNING") == "1"
    )


# ---------------- Circuit Breaker ---------------- #

class CircuitOpenError(RuntimeError):
    """The breaker refused the call."""


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Failure counter guarding calls to one remote service.

    After ``fail_threshold`` consecutive failures the catalog is skipped for
    ``reset_timeout`` seconds; then a single trial call is let through and its
    outcome closes or reopens the circuit.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._state is CircuitState.OPEN and time.monotonic() - self._opened_at >= self.reset_timeout:
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
            return self._state

    def before_call(self) -> CircuitState:
        """Admit a call or raise ``CircuitOpenError``."""
        with self._lock:
            state = self.state
            if state is CircuitState.OPEN:
                raise CircuitOpenError(f"{self.name} circuit is open")
            if state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(f"{self.name} circuit is half-open, trial call in flight")
                self._trial_in_flight = True
            return state

    def on_success(self) -> None:
        self.reset()

    def on_failure(self) -> None:
        with self._lock:
            self._failures += 1
            # a failed trial reopens immediately
            if self._state is CircuitState.HALF_OPEN or self._failures >= self.fail_threshold:
                self._trip()

    def release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = CircuitState.CLOSED
            self._trial_in_flight = False

    def _trip(self) -> None:
        if self._state is not CircuitState.OPEN:
            self._opened_at = time.monotonic()
        self._state = CircuitState.OPEN
        self._trial_in_flight = False


_catalog_cb = CircuitBreaker(
    "catalog",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Base headers with ``X-Request-ID`` (when a request is in flight) plus extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    # Retry only on transport errors or 5xx
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


# ---------------- Catalog Adapter ---------------- #

class HttpCatalogClient:
    """``ProductLookup`` backed by the catalog service.

    ``GET {base_url}/products/{id}`` is expected to answer 200 with
    ``{"id", "name", "price", "is_active"}`` (price as a decimal string,
    tax included) or 404 when the product does not exist.
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.CATALOG_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def find_by_id(self, product_id: UUID) -> Optional[Product]:
        data = self._get_product(product_id)
        if data is None:
            return None
        return Product(
            id=UUID(str(data.get("id", product_id))),
            name=data.get("name", ""),
            price=_decimal_or_none(data.get("price")),
            is_active=bool(data.get("is_active", True)),
        )

    def get_price_by_id(self, product_id: UUID) -> Optional[Decimal]:
        data = self._get_product(product_id)
        if data is None:
            return None
        return _decimal_or_none(data.get("price"))

    def _get_product(self, product_id: UUID) -> Optional[dict]:
        """Fetch one product with circuit-breaker precheck and retries.

        404 is a business answer (returns None) and does not count as a
        circuit failure.

        Raises:
            CircuitOpenError: When the circuit is open.
            httpx.RequestError: For transport errors after retries.
            httpx.HTTPStatusError: For non-retriable non-2xx responses.
        """
        max_retries, backoff = _retry_policy()
        if _is_test_mode():
            backoff = 0.0
        tries = 0

        state = _catalog_cb.before_call()
        headers = _request_headers({"X-Circuit-State": state.value, "X-Retry-Count": "0"})

        try:
            with httpx.Client(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = client.get(f"{self.base_url}/products/{product_id}", headers=headers)
                        if resp.is_success:
                            _catalog_cb.on_success()
                            return resp.json()
                        if resp.status_code == 404:
                            _catalog_cb.on_success()
                            return None
                        if not _should_retry(resp, None):
                            resp.raise_for_status()
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries > max_retries or not _should_retry(resp, exc):
                        _catalog_cb.on_failure()
                        if exc:
                            raise exc
                        resp.raise_for_status()

                    sleep_s = backoff * (2 ** (tries - 1))
                    cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                    if not _is_test_mode():
                        time.sleep(min(sleep_s, cap))
        finally:
            _catalog_cb.release_trial()


def _decimal_or_none(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None
