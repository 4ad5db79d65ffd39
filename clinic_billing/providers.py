"""Wiring of the billing orchestrator with its ports.

``build_billing_orchestrator`` returns an orchestrator backed by the SQL
repositories. When ``settings.USE_HTTP_ADAPTERS`` is truthy, product
lookups go to the remote catalog through ``HttpCatalogClient`` instead.
"""

from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache

from .config import settings
from .db import SqlTransactionManager
from .http_adapters import HttpCatalogClient
from .orchestrator import BillingOrchestrator
from .registry import GeneratorRegistry, build_default_registry
from .repository import (
    SqlAppointmentRepository,
    SqlAuditRepository,
    SqlOrderRepository,
    SqlPatientRepository,
    SqlPaymentRepository,
    SqlProductRepository,
    SqlStockRepository,
)
from .tax import TaxCalculator


@lru_cache(maxsize=1)
def get_tax_calculator() -> TaxCalculator:
    return TaxCalculator(getattr(settings, "BILLING_TAX_RATE", None))


@lru_cache(maxsize=1)
def get_registry() -> GeneratorRegistry:
    """Build and freeze the registry once per process."""
    return build_default_registry(get_tax_calculator())


@lru_cache(maxsize=1)
def _lookup_executor(workers: int) -> ThreadPoolExecutor:
    return ThreadPoolExecutor(max_workers=workers, thread_name_prefix="billing-lookup")


def build_billing_orchestrator(session_factory) -> BillingOrchestrator:
    """Return an orchestrator wired to ``session_factory``."""
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        products = HttpCatalogClient()
    else:
        products = SqlProductRepository(session_factory)

    workers = getattr(settings, "BILLING_LOOKUP_WORKERS", 1)
    stock = SqlStockRepository(session_factory)
    return BillingOrchestrator(
        registry=get_registry(),
        patients=SqlPatientRepository(session_factory),
        appointments=SqlAppointmentRepository(session_factory),
        products=products,
        stock=stock,
        reserver=stock,
        orders=SqlOrderRepository(session_factory),
        payments=SqlPaymentRepository(),
        audit=SqlAuditRepository(),
        transactions=SqlTransactionManager(session_factory),
        tax_calculator=get_tax_calculator(),
        executor=_lookup_executor(workers) if workers > 1 else None,
    )
