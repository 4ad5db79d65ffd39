"""Pricing of product and service lines.

Catalog prices include tax. A line's pre-tax subtotal is the price divided
by ``1 + rate`` (times the quantity for products) and is left unrounded;
rounding happens once per line group in the generators.
"""

from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from .domain import (
    Appointment,
    AppointmentLookup,
    Product,
    ProductLine,
    ProductLookup,
    ServiceLine,
    StockRequest,
)
from .errors import NotFoundError, ValidationError
from .tax import TaxCalculator


class ProductCache:
    """``ProductLookup`` that asks the wrapped catalog once per product.

    One instance lives for a single billing invocation, so the stock check
    and the pricer share each lookup (one round trip per product when the
    catalog is remote).
    """

    def __init__(self, products: ProductLookup):
        self.products = products
        self._seen: Dict[UUID, Optional[Product]] = {}

    def find_by_id(self, product_id: UUID) -> Optional[Product]:
        if product_id not in self._seen:
            self._seen[product_id] = self.products.find_by_id(product_id)
        return self._seen[product_id]

    def get_price_by_id(self, product_id: UUID) -> Optional[Decimal]:
        product = self.find_by_id(product_id)
        return product.price if product else None


class LinePricer:
    def __init__(self, products: ProductLookup, appointments: AppointmentLookup,
                 tax_calculator: TaxCalculator):
        self.products = products
        self.appointments = appointments
        self.tax = tax_calculator

    def price_products(self, items: List[StockRequest]) -> List[ProductLine]:
        """Price each requested product line.

        Raises:
            NotFoundError: If the product or its price is missing.
            ValidationError: If the product is inactive.
        """
        lines = []
        for it in items:
            product = self.products.find_by_id(it.product_id)
            if product is None:
                raise NotFoundError(f"Product {it.product_id} not found", product_id=str(it.product_id))
            if not product.is_active:
                raise ValidationError(f"Product {product.name} is not active", product_id=str(product.id))
            price = product.price
            if price is None:
                raise NotFoundError(
                    f"Price for product {it.product_id} not found", product_id=str(it.product_id)
                )
            lines.append(
                ProductLine(
                    product_id=product.id,
                    product_name=product.name,
                    storage_id=it.storage_id,
                    quantity=it.quantity,
                    unit_price=price,
                    subtotal=self.tax.net_of_tax(price) * it.quantity,
                )
            )
        return lines

    def price_services(self, appointments: List[Appointment]) -> List[ServiceLine]:
        """Price the service attached to each appointment.

        Raises:
            NotFoundError: If an appointment's service has no price.
        """
        lines = []
        for appt in appointments:
            price = self.appointments.get_service_price(appt.id)
            if price is None:
                raise NotFoundError(
                    f"Service price for appointment {appt.id} not found",
                    appointment_id=str(appt.id),
                )
            lines.append(
                ServiceLine(
                    appointment_id=appt.id,
                    service_id=appt.service_id,
                    service_name=appt.service_name,
                    price=price,
                    subtotal=self.tax.net_of_tax(price),
                )
            )
        return lines
