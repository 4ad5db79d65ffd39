"""Read-only stock pre-check."""

from typing import Iterable, List

from .domain import ProductLookup, StockLookup, StockRequest, StockShortage, aggregate_stock_requests
from .errors import NotFoundError


class StockAvailabilityChecker:
    """Report which requested items the current stock cannot cover.

    This is a pre-check, not a reservation: it reads current stock and
    writes nothing, so calling it twice without intervening writes gives
    the same answer. Quantities for the same (product, storage) pair are
    summed before comparing.
    """

    def __init__(self, stock: StockLookup, products: ProductLookup):
        self.stock = stock
        self.products = products

    def check_availability(self, items: Iterable[StockRequest]) -> List[StockShortage]:
        """Return the shortages; an empty list means everything is available.

        Raises:
            NotFoundError: If a product or storage does not exist.
        """
        shortages: List[StockShortage] = []
        for (product_id, storage_id), requested in aggregate_stock_requests(items).items():
            product = self.products.find_by_id(product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found", product_id=str(product_id))
            level = self.stock.get_stock_by_storage_and_product(storage_id, product_id)
            if level is None:
                raise NotFoundError(f"Storage {storage_id} not found", storage_id=str(storage_id))
            if level.quantity < requested:
                shortages.append(
                    StockShortage(
                        product_id=product_id,
                        product_name=product.name,
                        storage_id=storage_id,
                        storage_name=level.storage_name,
                        requested=requested,
                        available=level.quantity,
                    )
                )
        return shortages
