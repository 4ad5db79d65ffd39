import uuid

import pytest

from clinic_billing.domain import StockRequest
from clinic_billing.errors import NotFoundError
from clinic_billing.stock import StockAvailabilityChecker


def checker(memory):
    return StockAvailabilityChecker(memory.stock, memory.products)


def test_available_items_report_no_shortage(memory):
    ids = memory.ids
    items = [StockRequest(ids.product_a, ids.storage, 5), StockRequest(ids.product_b, ids.storage, 1)]
    assert checker(memory).check_availability(items) == []


def test_shortage_carries_names_and_quantities(memory):
    ids = memory.ids
    out = checker(memory).check_availability([StockRequest(ids.product_b, ids.storage, 3)])
    assert len(out) == 1
    s = out[0]
    assert (s.product_name, s.storage_name, s.requested, s.available) == (
        "Ibuprofen 400mg", "Main pharmacy", 3, 1,
    )


def test_duplicate_pairs_are_summed_before_comparing(memory):
    ids = memory.ids
    items = [StockRequest(ids.product_a, ids.storage, 3), StockRequest(ids.product_a, ids.storage, 3)]
    out = checker(memory).check_availability(items)
    assert [(s.requested, s.available) for s in out] == [(6, 5)]


def test_missing_stock_row_counts_as_zero(memory):
    ids = memory.ids
    memory.stock.levels.pop((ids.storage, ids.product_b))
    out = checker(memory).check_availability([StockRequest(ids.product_b, ids.storage, 1)])
    assert out[0].available == 0


def test_unknown_product_or_storage_raises(memory):
    ids = memory.ids
    with pytest.raises(NotFoundError):
        checker(memory).check_availability([StockRequest(uuid.uuid4(), ids.storage, 1)])
    with pytest.raises(NotFoundError):
        checker(memory).check_availability([StockRequest(ids.product_a, uuid.uuid4(), 1)])


def test_check_is_repeatable_without_writes(memory):
    ids = memory.ids
    items = [StockRequest(ids.product_b, ids.storage, 2)]
    c = checker(memory)
    assert c.check_availability(items) == c.check_availability(items)
    assert memory.stock.levels[(ids.storage, ids.product_b)] == 1
