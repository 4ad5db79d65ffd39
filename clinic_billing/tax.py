"""Money arithmetic for billing.

All amounts are ``Decimal``. Rounding is half-up to two places and is
applied to aggregates, never per line.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from .config import settings
from .errors import ValidationError

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0")


def _as_decimal(value) -> Decimal:
    if isinstance(value, float):
        raise TypeError("money must be Decimal, int or str, not float")
    return value if isinstance(value, Decimal) else Decimal(value)


def round2(value) -> Decimal:
    """Round to two decimal places, half-up."""
    return _as_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class TaxBreakdown:
    subtotal: Decimal
    tax: Decimal
    total: Decimal


class TaxCalculator:
    """Flat-rate tax over an aggregate subtotal.

    Args:
        rate: Tax rate as a fraction (``Decimal("0.18")``). Defaults to
            ``settings.BILLING_TAX_RATE``.
    """

    def __init__(self, rate=None):
        self.rate = _as_decimal(rate if rate is not None else getattr(settings, "BILLING_TAX_RATE", "0.18"))
        if self.rate < ZERO:
            raise ValidationError("Tax rate cannot be negative")

    def apply(self, subtotal, rate=None) -> TaxBreakdown:
        """Compute tax and total for an aggregate subtotal.

        The subtotal is rounded first, then ``tax = round2(subtotal * rate)``
        and ``total = round2(subtotal + tax)``.

        Raises:
            ValidationError: If the subtotal or rate is negative.
        """
        r = self.rate if rate is None else _as_decimal(rate)
        if r < ZERO:
            raise ValidationError("Tax rate cannot be negative")
        sub = round2(subtotal)
        if sub < ZERO:
            raise ValidationError("Subtotal cannot be negative")
        tax = round2(sub * r)
        return TaxBreakdown(subtotal=sub, tax=tax, total=round2(sub + tax))

    def net_of_tax(self, gross, rate=None) -> Decimal:
        """Strip tax from a tax-inclusive amount. The result is unrounded."""
        r = self.rate if rate is None else _as_decimal(rate)
        return _as_decimal(gross) / (Decimal("1") + r)
