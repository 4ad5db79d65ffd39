"""Registry of order generators keyed by order type."""

from .domain import OrderType
from .errors import DuplicateGeneratorError, GeneratorConfigurationError, GeneratorNotFoundError
from .generators import (
    AppointmentGenerator,
    MedicalPrescriptionGenerator,
    OrderGenerator,
    ProductSaleGenerator,
)
from .logging_filters import get_logger
from .tax import TaxCalculator

logger = get_logger("registry")


class GeneratorRegistry:
    """Maps each order type to exactly one generator.

    The registry is filled once at startup and frozen; after that it is
    only read, so it needs no locking.
    """

    def __init__(self):
        self._generators: dict[OrderType, OrderGenerator] = {}
        self._frozen = False

    def register(self, generator: OrderGenerator) -> None:
        """Add a generator.

        Raises:
            GeneratorConfigurationError: If the generator has no type or the
                registry is frozen.
            DuplicateGeneratorError: If another generator already handles
                the same type.
        """
        if self._frozen:
            raise GeneratorConfigurationError("Generator registry is frozen")
        order_type = getattr(generator, "type", None)
        if not order_type:
            raise GeneratorConfigurationError("Generator must declare a type")
        if order_type in self._generators or any(
            g.can_handle(order_type) for g in self._generators.values()
        ):
            raise DuplicateGeneratorError(
                f"A generator is already registered for type {order_type.value}",
                order_type=order_type.value,
            )
        self._generators[order_type] = generator
        logger.info("generator registered", extra={"order_type": order_type.value})

    def resolve(self, order_type: OrderType) -> OrderGenerator:
        """Return the generator for ``order_type``.

        Raises:
            GeneratorNotFoundError: When no generator claims the type.
        """
        generator = self._generators.get(order_type)
        if generator is None or not generator.can_handle(order_type):
            raise GeneratorNotFoundError(
                f"No generator registered for type {getattr(order_type, 'value', order_type)}",
                order_type=str(getattr(order_type, "value", order_type)),
            )
        return generator

    def freeze(self) -> "GeneratorRegistry":
        self._frozen = True
        return self

    @property
    def types(self) -> list[OrderType]:
        return list(self._generators)


def build_default_registry(tax_calculator: TaxCalculator) -> GeneratorRegistry:
    """Register every known generator and freeze the registry."""
    registry = GeneratorRegistry()
    registry.register(MedicalPrescriptionGenerator(tax_calculator))
    registry.register(ProductSaleGenerator(tax_calculator))
    registry.register(AppointmentGenerator(tax_calculator))
    return registry.freeze()
