"""Error taxonomy for billing.

Every hard failure raised by the billing core derives from
``BillingError`` and carries a short ``code`` and the HTTP status the API
maps it to. A stock shortage is not an error: it is returned as data in a
``BillingResult``.
"""


class BillingError(Exception):
    """Base class for billing failures."""

    code = "BILLING_ERROR"
    http_status = 500

    def __init__(self, message: str | None = None, **details):
        self.message = message or self.code
        self.details = details
        super().__init__(self.message)


class NotFoundError(BillingError):
    """A referenced patient, appointment, product, price or storage is absent."""

    code = "NOT_FOUND"
    http_status = 404


class ValidationError(BillingError):
    """Malformed or inconsistent input."""

    code = "VALIDATION_ERROR"
    http_status = 400


class GeneratorNotFoundError(BillingError):
    """No generator is registered for the requested order type."""

    code = "GENERATOR_NOT_FOUND"
    http_status = 500


class GeneratorConfigurationError(BillingError):
    """The generator registry was wired incorrectly."""

    code = "GENERATOR_CONFIGURATION"
    http_status = 500


class DuplicateGeneratorError(GeneratorConfigurationError):
    """Two generators claim the same order type."""

    code = "DUPLICATE_GENERATOR"


class PersistenceError(BillingError):
    """The storage layer failed; the transaction was rolled back."""

    code = "PERSISTENCE_ERROR"
    http_status = 500


class BillingTimeoutError(PersistenceError):
    """The billing operation exceeded its deadline and was aborted."""

    code = "BILLING_TIMEOUT"
    http_status = 504


class StockReservationConflict(BillingError):
    """Stock changed between the pre-check and the reservation.

    Raised inside the billing transaction to force a rollback; the
    orchestrator turns it back into a soft failure.
    """

    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(self, shortages):
        self.shortages = list(shortages)
        super().__init__("Stock changed before it could be reserved")
