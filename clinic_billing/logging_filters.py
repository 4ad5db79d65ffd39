"""Logging setup with request correlation.

``RequestIdFilter`` injects the current request id into log records using
the ContextVar set by ``RequestIdMiddleware``. ``get_logger`` returns a
child of the ``billing`` logger, which writes JSON lines through
python-json-logger.
"""

import logging
from logging import Filter, LogRecord

from pythonjsonlogger import jsonlogger

from .config import settings
from .middleware import REQUEST_ID_CTX

ROOT_LOGGER = "billing"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"


class RequestIdFilter(Filter):
    """Attach a ``request_id`` attribute to log records.

    When no request is in flight a hyphen ("-") is used as a placeholder
    so formatters can always reference ``%(request_id)s``.
    """

    def filter(self, record: LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get()
        return True


def _configure_root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        h = logging.StreamHandler()
        h.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
        h.addFilter(RequestIdFilter())
        root.addHandler(h)
        root.setLevel(getattr(settings, "LOG_LEVEL", "INFO"))
    return root


def get_logger(name: str | None = None) -> logging.Logger:
    """Return the ``billing`` logger or one of its children.

    Args:
        name: Optional suffix, e.g. ``"orchestrator"`` gives
            ``billing.orchestrator``.
    """
    root = _configure_root()
    if not name:
        return root
    return root.getChild(name)
