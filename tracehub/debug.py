import sys
import logging
from contextvars import ContextVar

from tracehub import utils
from tracehub.utils import logger

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from logging import LogRecord

    from tracehub.hub import Hub


# Set while a client with `debug=True` is being constructed, so that
# diagnostics emitted during `init()` are visible before the client is bound.
_client_init_debug: "ContextVar[bool]" = ContextVar(
    "tracehub_client_init_debug", default=False
)


class _HubBasedClientFilter(logging.Filter):
    def filter(self, record: "LogRecord") -> bool:
        if _client_init_debug.get():
            return True

        from tracehub.hub import Hub

        client = Hub.current.client
        return client is not None and bool(client.options["debug"])


def init_debug_support() -> None:
    if not logger.handlers:
        configure_logger()
    configure_debug_hub()


def configure_logger() -> None:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter(" [tracehub] %(levelname)s: %(message)s"))
    logger.addHandler(_handler)
    logger.setLevel(logging.DEBUG)
    logger.addFilter(_HubBasedClientFilter())


def configure_debug_hub() -> None:
    def _get_debug_hub() -> "Hub":
        from tracehub.hub import Hub

        return Hub.current

    utils._get_debug_hub = _get_debug_hub
