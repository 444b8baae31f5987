import atexit
import os
import sys

from tracehub.hub import Hub
from tracehub.integrations import Integration
from tracehub.utils import logger

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Optional


def default_callback(pending: int, timeout: float) -> None:
    """This is the default shutdown callback.
    It prints out a message to stderr that informs the user that some events
    are still pending and the process is waiting for them to flush out.
    """

    def echo(msg: str) -> None:
        sys.stderr.write(msg + "\n")

    echo("tracehub is attempting to send %i pending batches" % pending)
    echo("Waiting up to %s seconds" % timeout)
    echo("Press Ctrl-%s to quit" % (os.name == "nt" and "Break" or "C"))
    sys.stderr.flush()


class AtexitIntegration(Integration):
    """Flushes and closes the client of the main hub when the interpreter
    exits."""

    identifier = "atexit"

    def __init__(self, callback: "Optional[Any]" = None) -> None:
        if callback is None:
            callback = default_callback
        self.callback = callback

    @staticmethod
    def setup_once() -> None:
        @atexit.register
        def _shutdown() -> None:
            logger.debug("atexit: got shutdown signal")
            hub = Hub.main
            integration = hub.get_integration(AtexitIntegration)
            if integration is None:
                return

            client = hub.client
            if client is None or not client.is_active():
                return

            timeout = client.options["shutdown_timeout"]
            if not client.flush(timeout=0):
                integration.callback(1, timeout)

            logger.debug("atexit: shutting down client")
            client.close(timeout=timeout)
