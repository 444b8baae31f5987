import sys

from tracehub.hub import Hub
from tracehub.integrations import Integration
from tracehub.utils import capture_internal_exceptions, event_from_exception

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from types import TracebackType
    from typing import Callable, Optional, Type

    Excepthook = Callable[
        [Type[BaseException], BaseException, Optional[TracebackType]], object
    ]


class ExcepthookIntegration(Integration):
    """Reports uncaught exceptions before the previous `sys.excepthook`
    runs."""

    identifier = "excepthook"

    always_run = False

    def __init__(self, always_run: bool = False) -> None:
        if not isinstance(always_run, bool):
            raise ValueError(
                "Invalid value for always_run: %s (must be type boolean)"
                % (always_run,)
            )
        self.always_run = always_run

    @staticmethod
    def setup_once() -> None:
        sys.excepthook = _make_excepthook(sys.excepthook)


def _make_excepthook(old_excepthook: "Excepthook") -> "Excepthook":
    def tracehub_excepthook(
        type_: "Type[BaseException]",
        value: BaseException,
        traceback: "Optional[TracebackType]",
    ) -> None:
        hub = Hub.current
        integration = hub.get_integration(ExcepthookIntegration)

        if integration is not None and _should_send(integration.always_run):
            with capture_internal_exceptions():
                event, hint = event_from_exception(
                    (type_, value, traceback),
                    mechanism={"type": "excepthook", "handled": False},
                )
                hub.capture_event(event, hint=hint)

        return old_excepthook(type_, value, traceback)

    return tracehub_excepthook


def _should_send(always_run: bool = False) -> bool:
    if always_run:
        return True

    if hasattr(sys, "ps1"):
        # Disable the excepthook for interactive Python shells, otherwise
        # every typo gets reported.
        return False

    return True
