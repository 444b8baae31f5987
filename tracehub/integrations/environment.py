import os
import platform
import sys

from tracehub.hub import Hub
from tracehub.integrations import Integration
from tracehub.scope import add_global_event_processor

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Dict

    from tracehub._types import Event


_contexts: "Dict[str, Dict[str, Any]]" = {}


def _get_contexts() -> "Dict[str, Dict[str, Any]]":
    if not _contexts:
        _contexts["runtime"] = {
            "name": platform.python_implementation(),
            "version": platform.python_version(),
            "build": sys.version,
        }
        _contexts["os"] = {
            "name": platform.system(),
            "version": platform.release(),
        }
        _contexts["device"] = {
            "arch": platform.machine(),
            "processor_count": os.cpu_count(),
        }
    return _contexts


class EnvironmentIntegration(Integration):
    """Adds runtime, OS and device contexts to events that do not carry
    them yet."""

    identifier = "environment"

    @staticmethod
    def setup_once() -> None:
        @add_global_event_processor
        def processor(event: "Event", hint: "Any") -> "Event":
            if event.get("type") == "check_in":
                return event

            if Hub.current.get_integration(EnvironmentIntegration) is None:
                return event

            contexts = event.setdefault("contexts", {})
            for key, value in _get_contexts().items():
                contexts.setdefault(key, dict(value))
            return event
