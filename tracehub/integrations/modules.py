from importlib import metadata

from tracehub.hub import Hub
from tracehub.integrations import Integration
from tracehub.scope import add_global_event_processor

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Dict, Iterator, Optional, Tuple

    from tracehub._types import Event


_installed_modules: "Optional[Dict[str, str]]" = None


def _normalize_module_name(name: str) -> str:
    return name.lower()


def _generate_installed_modules() -> "Iterator[Tuple[str, str]]":
    for dist in metadata.distributions():
        name = dist.metadata["Name"]
        # `metadata` values may be `None`, see:
        # https://github.com/python/cpython/issues/91216
        if name is not None:
            version = dist.version
            if version is not None:
                yield _normalize_module_name(name), version


def _get_installed_modules() -> "Dict[str, str]":
    global _installed_modules
    if _installed_modules is None:
        _installed_modules = dict(_generate_installed_modules())
    return _installed_modules


class ModulesIntegration(Integration):
    """Attaches the installed distributions to every error event."""

    identifier = "modules"

    @staticmethod
    def setup_once() -> None:
        @add_global_event_processor
        def processor(event: "Event", hint: "Any") -> "Event":
            if event.get("type") in ("transaction", "check_in"):
                return event

            if Hub.current.get_integration(ModulesIntegration) is None:
                return event

            event["modules"] = _get_installed_modules()
            return event
