from abc import ABC, abstractmethod
from threading import Lock

from tracehub.utils import logger

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Dict, Iterator, List, Optional, Set, Type


_installer_lock = Lock()

# Set of all integration identifiers we have attempted to install
_processed_integrations: "Set[str]" = set()

# Set of all integration identifiers we have actually installed
_installed_integrations: "Set[str]" = set()


_DEFAULT_INTEGRATIONS = [
    "tracehub.integrations.atexit.AtexitIntegration",
    "tracehub.integrations.dedupe.DedupeIntegration",
    "tracehub.integrations.excepthook.ExcepthookIntegration",
    "tracehub.integrations.modules.ModulesIntegration",
    "tracehub.integrations.environment.EnvironmentIntegration",
]


def iter_default_integrations() -> "Iterator[Type[Integration]]":
    """Returns an iterator of the default integration classes."""
    from importlib import import_module

    for import_string in _DEFAULT_INTEGRATIONS:
        try:
            module, cls = import_string.rsplit(".", 1)
            yield getattr(import_module(module), cls)
        except DidNotEnable as e:
            logger.debug("Did not import default integration %s: %s", import_string, e)


def setup_integrations(
    integrations: "Optional[List[Integration]]", with_defaults: bool = True
) -> "Dict[str, Integration]":
    """
    Given a list of integration instances, this installs them all.

    When `with_defaults` is set to `True` all default integrations are added
    unless they were already provided before. A `DidNotEnable` raised by an
    explicitly requested integration propagates to the caller.
    """
    integrations_by_id = dict(
        (integration.identifier, integration) for integration in integrations or ()
    )

    logger.debug("Setting up integrations (with default = %s)", with_defaults)

    # Integrations that are not explicitly set up by the user.
    used_as_default_integration = set()

    if with_defaults:
        for integration_cls in iter_default_integrations():
            if integration_cls.identifier not in integrations_by_id:
                instance = integration_cls()
                integrations_by_id[instance.identifier] = instance
                used_as_default_integration.add(instance.identifier)

    for identifier, integration in integrations_by_id.items():
        with _installer_lock:
            if identifier not in _processed_integrations:
                logger.debug(
                    "Setting up previously not enabled integration %s", identifier
                )
                try:
                    type(integration).setup_once()
                except DidNotEnable as e:
                    if identifier not in used_as_default_integration:
                        raise

                    logger.debug(
                        "Did not enable default integration %s: %s", identifier, e
                    )
                else:
                    _installed_integrations.add(identifier)

                _processed_integrations.add(identifier)

    rv = {
        identifier: integration
        for identifier, integration in integrations_by_id.items()
        if identifier in _installed_integrations
    }

    for identifier in rv:
        logger.debug("Enabling integration %s", identifier)

    return rv


class DidNotEnable(Exception):  # noqa: N818
    """
    The integration could not be enabled in the current environment.

    This exception is silently swallowed for default integrations, but reraised
    for explicitly enabled integrations.
    """


class Integration(ABC):
    """Baseclass for all integrations.

    To accept options for an integration, implement your own constructor that
    saves those options on `self`.
    """

    identifier: str = None  # type: ignore
    """String unique ID of integration type"""

    @staticmethod
    @abstractmethod
    def setup_once() -> None:
        """
        Initialize the integration.

        This function is only called once, ever. Configuration is not available
        at this point, so the only thing to do here is to hook into exception
        handlers, and perhaps do monkeypatches.

        Inside those hooks `Hub.current.get_integration` can be used to access
        the instance again.
        """
        pass
