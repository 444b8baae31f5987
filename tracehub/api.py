import inspect

from tracehub.hub import Hub, _local, init
from tracehub.scope import Scope

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from contextvars import Token
    from typing import Any, Callable, ContextManager, Mapping, Optional, TypeVar, Union

    from tracehub._types import Breadcrumb, BreadcrumbHint, Event, ExcInfo, Hint
    from tracehub.client import Client
    from tracehub.tracing import NoOpSpan, Span, Transaction

    T = TypeVar("T")
    F = TypeVar("F", bound=Callable[..., Any])


# When changing this, update __all__ in __init__.py too
__all__ = [
    "init",
    "get_current_hub",
    "set_current_hub",
    "get_client",
    "is_initialized",
    "capture_event",
    "capture_message",
    "capture_exception",
    "recover",
    "recover_with_context",
    "recovering",
    "add_breadcrumb",
    "configure_scope",
    "push_scope",
    "with_scope",
    "set_tag",
    "set_tags",
    "set_context",
    "set_extra",
    "set_user",
    "set_level",
    "set_transaction_name",
    "flush",
    "flush_with_context",
    "last_event_id",
    "start_span",
    "start_transaction",
    "continue_trace",
    "get_current_span",
    "get_traceparent",
]


def hubmethod(f: "F") -> "F":
    f.__doc__ = "%s\n\n%s" % (
        "Alias for :py:meth:`tracehub.Hub.%s`" % f.__name__,
        inspect.getdoc(getattr(Hub, f.__name__)),
    )
    return f


def scopemethod(f: "F") -> "F":
    f.__doc__ = "%s\n\n%s" % (
        "Alias for :py:meth:`tracehub.Scope.%s`" % f.__name__,
        inspect.getdoc(getattr(Scope, f.__name__)),
    )
    return f


def get_current_hub() -> "Hub":
    """Returns the hub of the current thread or task, creating one on first
    use."""
    return Hub.current


def set_current_hub(hub: "Hub") -> "Token[Hub]":
    """Makes ``hub`` the current hub of this thread or task. Returns a token
    for `contextvars.ContextVar.reset`-style restoring; prefer ``with hub:``
    where a block is available."""
    return _local.set(hub)


def get_client() -> "Optional[Client]":
    """Returns the client bound to the current hub, if any."""
    return Hub.current.client


def is_initialized() -> bool:
    """Returns whether the current hub has a client that can send data."""
    client = Hub.current.client
    return client is not None and client.is_active()


@hubmethod
def capture_event(
    event: "Event",
    hint: "Optional[Hint]" = None,
    scope: "Optional[Any]" = None,
    **scope_kwargs: "Any"
) -> "Optional[str]":
    return Hub.current.capture_event(event, hint, scope=scope, **scope_kwargs)


@hubmethod
def capture_message(
    message: str,
    level: "Optional[str]" = None,
    scope: "Optional[Any]" = None,
    **scope_kwargs: "Any"
) -> "Optional[str]":
    return Hub.current.capture_message(message, level, scope=scope, **scope_kwargs)


@hubmethod
def capture_exception(
    error: "Optional[Union[BaseException, ExcInfo]]" = None,
    scope: "Optional[Any]" = None,
    **scope_kwargs: "Any"
) -> "Optional[str]":
    return Hub.current.capture_exception(error, scope=scope, **scope_kwargs)


@hubmethod
def recover(error: "Any", hint: "Optional[Hint]" = None) -> "Optional[str]":
    return Hub.current.recover(error, hint)


@hubmethod
def recover_with_context(
    context: "Any", error: "Any", hint: "Optional[Hint]" = None
) -> "Optional[str]":
    return Hub.current.recover_with_context(context, error, hint)


def recovering(repanic: bool = True) -> "Any":
    """Reports anything raised inside the block through the hub that is
    current when the block is entered, then re-raises unless ``repanic`` is
    false."""
    return Hub.current.recovering(repanic)


@hubmethod
def add_breadcrumb(
    crumb: "Optional[Breadcrumb]" = None,
    hint: "Optional[BreadcrumbHint]" = None,
    **kwargs: "Any"
) -> None:
    return Hub.current.add_breadcrumb(crumb, hint, **kwargs)


@hubmethod
def configure_scope(
    callback: "Optional[Callable[[Scope], None]]" = None,
) -> "Optional[ContextManager[Scope]]":
    return Hub.current.configure_scope(callback)


@hubmethod
def push_scope(
    callback: "Optional[Callable[[Scope], None]]" = None,
) -> "Optional[ContextManager[Scope]]":
    return Hub.current.push_scope(callback)


@hubmethod
def with_scope(callback: "Callable[[Scope], T]") -> "T":
    return Hub.current.with_scope(callback)


@scopemethod
def set_tag(key: str, value: "Any") -> None:
    return Hub.current.scope.set_tag(key, value)


@scopemethod
def set_tags(tags: "Mapping[str, object]") -> None:
    return Hub.current.scope.set_tags(tags)


@scopemethod
def set_context(key: str, value: "Any") -> None:
    return Hub.current.scope.set_context(key, value)


@scopemethod
def set_extra(key: str, value: "Any") -> None:
    return Hub.current.scope.set_extra(key, value)


@scopemethod
def set_user(value: "Optional[Any]") -> None:
    return Hub.current.scope.set_user(value)


@scopemethod
def set_level(value: "Any") -> None:
    return Hub.current.scope.set_level(value)


@scopemethod
def set_transaction_name(name: str, source: "Optional[str]" = None) -> None:
    return Hub.current.scope.set_transaction_name(name, source)


@hubmethod
def flush(timeout: "Optional[float]" = None) -> bool:
    return Hub.current.flush(timeout=timeout)


@hubmethod
def flush_with_context(cancel: "Any") -> bool:
    return Hub.current.flush_with_context(cancel)


@hubmethod
def last_event_id() -> "Optional[str]":
    return Hub.current.last_event_id()


@hubmethod
def start_span(**kwargs: "Any") -> "Span":
    return Hub.current.start_span(**kwargs)


@hubmethod
def start_transaction(
    transaction: "Optional[Transaction]" = None, **kwargs: "Any"
) -> "Union[Transaction, NoOpSpan]":
    return Hub.current.start_transaction(transaction, **kwargs)


@hubmethod
def continue_trace(headers: "Mapping[str, str]", **kwargs: "Any") -> "Transaction":
    return Hub.current.continue_trace(headers, **kwargs)


def get_current_span(hub: "Optional[Hub]" = None) -> "Optional[Span]":
    """
    Returns the currently active span if there is one running, otherwise `None`
    """
    if hub is None:
        hub = Hub.current
    return hub.scope.span


def get_traceparent() -> "Optional[str]":
    """
    Returns the traceparent either from the active span or from the scope.
    """
    span = get_current_span()
    if span is None:
        return None
    return span.to_traceparent()
