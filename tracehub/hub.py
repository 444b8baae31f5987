import sys
import threading
import weakref
from contextlib import contextmanager
from contextvars import ContextVar
from copy import copy
from functools import wraps

from tracehub.client import Client
from tracehub.consts import DEFAULT_MAX_BREADCRUMBS, DEFAULT_MAX_SPANS, MAX_BREADCRUMBS
from tracehub.scope import Scope
from tracehub.tracing import NoOpSpan, Span, Transaction
from tracehub.utils import (
    capture_internal_exceptions,
    event_from_exception,
    exc_info_from_error,
    logger,
    reraise,
    safe_repr,
    utc_now,
)

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import (
        Any,
        Callable,
        ContextManager,
        Generator,
        Iterator,
        List,
        Mapping,
        Optional,
        Tuple,
        Type,
        TypeVar,
        Union,
    )

    from tracehub._types import Breadcrumb, BreadcrumbHint, Event, ExcInfo, Hint
    from tracehub.consts import ClientConstructor
    from tracehub.integrations import Integration

    T = TypeVar("T")


_local: "ContextVar[Hub]" = ContextVar("tracehub_current_hub")
_main_hub: "Optional[Hub]" = None
_main_hub_lock = threading.Lock()
_initial_client: "Optional[weakref.ReferenceType[Client]]" = None


class _InitGuard:
    def __init__(self, client: "Client") -> None:
        self._client = client

    def __enter__(self) -> "_InitGuard":
        return self

    def __exit__(self, exc_type: "Any", exc_value: "Any", tb: "Any") -> None:
        c = self._client
        if c is not None:
            c.close()


def _init(*args: "Optional[str]", **kwargs: "Any") -> "ContextManager[Any]":
    """Initializes the SDK and optionally integrations.

    This takes the same arguments as the client constructor. Invalid
    configuration raises and leaves the current hub without a client.
    """
    global _initial_client
    try:
        client = Client(*args, **kwargs)  # type: ignore
    except Exception:
        Hub.current.bind_client(None)
        _initial_client = None
        raise
    Hub.current.bind_client(client)
    rv = _InitGuard(client)
    _initial_client = weakref.ref(client)
    return rv


if TYPE_CHECKING:
    # Make mypy, PyCharm and other static analyzers think `init` is a type to
    # have nicer autocompletion for params.
    #
    # Use `ClientConstructor` to define the argument types of `init` and
    # `ContextManager[Any]` to tell static analyzers about the return type.

    class init(ClientConstructor, ContextManager[Any]):  # noqa: N801
        pass

else:
    # Alias `init` for actual usage. Go through the lambda indirection to throw
    # PyCharm off of the weakly typed signature (it would otherwise discover
    # both the weakly typed signature of `_init` and our faked `init` type).

    init = (lambda: _init)()


class HubMeta(type):
    @property
    def current(cls) -> "Hub":
        """Returns the current instance of the hub.

        The main thread starts out on the main hub. Any other thread or task
        that has no hub yet gets a fresh hub cloned from the main one.
        """
        rv = _local.get(None)
        if rv is None:
            if threading.current_thread() is threading.main_thread():
                rv = Hub.main
            else:
                rv = Hub(Hub.main)
            _local.set(rv)
        return rv

    @property
    def main(cls) -> "Hub":
        """Returns the main instance of the hub."""
        global _main_hub
        if _main_hub is None:
            with _main_hub_lock:
                if _main_hub is None:
                    _main_hub = Hub()
        return _main_hub


class _ScopeManager:
    def __init__(self, hub: "Hub") -> None:
        self._hub = hub
        self._original_len = len(hub._stack)
        self._layer = hub._stack[-1]

    def __enter__(self) -> "Scope":
        scope = self._layer[1]
        assert scope is not None
        return scope

    def __exit__(self, exc_type: "Any", exc_value: "Any", tb: "Any") -> None:
        current_len = len(self._hub._stack)
        if current_len < self._original_len:
            logger.error(
                "Scope popped too soon. Popped %s scopes too many.",
                self._original_len - current_len,
            )
            return
        elif current_len > self._original_len:
            logger.warning(
                "Leaked %s scopes: %s",
                current_len - self._original_len,
                self._hub._stack[self._original_len :],
            )

        layer = self._hub._stack[self._original_len - 1]
        del self._hub._stack[self._original_len - 1 :]

        if layer[1] != self._layer[1]:
            logger.error(
                "Wrong scope found. Meant to pop %s, but popped %s.",
                layer[1],
                self._layer[1],
            )
        elif layer[0] != self._layer[0]:
            warning = (
                "init() called inside of pushed scope. This might be entirely "
                "legitimate but usually occurs when initializing the SDK inside "
                "a request handler or task/job function. Try to initialize the "
                "SDK as early as possible instead."
            )
            logger.warning(warning)


def _is_cancelled(context: "Any") -> bool:
    cancelled = getattr(context, "cancelled", None)
    if callable(cancelled):
        return bool(cancelled())
    if isinstance(context, threading.Event):
        return context.is_set()
    return False


class Hub(metaclass=HubMeta):
    """The hub wraps the concurrency management of the SDK.  Each thread has
    its own hub but the hub might transfer with the flow of execution if
    context vars are available.

    If the hub is used with a with statement it's temporarily activated.
    """

    _stack: "List[Tuple[Optional[Client], Scope]]"

    # Mypy doesn't pick up on the metaclass.

    if TYPE_CHECKING:
        current: "Hub"
        main: "Hub"

    def __init__(
        self,
        client_or_hub: "Optional[Union[Hub, Client]]" = None,
        scope: "Optional[Scope]" = None,
    ) -> None:
        if isinstance(client_or_hub, Hub):
            hub = client_or_hub
            client, other_scope = hub._stack[-1]
            if scope is None:
                scope = copy(other_scope)
        else:
            client = client_or_hub
        if scope is None:
            scope = Scope()

        self._stack = [(client, scope)]
        self._last_event_id: "Optional[str]" = None
        self._old_hubs: "List[Hub]" = []

    def __enter__(self) -> "Hub":
        self._old_hubs.append(Hub.current)
        _local.set(self)
        return self

    def __exit__(
        self,
        exc_type: "Optional[type]",
        exc_value: "Optional[BaseException]",
        tb: "Optional[Any]",
    ) -> None:
        old = self._old_hubs.pop()
        _local.set(old)

    def run(self, callback: "Callable[[], T]") -> "T":
        """Runs a callback in the context of the hub.  Alternatively the
        with statement can be used on the hub directly.
        """
        with self:
            return callback()

    def clone(self) -> "Hub":
        """Returns a new hub with a deep copy of every scope layer. The
        clients are shared."""
        rv = Hub()
        rv._stack = [(client, copy(scope)) for client, scope in self._stack]
        rv._last_event_id = self._last_event_id
        return rv

    def get_integration(
        self, name_or_class: "Union[str, Type[Integration]]"
    ) -> "Any":
        """Returns the integration for this hub by name or class.  If there
        is no client bound or the client does not have that integration
        then `None` is returned.

        If the return value is not `None` the hub is guaranteed to have a
        client attached.
        """
        client = self._stack[-1][0]
        if client is not None:
            rv = client.get_integration(name_or_class)
            if rv is not None:
                return rv

        if _initial_client is not None:
            initial_client = _initial_client()
        else:
            initial_client = None

        if (
            initial_client is not None
            and initial_client is not client
            and initial_client.get_integration(name_or_class) is not None
        ):
            logger.warning(
                "Integration %r attempted to run but it was only enabled on "
                "init() but not the client that was bound to the current flow.",
                name_or_class,
            )
        return None

    @property
    def client(self) -> "Optional[Client]":
        """Returns the current client on the hub."""
        return self._stack[-1][0]

    @property
    def scope(self) -> "Scope":
        """Returns the current scope on the hub."""
        return self._stack[-1][1]

    def last_event_id(self) -> "Optional[str]":
        """Returns the last event ID."""
        return self._last_event_id

    def bind_client(self, new: "Optional[Client]") -> None:
        """Binds a new client to the hub."""
        top = self._stack[-1]
        self._stack[-1] = (new, top[1])

    def capture_event(
        self,
        event: "Event",
        hint: "Optional[Hint]" = None,
        scope: "Optional[Scope]" = None,
        **scope_kwargs: "Any"
    ) -> "Optional[str]":
        """Captures an event.  The return value is the ID of the event.

        Optionally an event hint dict can be passed that is used by
        processors to extract additional information from it. Typically the
        event hint object would contain exception information.

        Extra keyword arguments (``tags``, ``extras``, ``level``, ...) are
        applied to a temporary copy of the current scope for this event only.
        """
        client, top_scope = self._stack[-1]
        if client is None:
            return None

        if scope is None:
            scope = top_scope
        if scope_kwargs:
            scope = scope.clone()
            scope.update_from_kwargs(**scope_kwargs)

        rv = client.capture_event(event, hint, scope)
        if rv is not None:
            self._last_event_id = rv
        return rv

    def capture_message(
        self,
        message: str,
        level: "Optional[str]" = None,
        scope: "Optional[Scope]" = None,
        **scope_kwargs: "Any"
    ) -> "Optional[str]":
        """Captures a message.  The message is just a string.  If no level
        is provided the default level is `info`.
        """
        if self.client is None:
            return None
        if level is None:
            level = "info"
        return self.capture_event(
            {"message": message, "level": level},  # type: ignore
            scope=scope,
            **scope_kwargs
        )

    def capture_exception(
        self,
        error: "Optional[Union[BaseException, ExcInfo]]" = None,
        scope: "Optional[Scope]" = None,
        **scope_kwargs: "Any"
    ) -> "Optional[str]":
        """Captures an exception.

        The argument passed can be `None` in which case the last exception
        will be reported, otherwise an exception object or an `exc_info`
        tuple.
        """
        client = self.client
        if client is None:
            return None
        if error is None:
            exc_info = sys.exc_info()
        else:
            exc_info = exc_info_from_error(error)

        if exc_info[0] is None:
            logger.debug("capture_exception() called without an active exception")
            return None

        event, hint = event_from_exception(exc_info)
        try:
            return self.capture_event(event, hint=hint, scope=scope, **scope_kwargs)
        except Exception:
            self._capture_internal_exception(sys.exc_info())

        return None

    def _capture_internal_exception(self, exc_info: "Any") -> "Any":
        """Capture an exception that is likely caused by a bug in the SDK
        itself."""
        logger.error("Internal error in tracehub", exc_info=exc_info)

    def recover(
        self, error: "Any", hint: "Optional[Hint]" = None
    ) -> "Optional[str]":
        """Captures a value recovered while unwinding.

        Exceptions are reported as unhandled exceptions, any other value
        becomes a message event.
        """
        return self.recover_with_context(None, error, hint)

    def recover_with_context(
        self, context: "Any", error: "Any", hint: "Optional[Hint]" = None
    ) -> "Optional[str]":
        """Like `recover` but carries a request context (for example an
        asyncio task or a cancellation event) in the hint. Nothing is
        captured when the context was already cancelled."""
        if self.client is None:
            return None

        if context is not None and _is_cancelled(context):
            logger.info("Context was cancelled, not capturing recovered value")
            return None

        hint = dict(hint or ())
        hint["recovered"] = error
        if context is not None:
            hint["context"] = context

        if isinstance(error, BaseException):
            event, exc_hint = event_from_exception(
                error, mechanism={"type": "recover", "handled": False}
            )
            hint.update(exc_hint)
            event["level"] = "fatal"
        else:
            if isinstance(error, str):
                message = error
            else:
                message = safe_repr(error)
            event = {"message": message, "level": "fatal"}

        return self.capture_event(event, hint=hint)

    @contextmanager
    def _recovering(self, repanic: bool) -> "Iterator[None]":
        try:
            yield
        except GeneratorExit:
            raise
        except BaseException:
            exc_info = sys.exc_info()
            self.recover(exc_info[1])
            if repanic:
                reraise(*exc_info)

    def recovering(self, repanic: bool = True) -> "Any":
        """Reports anything raised inside the block, then re-raises it
        unless ``repanic`` is false. Works as context manager and as
        decorator::

            with hub.recovering():
                do_work()
        """
        hub = self

        class _Recovering:
            def __enter__(self) -> None:
                self._cm = hub._recovering(repanic)
                self._cm.__enter__()

            def __exit__(self, exc_type: "Any", exc_value: "Any", tb: "Any") -> bool:
                return bool(self._cm.__exit__(exc_type, exc_value, tb))

            def __call__(self, func: "Callable[..., T]") -> "Callable[..., T]":
                @wraps(func)
                def wrapper(*args: "Any", **kwargs: "Any") -> "T":
                    with hub._recovering(repanic):
                        return func(*args, **kwargs)
                    return None  # type: ignore

                return wrapper

        return _Recovering()

    def add_breadcrumb(
        self,
        crumb: "Optional[Breadcrumb]" = None,
        hint: "Optional[BreadcrumbHint]" = None,
        max_breadcrumbs: "Optional[int]" = None,
        **kwargs: "Any"
    ) -> None:
        """
        Adds a breadcrumb.

        :param crumb: Dictionary with the data as the protocol expects.

        :param hint: An optional value that can be used by `before_breadcrumb`
            to customize the breadcrumbs that are emitted.

        :param max_breadcrumbs: Overrides the `max_breadcrumbs` client option
            for this call.
        """
        client, scope = self._stack[-1]
        if client is None:
            logger.info("Dropped breadcrumb because no client bound")
            return

        crumb = dict(crumb or ())
        crumb.update(kwargs)
        if not crumb:
            return

        hint = dict(hint or ())

        if crumb.get("timestamp") is None:
            crumb["timestamp"] = utc_now()
        if crumb.get("type") is None:
            crumb["type"] = "default"

        if max_breadcrumbs is None:
            max_breadcrumbs = client.options["max_breadcrumbs"]
        if not max_breadcrumbs:
            max_breadcrumbs = DEFAULT_MAX_BREADCRUMBS
        elif max_breadcrumbs < 0:
            return
        max_breadcrumbs = min(max_breadcrumbs, MAX_BREADCRUMBS)

        before_breadcrumb = client.options["before_breadcrumb"]
        if before_breadcrumb is not None:
            new_crumb = None
            with capture_internal_exceptions():
                new_crumb = before_breadcrumb(crumb, hint)
        else:
            new_crumb = crumb

        if new_crumb is None:
            logger.info("before breadcrumb dropped breadcrumb (%s)", crumb)
            return

        scope.add_breadcrumb(new_crumb, max_breadcrumbs)

    def start_span(self, **kwargs: "Any") -> "Span":
        """
        Start a span whose parent is the currently active span or
        transaction, if any. The caller is responsible for finishing it,
        or it can be used as a context manager.
        """
        client, scope = self._stack[-1]
        if client is None:
            return NoOpSpan()

        kwargs.setdefault("hub", self)

        span = scope.span
        if span is not None:
            return span.start_child(**kwargs)

        return Span(**kwargs)

    def start_transaction(
        self, transaction: "Optional[Transaction]" = None, **kwargs: "Any"
    ) -> "Union[Transaction, NoOpSpan]":
        """
        Start and return a transaction.

        Start an existing transaction if given, otherwise create and start a
        new transaction with kwargs. The sampling decision is taken here and
        inherited by every child span.

        Finish the transaction, or use it as a context manager, to send it.
        """
        if self.client is None:
            return NoOpSpan()

        custom_sampling_context = kwargs.pop("custom_sampling_context", {})

        if transaction is None:
            kwargs.setdefault("hub", self)
            transaction = Transaction(**kwargs)
        elif transaction.hub is None:
            transaction.hub = self

        sampling_context = {
            "transaction_context": transaction.to_json(),
            "parent_sampled": transaction.parent_sampled,
        }
        sampling_context.update(custom_sampling_context)

        transaction._set_initial_sampling_decision(sampling_context=sampling_context)

        if transaction.sampled:
            transaction.init_span_recorder(maxlen=DEFAULT_MAX_SPANS)

        return transaction

    def continue_trace(
        self, headers: "Mapping[str, str]", **kwargs: "Any"
    ) -> "Transaction":
        """Returns a transaction that continues the trace found in the
        incoming headers. It still has to be started with
        `start_transaction`."""
        kwargs.setdefault("hub", self)
        return Transaction.continue_from_headers(headers, **kwargs)

    def push_scope(
        self, callback: "Optional[Callable[[Scope], None]]" = None
    ) -> "Optional[ContextManager[Scope]]":
        """Pushes a new layer on the scope stack. Returns a context manager
        that should be used to pop the scope again.  Alternatively a callback
        can be provided that is executed in the context of the scope.
        """
        if callback is not None:
            with self.push_scope() as scope:  # type: ignore
                callback(scope)
            return None

        client, scope = self._stack[-1]
        new_layer = (client, copy(scope))
        self._stack.append(new_layer)

        return _ScopeManager(self)

    def pop_scope_unsafe(self) -> "Optional[Tuple[Optional[Client], Scope]]":
        """Pops a scope layer from the stack. Try to use the context manager
        `push_scope()` instead. The bottom layer is never popped."""
        if len(self._stack) <= 1:
            logger.warning("Attempted to pop the last scope layer, ignoring")
            return None
        return self._stack.pop()

    def with_scope(self, callback: "Callable[[Scope], T]") -> "T":
        """Runs ``callback`` with a new scope layer that is popped again
        afterwards, even if the callback raises."""
        client, scope = self._stack[-1]
        new_scope = copy(scope)
        depth = len(self._stack)
        self._stack.append((client, new_scope))
        try:
            return callback(new_scope)
        finally:
            if len(self._stack) > depth + 1:
                logger.warning(
                    "Leaked %s scopes: %s",
                    len(self._stack) - depth - 1,
                    self._stack[depth + 1 :],
                )
            del self._stack[depth:]

    def configure_scope(
        self, callback: "Optional[Callable[[Scope], None]]" = None
    ) -> "Optional[ContextManager[Scope]]":
        """Reconfigures the scope."""
        client, scope = self._stack[-1]
        if callback is not None:
            callback(scope)
            return None

        @contextmanager
        def inner() -> "Generator[Scope, None, None]":
            yield scope

        return inner()

    def flush(self, timeout: "Optional[float]" = None) -> bool:
        """
        Alias for :py:meth:`tracehub.Client.flush`. Returns False when no
        client is bound.
        """
        client = self.client
        if client is None:
            return False
        return client.flush(timeout=timeout)

    def flush_with_context(self, cancel: "threading.Event") -> bool:
        client = self.client
        if client is None:
            return False
        return client.flush_with_context(cancel)

    def close(self, timeout: "Optional[float]" = None) -> None:
        """Closes the bound client, if any."""
        client = self.client
        if client is not None:
            client.close(timeout=timeout)

    def iter_trace_propagation_headers(
        self, span: "Optional[Span]" = None
    ) -> "Generator[Tuple[str, str], None, None]":
        client, scope = self._stack[-1]
        span = span or scope.span

        if client is None or span is None:
            return

        if not client.options["propagate_traces"]:
            return

        for header in span.iter_headers():
            yield header

    def __repr__(self) -> str:
        return "<%s id=%s layers=%d>" % (
            self.__class__.__name__,
            hex(id(self)),
            len(self._stack),
        )
