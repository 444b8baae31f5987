import itertools
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import tracehub

    from typing import Any
    from typing import Callable
    from typing import Dict
    from typing import Optional
    from typing import Sequence
    from typing import Type
    from typing import Union

    from tracehub._types import (
        BreadcrumbProcessor,
        Event,
        EventProcessor,
        LogProcessor,
        MetricProcessor,
        TracesSampler,
        TransactionProcessor,
    )


DEFAULT_MAX_BREADCRUMBS = 30
MAX_BREADCRUMBS = 100
DEFAULT_MAX_SPANS = 1000

DEFAULT_BATCH_SIZE = 100
DEFAULT_BATCH_TIMEOUT = 5.0
DEFAULT_SHUTDOWN_TIMEOUT = 2.0
DEFAULT_RATE_LIMIT_SECONDS = 60

TRUE_VALUES = ("1", "true", "yes", "on", "y")


class OverflowPolicy:
    DROP_NEWEST = "drop_newest"
    BLOCK = "block"


OVERFLOW_POLICIES = (OverflowPolicy.DROP_NEWEST, OverflowPolicy.BLOCK)


class DataCategory:
    ALL = None
    ERROR = "error"
    TRANSACTION = "transaction"
    MONITOR = "monitor"
    LOG_ITEM = "log_item"
    TRACE_METRIC = "trace_metric"


KNOWN_DATA_CATEGORIES = frozenset(
    (
        DataCategory.ERROR,
        DataCategory.TRANSACTION,
        DataCategory.MONITOR,
        DataCategory.LOG_ITEM,
        DataCategory.TRACE_METRIC,
    )
)


class SPANSTATUS:
    """
    The status of a span, mirroring the canonical gRPC status codes.
    """

    ABORTED = "aborted"
    ALREADY_EXISTS = "already_exists"
    CANCELLED = "cancelled"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    FAILED_PRECONDITION = "failed_precondition"
    INTERNAL_ERROR = "internal_error"
    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"
    OK = "ok"
    PERMISSION_DENIED = "permission_denied"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    UNAUTHENTICATED = "unauthenticated"
    UNAVAILABLE = "unavailable"
    UNIMPLEMENTED = "unimplemented"
    UNKNOWN_ERROR = "unknown_error"


class ClientConstructor:
    def __init__(
        self,
        dsn=None,  # type: Optional[str]
        *,
        debug=None,  # type: Optional[bool]
        release=None,  # type: Optional[str]
        environment=None,  # type: Optional[str]
        server_name=None,  # type: Optional[str]
        dist=None,  # type: Optional[str]
        max_breadcrumbs=DEFAULT_MAX_BREADCRUMBS,  # type: int
        shutdown_timeout=DEFAULT_SHUTDOWN_TIMEOUT,  # type: float
        sample_rate=1.0,  # type: float
        traces_sample_rate=None,  # type: Optional[float]
        traces_sampler=None,  # type: Optional[TracesSampler]
        before_send=None,  # type: Optional[EventProcessor]
        before_send_transaction=None,  # type: Optional[TransactionProcessor]
        before_send_check_in=None,  # type: Optional[EventProcessor]
        before_breadcrumb=None,  # type: Optional[BreadcrumbProcessor]
        before_send_log=None,  # type: Optional[LogProcessor]
        before_send_metric=None,  # type: Optional[MetricProcessor]
        ignore_errors=[],  # type: Sequence[Union[type, str]]  # noqa: B006
        ignore_transactions=[],  # type: Sequence[str]  # noqa: B006
        enable_logs=False,  # type: bool
        enable_metrics=True,  # type: bool
        integrations=[],  # type: Sequence[tracehub.integrations.Integration]  # noqa: B006
        default_integrations=True,  # type: bool
        transport=None,  # type: Optional[Union[tracehub.transport.Transport, Type[tracehub.transport.Transport], Callable[[Event], None]]]
        batch_size=DEFAULT_BATCH_SIZE,  # type: int
        batch_timeout=DEFAULT_BATCH_TIMEOUT,  # type: float
        overflow_policy=OverflowPolicy.DROP_NEWEST,  # type: str
        block_timeout=None,  # type: Optional[float]
        http_proxy=None,  # type: Optional[str]
        https_proxy=None,  # type: Optional[str]
        ca_certs=None,  # type: Optional[str]
        propagate_traces=True,  # type: bool
    ):
        # type: (...) -> None
        """Initialize the SDK with the given parameters. All parameters
        described here can be used in a call to `tracehub.init()`.

        :param dsn: Where to send events. Read from ``TRACEHUB_DSN`` when not
            set. Without a DSN (and without an explicit transport instance) the
            SDK stays inert.

        :param debug: Turns on diagnostic output on stderr through the
            ``tracehub.errors`` logger. Read from ``TRACEHUB_DEBUG`` when not
            set.

        :param max_breadcrumbs: How many breadcrumbs a scope keeps. Capped at
            100; a negative value disables breadcrumbs.

        :param shutdown_timeout: Seconds `flush()` and `close()` wait by
            default.

        :param sample_rate: Probability in ``[0, 1]`` that an error event is
            kept.

        :param traces_sample_rate: Probability in ``[0, 1]`` that a trace root
            is kept. ``None`` together with no `traces_sampler` disables
            tracing.

        :param traces_sampler: Called once per trace root with the sampling
            context; returns a bool or a rate in ``[0, 1]``.

        :param before_send: Called with every error event and its hint; may
            modify the event or drop it by returning ``None``.

        :param before_send_transaction: Same as `before_send` for transactions.

        :param ignore_errors: Exception classes (matched with ``issubclass``)
            or regular expressions (searched in the event message and in the
            exception type and value).

        :param ignore_transactions: Regular expressions searched in the
            transaction name.

        :param enable_logs: Turns on the `tracehub.logger` channel.

        :param transport: A `Transport` instance or subclass, or a function
            called with every event.

        :param batch_size: Items per batch and capacity of each emitter queue.

        :param batch_timeout: Seconds a partial batch waits before it is sent.

        :param overflow_policy: ``"drop_newest"`` rejects items when the
            emitter queue is full, ``"block"`` waits up to `block_timeout`.
        """
        pass


def _get_default_options():
    # type: () -> Dict[str, Any]
    import inspect

    a = inspect.getfullargspec(ClientConstructor.__init__)
    defaults = a.defaults or ()
    kwonlydefaults = a.kwonlydefaults or {}

    return dict(
        itertools.chain(
            zip(a.args[-len(defaults) :], defaults),
            kwonlydefaults.items(),
        )
    )


DEFAULT_OPTIONS = _get_default_options()
del _get_default_options


VERSION = "0.4.0"
SDK_INFO = {
    "name": "tracehub.python",
    "version": VERSION,
    "packages": [{"name": "pypi:tracehub", "version": VERSION}],
}
