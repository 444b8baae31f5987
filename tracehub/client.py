import os
import random
import uuid

from tracehub._log_batcher import LogBatcher
from tracehub._metrics_batcher import MetricsBatcher
from tracehub.consts import (
    DEFAULT_OPTIONS,
    OVERFLOW_POLICIES,
    SDK_INFO,
    ClientConstructor,
    DataCategory,
)
from tracehub.debug import _client_init_debug
from tracehub.integrations import setup_integrations
from tracehub.scope import global_event_processors
from tracehub.tracing_utils import is_valid_sample_rate, make_sampler
from tracehub.transport import make_transport
from tracehub.utils import (
    Dsn,
    capture_internal_exceptions,
    compile_patterns,
    env_to_bool,
    get_default_server_name,
    get_type_name,
    logger,
    match_regex_list,
    now,
    safe_str,
    utc_now,
)

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import threading
    from typing import Any, Dict, List, Optional, Type, Union

    from tracehub._log_batcher import ItemBatcher
    from tracehub._types import Event, Hint, Log, Metric
    from tracehub.integrations import Integration
    from tracehub.scope import Scope


def _get_options(*args: "Optional[str]", **kwargs: "Any") -> "Dict[str, Any]":
    if args and (isinstance(args[0], (bytes, str)) or args[0] is None):
        dsn: "Optional[str]" = args[0]
        args = args[1:]
    else:
        dsn = None

    if len(args) > 1:
        raise TypeError("Only single positional argument is expected")

    rv = dict(DEFAULT_OPTIONS)
    options = dict(*args, **kwargs)
    if dsn is not None and options.get("dsn") is None:
        options["dsn"] = dsn

    for key, value in options.items():
        if key not in rv:
            raise TypeError("Unknown option %r" % (key,))
        rv[key] = value

    if rv["dsn"] is None:
        rv["dsn"] = os.environ.get("TRACEHUB_DSN")

    if rv["release"] is None:
        rv["release"] = os.environ.get("TRACEHUB_RELEASE")

    if rv["environment"] is None:
        rv["environment"] = os.environ.get("TRACEHUB_ENVIRONMENT")

    if rv["debug"] is None:
        rv["debug"] = env_to_bool(os.environ.get("TRACEHUB_DEBUG")) or False

    if rv["server_name"] is None:
        rv["server_name"] = get_default_server_name()

    return rv


def _validate_options(options: "Dict[str, Any]") -> None:
    if options["dsn"]:
        # raises BadDsn
        Dsn(options["dsn"])

    if not is_valid_sample_rate(options["sample_rate"]):
        raise ValueError(
            "sample_rate must be a number between 0 and 1, got %r"
            % (options["sample_rate"],)
        )

    batch_size = options["batch_size"]
    if (
        isinstance(batch_size, bool)
        or not isinstance(batch_size, int)
        or batch_size < 1
    ):
        raise ValueError(
            "batch_size must be a positive integer, got %r" % (batch_size,)
        )

    if not options["batch_timeout"] > 0:
        raise ValueError(
            "batch_timeout must be positive, got %r" % (options["batch_timeout"],)
        )

    if options["overflow_policy"] not in OVERFLOW_POLICIES:
        raise ValueError(
            "Unknown overflow_policy %r, expected one of %s"
            % (options["overflow_policy"], ", ".join(OVERFLOW_POLICIES))
        )

    block_timeout = options["block_timeout"]
    if block_timeout is not None and block_timeout < 0:
        raise ValueError(
            "block_timeout must not be negative, got %r" % (block_timeout,)
        )


class _Client:
    """The client is internally responsible for capturing the events and
    forwarding them through the configured transport.  It takes the client
    options as keyword arguments and optionally the DSN as first argument.

    Configuration errors (an invalid DSN, sample rate or batching option)
    are raised from the constructor.
    """

    def __init__(self, *args: "Any", **kwargs: "Any") -> None:
        self.options = options = get_options(*args, **kwargs)
        token = _client_init_debug.set(bool(options["debug"]))
        try:
            _validate_options(options)

            self._ignore_error_types = tuple(
                x for x in options["ignore_errors"] if isinstance(x, type)
            )
            self._ignore_error_names = [
                x for x in options["ignore_errors"] if isinstance(x, str)
            ]
            self._ignore_error_patterns = compile_patterns(
                self._ignore_error_names, "ignore_errors"
            )
            self._ignore_transaction_patterns = compile_patterns(
                options["ignore_transactions"], "ignore_transactions"
            )

            self.sampler = make_sampler(options)
            self.transport = make_transport(options)

            self.log_batcher: "Optional[LogBatcher]" = None
            self.metrics_batcher: "Optional[MetricsBatcher]" = None
            if self.transport is not None:
                batch_options = {
                    "batch_size": options["batch_size"],
                    "batch_timeout": options["batch_timeout"],
                    "overflow_policy": options["overflow_policy"],
                    "block_timeout": options["block_timeout"],
                }
                if options["enable_logs"]:
                    self.log_batcher = LogBatcher(
                        self.transport.capture_envelope,
                        self.transport.record_lost_event,
                        **batch_options
                    )
                if options["enable_metrics"]:
                    self.metrics_batcher = MetricsBatcher(
                        self.transport.capture_envelope,
                        self.transport.record_lost_event,
                        **batch_options
                    )

            self.integrations = setup_integrations(
                options["integrations"], with_defaults=options["default_integrations"]
            )

            if self.transport is None:
                logger.debug("No DSN and no transport configured, client is inactive")
            else:
                logger.debug(
                    "Client initialized with transport %s",
                    type(self.transport).__name__,
                )
        finally:
            _client_init_debug.reset(token)

    @property
    def dsn(self) -> "Optional[str]":
        """Returns the configured DSN as string."""
        return self.options["dsn"]

    def is_active(self) -> bool:
        """Returns whether the client can still send data."""
        return self.transport is not None

    def get_integration(
        self, name_or_class: "Union[str, Type[Integration]]"
    ) -> "Optional[Integration]":
        """Returns the integration for this client by name or class.
        If the client does not have that integration then `None` is returned.
        """
        if isinstance(name_or_class, str):
            integration_name = name_or_class
        elif name_or_class.identifier is not None:
            integration_name = name_or_class.identifier
        else:
            raise ValueError("Integration has no name")

        return self.integrations.get(integration_name)

    def _record_lost(self, reason: str, data_category: str) -> None:
        transport = self.transport
        if transport is not None:
            transport.record_lost_event(reason, data_category=data_category)

    def _fill_defaults(self, event: "Event") -> None:
        for key in "release", "environment", "server_name", "dist":
            if event.get(key) is None and self.options[key] is not None:
                event[key] = str(self.options[key]).strip()  # type: ignore
        if event.get("sdk") is None:
            sdk_info = dict(SDK_INFO)
            sdk_info["integrations"] = sorted(self.integrations.keys())
            event["sdk"] = sdk_info

        if event.get("platform") is None:
            event["platform"] = "python"

    def _run_global_processors(
        self, event: "Event", hint: "Hint"
    ) -> "Optional[Event]":
        for event_processor in list(global_event_processors):
            new_event = event
            with capture_internal_exceptions():
                new_event = event_processor(event, hint)
            if new_event is None:
                logger.info("event processor (%s) dropped event", event_processor)
                return None
            event = new_event
        return event

    def _is_ignored_error(self, event: "Event", hint: "Hint") -> bool:
        exc_info = hint.get("exc_info")
        if exc_info is not None and exc_info[0] is not None:
            exc_type = exc_info[0]
            if self._ignore_error_types and issubclass(
                exc_type, self._ignore_error_types
            ):
                return True

            type_name = get_type_name(exc_type)
            full_name = "%s.%s" % (exc_type.__module__, type_name)
            # String entries also match the plain or qualified type name.
            for name in self._ignore_error_names:
                if name == full_name or name == type_name:
                    return True

        if not self._ignore_error_patterns:
            return False

        candidates = []
        message = event.get("message")
        if message:
            candidates.append(message)
        logentry = event.get("logentry")
        if logentry and logentry.get("message"):
            candidates.append(logentry["message"])
        for exception in (event.get("exception") or {}).get("values") or ():
            candidates.append(
                "%s: %s" % (exception.get("type"), exception.get("value") or "")
            )

        for candidate in candidates:
            if match_regex_list(safe_str(candidate), self._ignore_error_patterns):
                return True

        return False

    def _is_ignored_transaction(self, event: "Event") -> bool:
        name = event.get("transaction")
        if not name or not self._ignore_transaction_patterns:
            return False
        return match_regex_list(name, self._ignore_transaction_patterns)

    def _run_before_send(
        self, event: "Event", hint: "Hint", ty: "Optional[str]"
    ) -> "Optional[Event]":
        if ty == "transaction":
            hook_name = "before_send_transaction"
        elif ty == "check_in":
            hook_name = "before_send_check_in"
        else:
            hook_name = "before_send"

        hook = self.options[hook_name]
        if hook is None:
            return event

        new_event = None
        with capture_internal_exceptions():
            new_event = hook(event, hint)
        if new_event is None:
            logger.info("%s dropped event (%s)", hook_name.replace("_", " "), event)
        return new_event

    def capture_event(
        self,
        event: "Event",
        hint: "Optional[Hint]" = None,
        scope: "Optional[Scope]" = None,
    ) -> "Optional[str]":
        """Captures an event.

        This takes the ready made event and an optional hint and scope.  The
        hint is internally used to further customize the representation of the
        error.  When provided it's a dictionary of optional information such
        as exception info.

        The event passes through a fixed sequence of stages: scope
        application, global event processors, ignore filters, sampling and
        the `before_send` hooks. Any of them may drop it. Returns the event ID
        when the event was handed to the transport, otherwise `None`.
        """
        transport = self.transport
        if transport is None:
            return None

        hint = dict(hint or ())
        ty = event.get("type")
        if ty == "transaction":
            data_category = DataCategory.TRANSACTION
        elif ty == "check_in":
            data_category = DataCategory.MONITOR
        else:
            data_category = DataCategory.ERROR

        rv = event.get("event_id")
        if rv is None:
            event["event_id"] = rv = uuid.uuid4().hex
        if event.get("timestamp") is None:
            event["timestamp"] = utc_now()

        if scope is not None:
            event_ = scope.apply_to_event(event, hint, self.options)
            if event_ is None:
                self._record_lost("event_processor", data_category)
                return None
            event = event_

        self._fill_defaults(event)

        event_ = self._run_global_processors(event, hint)
        if event_ is None:
            self._record_lost("event_processor", data_category)
            return None
        event = event_

        if ty == "transaction":
            if self._is_ignored_transaction(event):
                logger.info(
                    "Transaction %r matches ignore_transactions",
                    event.get("transaction"),
                )
                transport.record_lost_event("ignored", data_category=data_category)
                return None
        elif ty != "check_in" and self._is_ignored_error(event, hint):
            logger.info("Event %s matches ignore_errors", rv)
            transport.record_lost_event("ignored", data_category=data_category)
            return None

        if ty == "transaction":
            if not hint.get("sampled", True):
                logger.info("Discarding transaction %s because it was not sampled", rv)
                self._record_lost("sample_rate", data_category)
                return None
        elif ty != "check_in":
            sample_rate = self.options["sample_rate"]
            if sample_rate < 1.0 and random.random() >= sample_rate:
                logger.info("Discarding event %s because of sample_rate", rv)
                self._record_lost("sample_rate", data_category)
                return None

        event_ = self._run_before_send(event, hint, ty)
        if event_ is None:
            self._record_lost("before_send", data_category)
            return None
        event = event_

        transport.capture_event(event)
        return rv

    def _common_attributes(self) -> "Dict[str, Any]":
        attributes: "Dict[str, Any]" = {
            "sentry.sdk.name": SDK_INFO["name"],
            "sentry.sdk.version": SDK_INFO["version"],
        }
        for key, attribute in (
            ("environment", "sentry.environment"),
            ("release", "sentry.release"),
            ("server_name", "server.address"),
        ):
            if self.options[key] is not None:
                attributes[attribute] = self.options[key]
        return attributes

    def _apply_trace(self, item: "Any", scope: "Optional[Scope]") -> None:
        span = scope.span if scope is not None else None
        if span is not None:
            item["trace_id"] = span.trace_id
            item["span_id"] = span.span_id

    def capture_log(self, log: "Log", scope: "Optional[Scope]" = None) -> None:
        """Runs a log record through `before_send_log` and queues it for the
        next log batch."""
        transport = self.transport
        log_batcher = self.log_batcher
        if transport is None or log_batcher is None:
            return

        for key, value in self._common_attributes().items():
            log["attributes"].setdefault(key, value)
        self._apply_trace(log, scope)

        before_send_log = self.options["before_send_log"]
        if before_send_log is not None:
            new_log = None
            with capture_internal_exceptions():
                new_log = before_send_log(log, {})
            if new_log is None:
                logger.info("before send log dropped log (%s)", log["body"])
                self._record_lost("before_send", DataCategory.LOG_ITEM)
                return
            log = new_log

        if transport.is_rate_limited(DataCategory.LOG_ITEM):
            logger.info("Rate limited, skipping log")
            self._record_lost("ratelimit_backoff", DataCategory.LOG_ITEM)
            return

        log_batcher.add(log)

    def capture_metric(self, metric: "Metric", scope: "Optional[Scope]" = None) -> None:
        """Runs a metric through `before_send_metric` and queues it for the
        next metrics batch."""
        transport = self.transport
        metrics_batcher = self.metrics_batcher
        if transport is None or metrics_batcher is None:
            return

        for key, value in self._common_attributes().items():
            metric["attributes"].setdefault(key, value)
        self._apply_trace(metric, scope)

        before_send_metric = self.options["before_send_metric"]
        if before_send_metric is not None:
            new_metric = None
            with capture_internal_exceptions():
                new_metric = before_send_metric(metric, {})
            if new_metric is None:
                logger.info("before send metric dropped metric (%s)", metric["name"])
                self._record_lost("before_send", DataCategory.TRACE_METRIC)
                return
            metric = new_metric

        if transport.is_rate_limited(DataCategory.TRACE_METRIC):
            logger.info("Rate limited, skipping metric")
            self._record_lost("ratelimit_backoff", DataCategory.TRACE_METRIC)
            return

        metrics_batcher.add(metric)

    def _batchers(self) -> "List[ItemBatcher]":
        return [b for b in (self.log_batcher, self.metrics_batcher) if b is not None]

    def _flush(
        self,
        deadline: "Optional[float]",
        cancel: "Optional[threading.Event]" = None,
    ) -> bool:
        def remaining() -> "Optional[float]":
            if deadline is None:
                return None
            return max(0.0, deadline - now())

        transport = self.transport
        if transport is None:
            return True

        # Batchers hand their batches to the transport, so they go first.
        flushed = True
        for batcher in self._batchers():
            flushed = batcher.flush(remaining(), cancel) and flushed

        return transport.flush(remaining(), cancel) and flushed

    def flush(
        self,
        timeout: "Optional[float]" = None,
        cancel: "Optional[threading.Event]" = None,
    ) -> bool:
        """
        Wait `timeout` seconds for the current events to be sent. If no
        `timeout` is provided, the `shutdown_timeout` option value is used.

        Returns whether everything was sent before the timeout.
        """
        if timeout is None:
            timeout = self.options["shutdown_timeout"]
        return self._flush(now() + timeout, cancel)

    def flush_with_context(self, cancel: "threading.Event") -> bool:
        """Like `flush` but waits until everything is sent or ``cancel`` is
        set, whichever comes first."""
        return self._flush(None, cancel)

    def close(self, timeout: "Optional[float]" = None) -> None:
        """
        Close the client and shut down the transport. Arguments have the same
        semantics as `self.flush()`. Closing twice has no further effect.
        """
        transport = self.transport
        if transport is None:
            return

        if timeout is None:
            timeout = self.options["shutdown_timeout"]
        deadline = now() + timeout

        for batcher in self._batchers():
            batcher.shutdown(max(0.0, deadline - now()))

        transport.close(max(0.0, deadline - now()))
        self.transport = None

    def __enter__(self) -> "_Client":
        return self

    def __exit__(self, exc_type: "Any", exc_value: "Any", tb: "Any") -> None:
        self.close()


if TYPE_CHECKING:
    # Make mypy, PyCharm and other static analyzers think `get_options` is a
    # type to have nicer autocompletion for params.
    #
    # Use `ClientConstructor` to define the argument types of `init` and
    # `Dict[str, Any]` to tell static analyzers about the return type.

    class get_options(ClientConstructor, Dict[str, Any]):  # noqa: N801
        pass

    class Client(ClientConstructor, _Client):
        pass

else:
    # Alias `get_options` for actual usage. Go through the lambda indirection
    # to throw PyCharm off of the weakly typed signature (it would otherwise
    # discover both the weakly typed signature of `_init` and our faked `init`
    # type).

    get_options = (lambda: _get_options)()
    Client = (lambda: _Client)()
