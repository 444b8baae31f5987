import uuid
from datetime import timedelta

import tracehub
from tracehub.consts import SPANSTATUS
from tracehub.tracing_utils import (
    BAGGAGE_HEADER_NAME,
    SENTRY_TRACE_HEADER_NAME,
    Baggage,
    extract_sentrytrace_data,
    get_span_status_from_http_code,
)
from tracehub.utils import logger, now, utc_now

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime
    from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

    from tracehub._types import Event, SamplingContext


TRANSACTION_SOURCE_CUSTOM = "custom"


class _SpanRecorder:
    """Limits the number of spans recorded in a transaction."""

    __slots__ = ("maxlen", "spans")

    def __init__(self, maxlen: int) -> None:
        self.maxlen = maxlen
        self.spans: "List[Span]" = []

    def add(self, span: "Span") -> None:
        if len(self.spans) < self.maxlen:
            self.spans.append(span)


class Span:
    __slots__ = (
        "trace_id",
        "span_id",
        "parent_span_id",
        "same_process_as_parent",
        "sampled",
        "op",
        "description",
        "start_timestamp",
        "_start_timestamp_monotonic",
        "status",
        "timestamp",
        "_tags",
        "_data",
        "_span_recorder",
        "hub",
        "_context_manager_state",
        "_containing_transaction",
    )

    def __init__(
        self,
        trace_id: "Optional[str]" = None,
        span_id: "Optional[str]" = None,
        parent_span_id: "Optional[str]" = None,
        same_process_as_parent: bool = True,
        sampled: "Optional[bool]" = None,
        op: "Optional[str]" = None,
        description: "Optional[str]" = None,
        hub: "Optional[tracehub.Hub]" = None,
        status: "Optional[str]" = None,
        containing_transaction: "Optional[Transaction]" = None,
        start_timestamp: "Optional[datetime]" = None,
    ) -> None:
        self.trace_id = trace_id or uuid.uuid4().hex
        self.span_id = span_id or uuid.uuid4().hex[16:]
        self.parent_span_id = parent_span_id
        self.same_process_as_parent = same_process_as_parent
        self.sampled = sampled
        self.op = op
        self.description = description
        self.status = status
        self.hub = hub
        self._tags: "Dict[str, str]" = {}
        self._data: "Dict[str, Any]" = {}
        self._containing_transaction = containing_transaction
        self.start_timestamp = start_timestamp or utc_now()
        self._start_timestamp_monotonic = now()

        #: End timestamp of span
        self.timestamp: "Optional[datetime]" = None

        self._span_recorder: "Optional[_SpanRecorder]" = None

    def init_span_recorder(self, maxlen: int) -> None:
        if self._span_recorder is None:
            self._span_recorder = _SpanRecorder(maxlen)

    def __repr__(self) -> str:
        return (
            "<%s(op=%r, description:%r, trace_id=%r, span_id=%r, parent_span_id=%r, sampled=%r)>"
            % (
                self.__class__.__name__,
                self.op,
                self.description,
                self.trace_id,
                self.span_id,
                self.parent_span_id,
                self.sampled,
            )
        )

    def __enter__(self) -> "Span":
        hub = self.hub or tracehub.Hub.current

        scope = hub.scope
        old_span = scope.span
        scope.span = self
        self._context_manager_state = (hub, scope, old_span)
        return self

    def __exit__(
        self, ty: "Optional[Any]", value: "Optional[Any]", tb: "Optional[Any]"
    ) -> None:
        if value is not None:
            self.set_status(SPANSTATUS.INTERNAL_ERROR)

        hub, scope, old_span = self._context_manager_state
        del self._context_manager_state

        self.finish(hub)
        scope.span = old_span

    @property
    def containing_transaction(self) -> "Optional[Transaction]":
        # this is a getter rather than a regular attribute so that transactions
        # can return `self` here instead (as a way to prevent them circularly
        # referencing themselves)
        return self._containing_transaction

    def start_child(self, **kwargs: "Any") -> "Span":
        """
        Start a sub-span from the current span or transaction.

        Takes the same arguments as the initializer of :py:class:`Span`. The
        trace id, sampling decision, transaction pointer, and span recorder are
        inherited from the current span/transaction.
        """
        kwargs.setdefault("sampled", self.sampled)
        kwargs.setdefault("hub", self.hub)

        child = Span(
            trace_id=self.trace_id,
            parent_span_id=self.span_id,
            containing_transaction=self.containing_transaction,
            **kwargs
        )

        span_recorder = (
            self.containing_transaction and self.containing_transaction._span_recorder
        )
        if span_recorder:
            span_recorder.add(child)
        return child

    def iter_headers(self) -> "Iterator[Tuple[str, str]]":
        """Yields the headers that continue this trace in another service."""
        yield SENTRY_TRACE_HEADER_NAME, self.to_traceparent()

        transaction = self.containing_transaction
        if transaction is not None:
            baggage = transaction.get_baggage().serialize()
            if baggage:
                yield BAGGAGE_HEADER_NAME, baggage

    def to_traceparent(self) -> str:
        sampled = ""
        if self.sampled is True:
            sampled = "1"
        if self.sampled is False:
            sampled = "0"
        return "%s-%s-%s" % (self.trace_id, self.span_id, sampled)

    def set_tag(self, key: str, value: "Any") -> None:
        self._tags[key] = value

    def set_data(self, key: str, value: "Any") -> None:
        self._data[key] = value

    def set_status(self, value: str) -> None:
        self.status = value

    def set_http_status(self, http_status: int) -> None:
        self.set_tag("http.status_code", str(http_status))
        self.set_status(get_span_status_from_http_code(http_status))

    def is_success(self) -> bool:
        return self.status == SPANSTATUS.OK

    def finish(
        self,
        hub: "Optional[tracehub.Hub]" = None,
        end_timestamp: "Optional[datetime]" = None,
    ) -> "Optional[str]":
        if self.timestamp is not None:
            # This span is already finished, ignore.
            return None

        if end_timestamp:
            self.timestamp = end_timestamp
        else:
            elapsed = now() - self._start_timestamp_monotonic
            self.timestamp = self.start_timestamp + timedelta(seconds=elapsed)

        return None

    def to_json(self) -> "Dict[str, Any]":
        rv: "Dict[str, Any]" = {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "same_process_as_parent": self.same_process_as_parent,
            "op": self.op,
            "description": self.description,
            "start_timestamp": self.start_timestamp,
            "timestamp": self.timestamp,
        }

        if self.status:
            rv["status"] = self.status

        tags = self._tags
        if tags:
            rv["tags"] = tags

        data = self._data
        if data:
            rv["data"] = data

        return rv

    def get_trace_context(self) -> "Dict[str, Any]":
        rv: "Dict[str, Any]" = {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "op": self.op,
            "description": self.description,
        }
        if self.status:
            rv["status"] = self.status

        return rv


class Transaction(Span):
    """The root span of a trace in this process. Finishing it sends one
    transaction event with all of its finished child spans."""

    __slots__ = (
        "name",
        "source",
        "parent_sampled",
        "sample_rate",
        "_measurements",
        "_contexts",
        "_baggage",
    )

    def __init__(
        self,
        name: str = "",
        parent_sampled: "Optional[bool]" = None,
        source: str = TRANSACTION_SOURCE_CUSTOM,
        baggage: "Optional[Baggage]" = None,
        **kwargs: "Any"
    ) -> None:
        Span.__init__(self, **kwargs)

        self.name = name
        self.source = source
        self.sample_rate: "Optional[float]" = None
        self.parent_sampled = parent_sampled
        self._measurements: "Dict[str, Any]" = {}
        self._contexts: "Dict[str, Any]" = {}
        self._baggage = baggage

    def __repr__(self) -> str:
        return (
            "<%s(name=%r, op=%r, trace_id=%r, span_id=%r, parent_span_id=%r, sampled=%r, source=%r)>"
            % (
                self.__class__.__name__,
                self.name,
                self.op,
                self.trace_id,
                self.span_id,
                self.parent_span_id,
                self.sampled,
                self.source,
            )
        )

    @property
    def containing_transaction(self) -> "Transaction":
        # Transactions (as spans) belong to themselves (as transactions).
        return self

    @classmethod
    def continue_from_headers(
        cls, headers: "Mapping[str, str]", **kwargs: "Any"
    ) -> "Transaction":
        """
        Create a transaction with the given params, continuing the trace
        found in the incoming 'sentry-trace' and 'baggage' headers (if any).
        """
        baggage = Baggage.from_incoming_header(headers.get(BAGGAGE_HEADER_NAME))
        kwargs["baggage"] = baggage

        sentrytrace_kwargs = extract_sentrytrace_data(
            headers.get(SENTRY_TRACE_HEADER_NAME)
        )

        if sentrytrace_kwargs is not None:
            kwargs.update(sentrytrace_kwargs)

            # Without incoming sentry baggage this process is not the head of
            # the trace and leaves the sampling context empty
            baggage.freeze()

        transaction = cls(**kwargs)
        transaction.same_process_as_parent = sentrytrace_kwargs is None

        return transaction

    def finish(
        self,
        hub: "Optional[tracehub.Hub]" = None,
        end_timestamp: "Optional[datetime]" = None,
    ) -> "Optional[str]":
        if self.timestamp is not None:
            # This transaction is already finished, ignore.
            return None

        hub = hub or self.hub or tracehub.Hub.current
        client = hub.client

        if client is None:
            # We have no client and therefore nowhere to send this transaction.
            return None

        if not self.name:
            logger.warning(
                "Transaction has no name, falling back to `<unlabeled transaction>`."
            )
            self.name = "<unlabeled transaction>"

        Span.finish(self, hub, end_timestamp)

        if self.sampled is None:
            # At this point a `sampled = None` should have already been
            # resolved to a concrete decision.
            logger.warning("Discarding transaction without sampling decision.")

        finished_spans = []
        if self.sampled and self._span_recorder is not None:
            finished_spans = [
                span.to_json()
                for span in self._span_recorder.spans
                if span.timestamp is not None
            ]

        # break the circular reference of transaction -> span recorder ->
        # span -> containing transaction
        self._span_recorder = None

        contexts = {}
        contexts.update(self._contexts)
        trace_context = self.get_trace_context()
        trace_context["dynamic_sampling_context"] = (
            self.get_baggage().dynamic_sampling_context()
        )
        contexts["trace"] = trace_context

        event: "Event" = {
            "type": "transaction",
            "transaction": self.name,
            "transaction_info": {"source": self.source},
            "contexts": contexts,
            "tags": self._tags,
            "timestamp": self.timestamp,
            "start_timestamp": self.start_timestamp,
            "spans": finished_spans,
        }

        if self._measurements:
            event["measurements"] = self._measurements

        # The sampling decision travels with the event; unsampled
        # transactions are dropped by the client and counted as lost.
        return hub.capture_event(event, hint={"sampled": bool(self.sampled)})

    def get_baggage(self) -> "Baggage":
        """Returns the baggage of this trace. The first call on the head of
        the trace fills in the dynamic sampling context and freezes it."""
        if self._baggage is None or self._baggage.mutable:
            self._baggage = Baggage.populate_from_transaction(self)
        return self._baggage

    def set_measurement(self, name: str, value: float, unit: str = "") -> None:
        self._measurements[name] = {"value": value, "unit": unit}

    def set_context(self, key: str, value: "Any") -> None:
        self._contexts[key] = value

    def to_json(self) -> "Dict[str, Any]":
        rv = super(Transaction, self).to_json()

        rv["name"] = self.name
        rv["source"] = self.source
        rv["sampled"] = self.sampled

        return rv

    def _set_initial_sampling_decision(
        self, sampling_context: "SamplingContext"
    ) -> None:
        """
        Sets the transaction's sampling decision, according to the following
        precedence rules:

        1. A sampling decision passed to `start_transaction`
        (`start_transaction(name="my transaction", sampled=True)`) is used
        regardless of anything else.

        2. A decision inherited from an incoming `sentry-trace` header is
        used as is; the local sampler is not consulted.

        3. Otherwise the client's sampler decides, either through
        `traces_sampler` or with `traces_sample_rate`.
        """
        hub = self.hub or tracehub.Hub.current
        client = hub.client
        transaction_description = "{op}transaction <{name}>".format(
            op=("<" + self.op + "> " if self.op else ""), name=self.name
        )

        # nothing to do if there's no client or if tracing is disabled
        if client is None or client.sampler is None:
            self.sampled = False
            return

        if self.sampled is not None:
            self.sample_rate = float(self.sampled)
            return

        if self.parent_sampled is not None:
            self.sampled = self.parent_sampled
            self.sample_rate = float(self.parent_sampled)
            logger.debug(
                "[Tracing] Inheriting sampled=%s for %s from the incoming trace",
                self.sampled,
                transaction_description,
            )
            return

        self.sampled, self.sample_rate = client.sampler.sample(sampling_context)

        if self.sampled:
            logger.debug("[Tracing] Starting %s", transaction_description)
        else:
            logger.debug(
                "[Tracing] Discarding %s because it's not included in the random sample (sampling rate = %s)",
                transaction_description,
                self.sample_rate,
            )


class NoOpSpan(Span):
    """Returned when there is nothing to record the span for."""

    def __repr__(self) -> str:
        return self.__class__.__name__

    def start_child(self, **kwargs: "Any") -> "NoOpSpan":
        return NoOpSpan()

    def set_tag(self, key: str, value: "Any") -> None:
        pass

    def set_data(self, key: str, value: "Any") -> None:
        pass

    def set_status(self, value: str) -> None:
        pass

    def set_http_status(self, http_status: int) -> None:
        pass

    def finish(
        self,
        hub: "Optional[tracehub.Hub]" = None,
        end_timestamp: "Optional[datetime]" = None,
    ) -> "Optional[str]":
        pass
