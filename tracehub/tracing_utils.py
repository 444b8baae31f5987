import math
import random
import re
from numbers import Real
from urllib.parse import quote, unquote

import tracehub
from tracehub.consts import SPANSTATUS
from tracehub.utils import Dsn, capture_internal_exceptions, logger

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Dict, Optional, Tuple, Union

    from tracehub._types import SamplingContext, TracesSampler
    from tracehub.tracing import Transaction


SENTRY_TRACE_HEADER_NAME = "sentry-trace"
BAGGAGE_HEADER_NAME = "baggage"

# Transaction names from these sources are not propagated
LOW_QUALITY_TRANSACTION_SOURCES = ("url",)

SENTRY_TRACE_REGEX = re.compile(
    "^[ \t]*"  # whitespace
    "([0-9a-f]{32})?"  # trace_id
    "-?([0-9a-f]{16})?"  # span_id
    "-?([01])?"  # sampled
    "[ \t]*$"  # whitespace
)


def has_tracing_enabled(options: "Optional[Dict[str, Any]]") -> bool:
    """
    Returns True if either traces_sample_rate or traces_sampler is
    defined.
    """
    if options is None:
        return False

    return bool(
        options.get("traces_sample_rate") is not None
        or options.get("traces_sampler") is not None
    )


def is_valid_sample_rate(rate: "Any") -> bool:
    """
    Checks the given sample rate to make sure it is a boolean or a number
    between 0 and 1 (inclusive).
    """
    if not isinstance(rate, Real):
        return False
    if math.isnan(rate):
        return False
    return 0 <= rate <= 1


def extract_sentrytrace_data(
    header: "Optional[str]",
) -> "Optional[Dict[str, Union[str, bool, None]]]":
    """
    Given a `sentry-trace` header string, return a dictionary of data.
    """
    if not header:
        return None

    if header.startswith("00-") and header.endswith("-00"):
        header = header[3:-3]

    match = SENTRY_TRACE_REGEX.match(header)
    if not match:
        return None

    trace_id, parent_span_id, sampled_str = match.groups()
    parent_sampled = None

    if trace_id:
        trace_id = "{:032x}".format(int(trace_id, 16))
    if parent_span_id:
        parent_span_id = "{:016x}".format(int(parent_span_id, 16))
    if sampled_str:
        parent_sampled = sampled_str != "0"

    return {
        "trace_id": trace_id,
        "parent_span_id": parent_span_id,
        "parent_sampled": parent_sampled,
    }


class Baggage:
    """
    The W3C Baggage header information (see https://www.w3.org/TR/baggage/).

    The ``sentry-`` prefixed members form the dynamic sampling context of a
    trace. Once the head of the trace has fixed them the baggage is frozen
    and passed on unchanged.
    """

    __slots__ = ("sentry_items", "third_party_items", "mutable")

    SENTRY_PREFIX = "sentry-"
    SENTRY_PREFIX_REGEX = re.compile("^sentry-")

    def __init__(
        self,
        sentry_items: "Dict[str, str]",
        third_party_items: str = "",
        mutable: bool = True,
    ) -> None:
        self.sentry_items = sentry_items
        self.third_party_items = third_party_items
        self.mutable = mutable

    @classmethod
    def from_incoming_header(cls, header: "Optional[str]") -> "Baggage":
        """
        freeze if incoming header already has sentry baggage
        """
        sentry_items = {}
        third_party_items = ""
        mutable = True

        if header:
            for item in header.split(","):
                if "=" not in item:
                    continue

                with capture_internal_exceptions():
                    item = item.strip()
                    key, val = item.split("=", 1)
                    if Baggage.SENTRY_PREFIX_REGEX.match(key):
                        baggage_key = unquote(key[len(Baggage.SENTRY_PREFIX) :])
                        sentry_items[baggage_key] = unquote(val.strip())
                        mutable = False
                    else:
                        third_party_items += ("," if third_party_items else "") + item

        return Baggage(sentry_items, third_party_items, mutable)

    @classmethod
    def populate_from_transaction(cls, transaction: "Transaction") -> "Baggage":
        """
        Populate fresh baggage entry with sentry_items and make it immutable
        if this is the head SDK which originates traces.
        """
        hub = transaction.hub or tracehub.Hub.current
        client = hub.client
        sentry_items: "Dict[str, str]" = {}

        if client is None:
            return Baggage(sentry_items)

        options = client.options

        sentry_items["trace_id"] = transaction.trace_id

        if options.get("environment"):
            sentry_items["environment"] = options["environment"]

        if options.get("release"):
            sentry_items["release"] = options["release"]

        if options.get("dsn"):
            sentry_items["public_key"] = Dsn(options["dsn"]).public_key

        if (
            transaction.name
            and transaction.source not in LOW_QUALITY_TRANSACTION_SOURCES
        ):
            sentry_items["transaction"] = transaction.name

        if transaction.sample_rate is not None:
            sentry_items["sample_rate"] = str(transaction.sample_rate)

        if transaction.sampled is not None:
            sentry_items["sampled"] = "true" if transaction.sampled else "false"

        # Sentry items a caller put on mutable baggage take precedence
        if transaction._baggage and transaction._baggage.sentry_items:
            sentry_items.update(transaction._baggage.sentry_items)

        third_party_items = ""
        if transaction._baggage is not None:
            third_party_items = transaction._baggage.third_party_items

        return Baggage(sentry_items, third_party_items, mutable=False)

    def freeze(self) -> None:
        self.mutable = False

    def dynamic_sampling_context(self) -> "Dict[str, str]":
        return dict(self.sentry_items)

    def serialize(self, include_third_party: bool = False) -> str:
        items = []

        for key, val in self.sentry_items.items():
            with capture_internal_exceptions():
                item = Baggage.SENTRY_PREFIX + quote(key) + "=" + quote(str(val))
                items.append(item)

        if include_third_party and self.third_party_items:
            items.append(self.third_party_items)

        return ",".join(items)

    def __repr__(self) -> str:
        return '<Baggage "%s", mutable=%s>' % (
            self.serialize(include_third_party=True),
            self.mutable,
        )


def get_span_status_from_http_code(http_status_code: int) -> str:
    """
    Returns the span status corresponding to the given HTTP status code.
    """
    if http_status_code < 400:
        return SPANSTATUS.OK

    elif 400 <= http_status_code < 500:
        if http_status_code == 403:
            return SPANSTATUS.PERMISSION_DENIED
        elif http_status_code == 404:
            return SPANSTATUS.NOT_FOUND
        elif http_status_code == 429:
            return SPANSTATUS.RESOURCE_EXHAUSTED
        elif http_status_code == 413:
            return SPANSTATUS.FAILED_PRECONDITION
        elif http_status_code == 401:
            return SPANSTATUS.UNAUTHENTICATED
        elif http_status_code == 409:
            return SPANSTATUS.ALREADY_EXISTS
        else:
            return SPANSTATUS.INVALID_ARGUMENT

    elif 500 <= http_status_code < 600:
        if http_status_code == 504:
            return SPANSTATUS.DEADLINE_EXCEEDED
        elif http_status_code == 501:
            return SPANSTATUS.UNIMPLEMENTED
        elif http_status_code == 503:
            return SPANSTATUS.UNAVAILABLE
        else:
            return SPANSTATUS.INTERNAL_ERROR

    return SPANSTATUS.UNKNOWN_ERROR


class Sampler:
    """Decides whether a new trace is kept. Asked once per trace root."""

    def sample(
        self, sampling_context: "SamplingContext"
    ) -> "Tuple[bool, Optional[float]]":
        """Returns the decision together with the rate it was taken at."""
        raise NotImplementedError()


class FixedRateSampler(Sampler):
    def __init__(self, rate: float) -> None:
        if not is_valid_sample_rate(rate):
            raise ValueError(
                "traces_sample_rate must be a number between 0 and 1, got %r" % (rate,)
            )
        self.rate = float(rate)

    def sample(
        self, sampling_context: "SamplingContext"
    ) -> "Tuple[bool, Optional[float]]":
        # random.random() is inclusive of 0 but not of 1, so strict < is safe
        return random.random() < self.rate, self.rate

    def __repr__(self) -> str:
        return "<FixedRateSampler rate=%r>" % (self.rate,)


class CallbackSampler(Sampler):
    def __init__(self, func: "TracesSampler") -> None:
        if not callable(func):
            raise ValueError("traces_sampler must be callable, got %r" % (func,))
        self.func = func

    def sample(
        self, sampling_context: "SamplingContext"
    ) -> "Tuple[bool, Optional[float]]":
        sample_rate = None  # type: Any
        with capture_internal_exceptions():
            sample_rate = self.func(sampling_context)

        # The only valid values are booleans or numbers between 0 and 1.
        if not is_valid_sample_rate(sample_rate):
            logger.warning(
                "[Tracing] Discarding trace because traces_sampler returned an invalid sample rate: %r",
                sample_rate,
            )
            return False, None

        rate = float(sample_rate)
        return random.random() < rate, rate

    def __repr__(self) -> str:
        return "<CallbackSampler func=%r>" % (self.func,)


def make_sampler(options: "Dict[str, Any]") -> "Optional[Sampler]":
    """
    Builds the trace sampler from the client options, or returns None when
    tracing is disabled. Raises `ValueError` for invalid settings.
    """
    traces_sampler = options.get("traces_sampler")
    traces_sample_rate = options.get("traces_sample_rate")

    if traces_sample_rate is not None and not is_valid_sample_rate(
        traces_sample_rate
    ):
        raise ValueError(
            "traces_sample_rate must be a number between 0 and 1, got %r"
            % (traces_sample_rate,)
        )

    if traces_sampler is not None:
        return CallbackSampler(traces_sampler)
    if traces_sample_rate is not None:
        return FixedRateSampler(traces_sample_rate)
    return None
