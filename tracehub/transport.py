import gzip
import io
import math
import threading
from collections import defaultdict
from datetime import datetime, timedelta
from urllib.request import getproxies

import certifi
import urllib3

from tracehub._batcher import BatchEmitter
from tracehub.consts import DEFAULT_RATE_LIMIT_SECONDS, KNOWN_DATA_CATEGORIES, VERSION
from tracehub.envelope import Envelope
from tracehub.utils import (
    Dsn,
    capture_internal_exceptions,
    format_timestamp,
    logger,
    utc_now,
)

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import (
        Any,
        Callable,
        DefaultDict,
        Dict,
        List,
        Optional,
        Tuple,
        Type,
        Union,
    )

    from urllib3.poolmanager import PoolManager, ProxyManager

    from tracehub._types import Event, EventDataCategory
    from tracehub.envelope import Item

    DataCategory = Optional[str]


class Transport:
    """Baseclass for all transports.

    A transport receives finished events and envelopes from the client and
    delivers them. It also keeps the rate limits the server asked for and
    counts what it had to drop.
    """

    parsed_dsn: "Optional[Dsn]" = None

    def __init__(self, options: "Optional[Dict[str, Any]]" = None) -> None:
        self.options: "Optional[Dict[str, Any]]" = None
        self._disabled_until: "Dict[DataCategory, datetime]" = {}
        self._lost_events_lock = threading.Lock()
        self.lost_events: "DefaultDict[Tuple[str, DataCategory], int]" = (
            defaultdict(int)
        )
        if options is not None:
            self.configure(options)

    def configure(self, options: "Dict[str, Any]") -> None:
        """Called once with the resolved client options before the first
        event is sent."""
        if self.options is not None:
            logger.warning("%s is already configured", type(self).__name__)
            return
        self.options = options
        if options.get("dsn"):
            self.parsed_dsn = Dsn(options["dsn"])
        else:
            self.parsed_dsn = None
        self._setup()

    def _setup(self) -> None:
        pass

    def capture_event(self, event: "Event") -> None:
        """
        This gets invoked with the event dictionary when an event should
        be sent. The default implementation wraps it into an envelope.
        """
        headers = {
            "event_id": event.get("event_id"),
            "sent_at": format_timestamp(utc_now()),
        }
        dynamic_sampling_context = _pop_dynamic_sampling_context(event)
        if dynamic_sampling_context:
            headers["trace"] = dynamic_sampling_context

        envelope = Envelope(headers=headers)
        ty = event.get("type")
        if ty == "transaction":
            envelope.add_transaction(event)
        elif ty == "check_in":
            envelope.add_checkin(event)
        else:
            envelope.add_event(event)
        self.capture_envelope(envelope)

    def capture_envelope(self, envelope: "Envelope") -> None:
        """
        Send an envelope. Must not block the caller beyond the transport's
        backpressure policy and must never raise.
        """
        raise NotImplementedError()

    def flush(
        self,
        timeout: "Optional[float]" = None,
        cancel: "Optional[threading.Event]" = None,
    ) -> bool:
        """Wait `timeout` seconds for the current events to be sent out.
        Returns whether everything was sent in time."""
        return True

    def flush_with_context(self, cancel: "threading.Event") -> bool:
        """Like `flush` but without a timeout, stopping early once
        ``cancel`` is set."""
        return self.flush(timeout=None, cancel=cancel)

    def close(self, timeout: "Optional[float]" = None) -> None:
        """Sends what is pending and stops accepting new data."""
        self.kill()

    def kill(self) -> None:
        """Forcefully kills the transport."""
        pass

    def is_rate_limited(self, category: "DataCategory") -> bool:
        now = utc_now()

        def _disabled(bucket: "DataCategory") -> bool:
            ts = self._disabled_until.get(bucket)
            return ts is not None and ts > now

        return _disabled(category) or _disabled(None)

    def record_lost_event(
        self,
        reason: str,
        data_category: "Optional[EventDataCategory]" = None,
        item: "Optional[Item]" = None,
        quantity: int = 1,
    ) -> None:
        """Counts items that were dropped before they reached the server."""
        if item is not None:
            data_category = item.data_category
            quantity = item.quantity

        if data_category is None:
            return

        with self._lost_events_lock:
            self.lost_events[(reason, data_category)] += quantity

        logger.debug("Dropped %s %s item(s): %s", quantity, data_category, reason)

    def __del__(self) -> None:
        try:
            self.kill()
        except Exception:
            pass


def _pop_dynamic_sampling_context(event: "Event") -> "Optional[Dict[str, str]]":
    trace_context = (event.get("contexts") or {}).get("trace")
    if not trace_context:
        return None
    return trace_context.pop("dynamic_sampling_context", None)


def _parse_retry_after(value: str, now: "datetime") -> "datetime":
    # float() would accept surrounding whitespace and digit separators
    if not value or value != value.strip() or "_" in value:
        raise ValueError("invalid retry_after value %r" % (value,))

    seconds = float(value)
    if math.isnan(seconds) or math.isinf(seconds) or seconds <= 0:
        return now

    try:
        return now + timedelta(seconds=math.ceil(seconds))
    except OverflowError:
        return now


def _parse_rate_limits(
    header: str, now: "Optional[datetime]" = None
) -> "Dict[DataCategory, datetime]":
    """
    Parses an ``X-Sentry-Rate-Limits`` header value.

    Every comma separated entry reads ``retry_after:categories:scope:reason``.
    An empty category list applies to all categories (key ``None``), unknown
    categories and malformed entries are skipped. When a category appears
    more than once the latest deadline wins.
    """
    if now is None:
        now = utc_now()

    rv: "Dict[DataCategory, datetime]" = {}
    for limit in header.split(","):
        parameters = limit.strip().split(":")
        try:
            retry_after = _parse_retry_after(parameters[0], now)
        except ValueError:
            continue

        categories = parameters[1] if len(parameters) > 1 else ""
        for category in categories and categories.split(";") or (None,):
            if category is not None and category not in KNOWN_DATA_CATEGORIES:
                continue
            if category not in rv or rv[category] < retry_after:
                rv[category] = retry_after

    return rv


class _EnvelopeEmitter(BatchEmitter[Envelope]):
    def _record_lost(self, item: "Envelope", reason: str) -> None:
        if self._record_lost_func is None:
            return
        for envelope_item in item.items:
            self._record_lost_func(reason=reason, item=envelope_item)


class HttpTransport(Transport):
    """The default HTTP transport.

    Envelopes go through a batch emitter; its worker thread posts them one
    request per envelope. Failed requests are not retried.
    """

    def _setup(self) -> None:
        self._setup_pool()
        options = self.options
        assert options is not None
        self._emitter = _EnvelopeEmitter(
            self._send_batch,
            batch_size=options["batch_size"],
            batch_timeout=options["batch_timeout"],
            overflow_policy=options["overflow_policy"],
            block_timeout=options["block_timeout"],
            record_lost_func=self.record_lost_event,
            name="tracehub.HttpTransport",
        )

    def _setup_pool(self) -> None:
        if self.parsed_dsn is None:
            raise ValueError("%s requires a DSN" % type(self).__name__)
        options = self.options
        assert options is not None

        self._auth = self.parsed_dsn.to_auth("tracehub.python/%s" % VERSION)
        self._retry = urllib3.util.Retry()
        self._pool = self._make_pool(
            self.parsed_dsn,
            http_proxy=options["http_proxy"],
            https_proxy=options["https_proxy"],
            ca_certs=options["ca_certs"],
        )

    def _update_rate_limits(self, response: "urllib3.BaseHTTPResponse") -> None:
        # We honor this header no matter the status code.
        header = response.headers.get("x-sentry-rate-limits")
        if header:
            limits = _parse_rate_limits(header)

        # Without the header a 429 slows down every category.
        elif response.status == 429:
            limits = {
                None: utc_now()
                + timedelta(
                    seconds=self._retry.get_retry_after(response)
                    or DEFAULT_RATE_LIMIT_SECONDS
                )
            }
        else:
            return

        for category, deadline in limits.items():
            current = self._disabled_until.get(category)
            if current is None or current < deadline:
                self._disabled_until[category] = deadline

        logger.info(
            "Rate limited by the server: %s",
            ", ".join(
                "%s until %s" % (category or "all", format_timestamp(deadline))
                for category, deadline in limits.items()
            ),
        )

    def _send_request(self, body: bytes, headers: "Dict[str, str]") -> int:
        headers.update(
            {
                "User-Agent": str(self._auth.client),
                "X-Sentry-Auth": str(self._auth.to_header()),
            }
        )
        response = self._pool.request(
            "POST",
            self._auth.get_api_url(),
            body=body,
            headers=headers,
        )

        try:
            self._update_rate_limits(response)

            if response.status == 429:
                # Already acted on in `self._update_rate_limits`.
                pass

            elif response.status >= 300 or response.status < 200:
                logger.error(
                    "Unexpected status code: %s (body: %s)",
                    response.status,
                    response.data,
                )
            return response.status
        finally:
            response.close()

    def _drop_rate_limited_items(self, envelope: "Envelope") -> bool:
        """Removes the items that are currently rate limited from the
        envelope. Returns whether anything is left to send."""
        kept = []
        for item in envelope.items:
            if self.is_rate_limited(item.data_category):
                self.record_lost_event("ratelimit_backoff", item=item)
            else:
                kept.append(item)

        if len(kept) != len(envelope.items):
            logger.info(
                "Rate limited, skipping %s item(s)", len(envelope.items) - len(kept)
            )
            envelope.items[:] = kept

        return bool(kept)

    def _send_envelope(self, envelope: "Envelope") -> None:
        # Limits may have arrived while the envelope was queued
        if not self._drop_rate_limited_items(envelope):
            return None

        body = io.BytesIO()
        with gzip.GzipFile(fileobj=body, mode="w") as f:
            envelope.serialize_into(f)

        assert self.parsed_dsn is not None
        logger.debug(
            "Sending envelope [%s] project:%s host:%s",
            envelope.description,
            self.parsed_dsn.project_id,
            self.parsed_dsn.host,
        )

        try:
            status = self._send_request(
                body.getvalue(),
                headers={
                    "Content-Type": "application/x-sentry-envelope",
                    "Content-Encoding": "gzip",
                },
            )
        except (urllib3.exceptions.HTTPError, OSError):
            logger.debug("Failed to send envelope, dropping it", exc_info=True)
            reason = "network_error"
        else:
            if 200 <= status < 300:
                return None
            reason = status == 429 and "ratelimit_backoff" or "send_error"

        for item in envelope.items:
            self.record_lost_event(reason, item=item)
        return None

    def _send_batch(self, envelopes: "List[Envelope]") -> None:
        for envelope in envelopes:
            with capture_internal_exceptions():
                self._send_envelope(envelope)

    def _get_pool_options(self, ca_certs: "Optional[Any]") -> "Dict[str, Any]":
        return {
            "num_pools": 2,
            "cert_reqs": "CERT_REQUIRED",
            "ca_certs": ca_certs or certifi.where(),
            "retries": False,
        }

    def _in_no_proxy(self, parsed_dsn: "Dsn") -> bool:
        no_proxy = getproxies().get("no")
        if not no_proxy:
            return False
        for host in no_proxy.split(","):
            host = host.strip()
            if parsed_dsn.host.endswith(host) or parsed_dsn.netloc.endswith(host):
                return True
        return False

    def _make_pool(
        self,
        parsed_dsn: "Dsn",
        http_proxy: "Optional[str]",
        https_proxy: "Optional[str]",
        ca_certs: "Optional[Any]",
    ) -> "Union[PoolManager, ProxyManager]":
        proxy = None
        no_proxy = self._in_no_proxy(parsed_dsn)

        # try HTTPS first
        if parsed_dsn.scheme == "https" and (https_proxy != ""):
            proxy = https_proxy or (not no_proxy and getproxies().get("https"))

        # maybe fallback to HTTP proxy
        if not proxy and (http_proxy != ""):
            proxy = http_proxy or (not no_proxy and getproxies().get("http"))

        opts = self._get_pool_options(ca_certs)

        if proxy:
            return urllib3.ProxyManager(proxy, **opts)
        else:
            return urllib3.PoolManager(**opts)

    def capture_envelope(self, envelope: "Envelope") -> None:
        # Rejected here so that rate limited items never take up queue room
        if not self._drop_rate_limited_items(envelope):
            return None
        self._emitter.add(envelope)
        return None

    def flush(
        self,
        timeout: "Optional[float]" = None,
        cancel: "Optional[threading.Event]" = None,
    ) -> bool:
        logger.debug("Flushing HTTP transport")
        return self._emitter.flush(timeout, cancel)

    def close(self, timeout: "Optional[float]" = None) -> None:
        logger.debug("Closing HTTP transport")
        self._emitter.shutdown(timeout)

    def kill(self) -> None:
        logger.debug("Killing HTTP transport")
        self._emitter.shutdown(timeout=0)


class HttpSyncTransport(HttpTransport):
    """Sends every envelope on the calling thread, one at a time."""

    def _setup(self) -> None:
        self._setup_pool()
        self._lock = threading.Lock()
        self._closed = False

    def capture_envelope(self, envelope: "Envelope") -> None:
        if self._closed:
            logger.debug("HTTP transport is closed, dropping envelope")
            for item in envelope.items:
                self.record_lost_event("queue_overflow", item=item)
            return None

        with self._lock:
            with capture_internal_exceptions():
                self._send_envelope(envelope)
        return None

    def flush(
        self,
        timeout: "Optional[float]" = None,
        cancel: "Optional[threading.Event]" = None,
    ) -> bool:
        return True

    def close(self, timeout: "Optional[float]" = None) -> None:
        self._closed = True

    def kill(self) -> None:
        self._closed = True


class _FunctionTransport(Transport):
    def __init__(self, func: "Callable[[Event], None]") -> None:
        Transport.__init__(self)
        self._func = func

    def capture_event(self, event: "Event") -> None:
        _pop_dynamic_sampling_context(event)
        self._func(event)
        return None

    def capture_envelope(self, envelope: "Envelope") -> None:
        event = envelope.get_event() or envelope.get_transaction_event()
        if event is not None:
            self._func(event)
        return None


def make_transport(options: "Dict[str, Any]") -> "Optional[Transport]":
    ref_transport = options["transport"]

    # If no transport is given, we use the http transport class
    if ref_transport is None:
        transport_cls: "Type[Transport]" = HttpTransport
    elif isinstance(ref_transport, Transport):
        if ref_transport.options is None:
            ref_transport.configure(options)
        return ref_transport
    elif isinstance(ref_transport, type) and issubclass(ref_transport, Transport):
        transport_cls = ref_transport
    elif callable(ref_transport):
        transport = _FunctionTransport(ref_transport)
        transport.configure(options)
        return transport
    else:
        raise ValueError("Invalid transport %r" % (ref_transport,))

    # if a transport class is given only instantiate it if the dsn is not
    # empty or None
    if options["dsn"]:
        return transport_cls(options)

    return None
