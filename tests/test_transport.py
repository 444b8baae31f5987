import socket
from datetime import datetime, timedelta, timezone

import pytest

import tracehub
from tracehub import Client
from tracehub.consts import DEFAULT_OPTIONS
from tracehub.transport import (
    HttpSyncTransport,
    HttpTransport,
    Transport,
    _FunctionTransport,
    _parse_rate_limits,
    _parse_retry_after,
    make_transport,
)

from tests.conftest import TestTransport

NOW = datetime(2008, 5, 12, 16, 26, 19, tzinfo=timezone.utc)


@pytest.fixture
def make_client(request, capturing_server):
    def inner(dsn=None, **kwargs):
        kwargs.setdefault("default_integrations", False)
        client = Client(dsn or capturing_server.dsn, **kwargs)
        request.addfinalizer(lambda: client.close(timeout=0))
        return client

    return inner


@pytest.fixture
def unused_port():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.mark.parametrize(
    "input,expected",
    [
        # Empty or malformed input limits nothing
        ("", {}),
        (",", {}),
        (",,,,", {}),
        (",  ,   ,     ,", {}),
        (":", {}),
        (":::", {}),
        ("::,,:,", {}),
        (":,:;;;:", {}),
        ("invalid", {}),
        ("1", {None: NOW + timedelta(seconds=1)}),
        ("2::ignored_scope:ignored_reason", {None: NOW + timedelta(seconds=2)}),
        ("4:error", {"error": NOW + timedelta(seconds=4)}),
        (
            "5:error;transaction",
            {
                "error": NOW + timedelta(seconds=5),
                "transaction": NOW + timedelta(seconds=5),
            },
        ),
        (
            "6:error, 7:transaction",
            {
                "error": NOW + timedelta(seconds=6),
                "transaction": NOW + timedelta(seconds=7),
            },
        ),
        # Unknown categories are skipped
        ("8:error;default;unknown", {"error": NOW + timedelta(seconds=8)}),
        (
            "30:error:scope1, 20:error:scope2, 40:error",
            {"error": NOW + timedelta(seconds=40)},
        ),
        (
            "30:error:scope1, 20:error:scope2, 40::",
            {
                None: NOW + timedelta(seconds=40),
                "error": NOW + timedelta(seconds=30),
            },
        ),
        (
            "10:log_item;trace_metric;monitor",
            {
                "log_item": NOW + timedelta(seconds=10),
                "trace_metric": NOW + timedelta(seconds=10),
                "monitor": NOW + timedelta(seconds=10),
            },
        ),
    ],
)
def test_parse_rate_limits(input, expected):
    assert _parse_rate_limits(input, now=NOW) == expected


@pytest.mark.parametrize(
    "input,expected",
    [
        ("0", NOW),
        ("1", NOW + timedelta(seconds=1)),
        ("60", NOW + timedelta(minutes=1)),
        # Fractions round up to the next full second
        ("3.1", NOW + timedelta(seconds=4)),
        ("3.5", NOW + timedelta(seconds=4)),
        ("3.9", NOW + timedelta(seconds=4)),
        # Overflows, negative numbers and special floats mean "now"
        ("100000000000000000", NOW),
        ("-Inf", NOW),
        ("-0", NOW),
        ("-1", NOW),
        ("Inf", NOW),
        ("NaN", NOW),
    ],
)
def test_parse_retry_after(input, expected):
    assert _parse_retry_after(input, NOW) == expected


@pytest.mark.parametrize("input", ["", "invalid", " 2 ", "6 0", "1_000"])
def test_parse_retry_after_invalid(input):
    with pytest.raises(ValueError):
        _parse_retry_after(input, NOW)


def test_transport_works(capturing_server, make_client):
    client = make_client(release="1.0")
    client.capture_event({"message": "over the wire"})
    assert client.flush(timeout=5)

    ((path, headers, _),) = capturing_server.requests
    assert path == "/api/123/envelope/"
    assert headers["Content-Type"] == "application/x-sentry-envelope"
    assert headers["Content-Encoding"] == "gzip"
    assert headers["User-Agent"] == "tracehub.python/%s" % tracehub.VERSION
    assert headers["X-Sentry-Auth"].startswith("Sentry sentry_key=public, ")

    (envelope,) = capturing_server.envelopes
    event = envelope.get_event()
    assert event["message"] == "over the wire"
    assert event["release"] == "1.0"
    assert envelope.headers["event_id"] == event["event_id"]


def test_one_request_per_envelope(capturing_server, make_client):
    client = make_client()
    for i in range(3):
        client.capture_event({"message": str(i)})
    assert client.flush(timeout=5)

    assert len(capturing_server.requests) == 3
    assert sorted(e.get_event()["message"] for e in capturing_server.envelopes) == [
        "0",
        "1",
        "2",
    ]


def test_category_rate_limit_cooldown(capturing_server, make_client, monkeypatch):
    client = make_client()
    transport = client.transport

    capturing_server.respond_with(429, headers={"X-Sentry-Rate-Limits": "60:error"})
    client.capture_event({"message": "first"})
    assert client.flush(timeout=5)
    assert len(capturing_server.requests) == 1
    assert transport.lost_events[("ratelimit_backoff", "error")] == 1

    assert transport.is_rate_limited("error")
    assert not transport.is_rate_limited("transaction")

    capturing_server.respond_with(200)
    client.capture_event({"message": "dropped"})
    client.capture_event({"type": "transaction", "transaction": "/still/sent"})
    assert client.flush(timeout=5)

    assert len(capturing_server.requests) == 2
    assert capturing_server.envelopes[1].get_transaction_event() is not None
    assert transport.lost_events[("ratelimit_backoff", "error")] == 2

    later = datetime.now(timezone.utc) + timedelta(seconds=61)
    monkeypatch.setattr(tracehub.transport, "utc_now", lambda: later)
    assert not transport.is_rate_limited("error")

    client.capture_event({"message": "after cooldown"})
    assert client.flush(timeout=5)
    assert len(capturing_server.requests) == 3


def test_rate_limit_header_is_honored_on_success(capturing_server, make_client):
    client = make_client()
    capturing_server.respond_with(
        200, headers={"X-Sentry-Rate-Limits": "4711:transaction:organization"}
    )

    client.capture_event({"type": "transaction", "transaction": "/sent"})
    assert client.flush(timeout=5)

    assert set(client.transport._disabled_until) == {"transaction"}
    assert client.transport.lost_events == {}


def test_plain_429_limits_every_category(capturing_server, make_client):
    client = make_client()
    capturing_server.respond_with(429)

    before = datetime.now(timezone.utc)
    client.capture_event({"type": "transaction", "transaction": "/limited"})
    assert client.flush(timeout=5)

    deadline = client.transport._disabled_until[None]
    assert before + timedelta(seconds=59) < deadline
    assert deadline < before + timedelta(seconds=62)

    capturing_server.respond_with(200)
    client.capture_event({"message": "error"})
    client.capture_event({"type": "check_in", "monitor_slug": "job"})
    assert client.flush(timeout=5)

    assert len(capturing_server.requests) == 1
    assert client.transport.lost_events[("ratelimit_backoff", "error")] == 1
    assert client.transport.lost_events[("ratelimit_backoff", "monitor")] == 1


def test_429_with_retry_after(capturing_server, make_client):
    client = make_client()
    capturing_server.respond_with(429, headers={"Retry-After": "4"})

    before = datetime.now(timezone.utc)
    client.capture_event({"message": "limited"})
    assert client.flush(timeout=5)

    assert set(client.transport._disabled_until) == {None}
    deadline = client.transport._disabled_until[None]
    assert before + timedelta(seconds=3) < deadline
    assert deadline < before + timedelta(seconds=10)


def test_server_error_is_recorded(capturing_server, make_client):
    client = make_client()
    capturing_server.respond_with(500)

    client.capture_event({"message": "rejected"})
    assert client.flush(timeout=5)

    assert len(capturing_server.requests) == 1
    assert client.transport.lost_events[("send_error", "error")] == 1
    assert not client.transport.is_rate_limited("error")


def test_network_error_is_recorded(make_client, unused_port):
    client = make_client("http://public@127.0.0.1:%d/1" % unused_port)

    client.capture_event({"message": "nowhere to go"})
    assert client.flush(timeout=5)

    assert client.transport.lost_events[("network_error", "error")] == 1


def test_sync_transport_sends_on_caller_thread(capturing_server, make_client):
    client = make_client(transport=HttpSyncTransport)
    assert isinstance(client.transport, HttpSyncTransport)

    client.capture_event({"message": "right now"})

    # No flush needed
    assert len(capturing_server.requests) == 1
    assert capturing_server.envelopes[0].get_event()["message"] == "right now"

    client.close()
    assert client.transport is None


def test_sync_transport_rejects_after_close(capturing_server):
    transport = HttpSyncTransport(dict(DEFAULT_OPTIONS, dsn=capturing_server.dsn))
    transport.close()

    transport.capture_event({"message": "late", "event_id": "a" * 32})

    assert capturing_server.requests == []
    assert transport.lost_events[("queue_overflow", "error")] == 1


def test_http_transport_close_sends_pending(capturing_server):
    transport = HttpTransport(
        dict(DEFAULT_OPTIONS, dsn=capturing_server.dsn, batch_timeout=60)
    )
    transport.capture_event({"message": "pending", "event_id": "b" * 32})
    transport.close(timeout=5)

    assert len(capturing_server.requests) == 1

    transport.capture_event({"message": "too late", "event_id": "c" * 32})
    assert transport.lost_events[("queue_overflow", "error")] == 1


def test_http_transport_requires_dsn():
    with pytest.raises(ValueError):
        HttpTransport(dict(DEFAULT_OPTIONS))


def test_make_transport_without_dsn():
    assert make_transport(dict(DEFAULT_OPTIONS)) is None


def test_make_transport_with_dsn():
    transport = make_transport(
        dict(DEFAULT_OPTIONS, dsn="https://key@ingest.example.com/42")
    )
    try:
        assert type(transport) is HttpTransport
        assert transport.parsed_dsn.project_id == "42"
    finally:
        transport.kill()


def test_make_transport_with_instance():
    instance = TestTransport()
    options = dict(DEFAULT_OPTIONS, transport=instance)

    assert make_transport(options) is instance
    assert instance.options is options


def test_make_transport_with_function():
    received = []
    transport = make_transport(dict(DEFAULT_OPTIONS, transport=received.append))

    assert isinstance(transport, _FunctionTransport)
    transport.capture_event({"message": "direct"})
    assert received == [{"message": "direct"}]


def test_make_transport_rejects_garbage():
    with pytest.raises(ValueError):
        make_transport(dict(DEFAULT_OPTIONS, transport="http"))


def test_record_lost_event_counts_by_reason_and_category():
    transport = Transport()
    transport.record_lost_event("queue_overflow", data_category="error")
    transport.record_lost_event("queue_overflow", data_category="error", quantity=3)
    transport.record_lost_event("before_send", data_category="log_item")
    # Without a category there is nothing to count
    transport.record_lost_event("before_send")

    assert transport.lost_events == {
        ("queue_overflow", "error"): 4,
        ("before_send", "log_item"): 1,
    }


def test_base_transport_flush_is_a_noop():
    transport = Transport()
    assert transport.flush(timeout=0) is True
    assert transport.flush_with_context(cancel=None) is True
