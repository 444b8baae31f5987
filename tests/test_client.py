import logging

import pytest

import tracehub
from tracehub import Client, Hub, add_global_event_processor
from tracehub.scope import global_event_processors
from tracehub.transport import HttpTransport
from tracehub.utils import BadDsn

from tests.conftest import TestTransport


@pytest.fixture
def global_processor():
    added = []

    def inner(processor):
        add_global_event_processor(processor)
        added.append(processor)
        return processor

    yield inner

    for processor in added:
        global_event_processors.remove(processor)


def test_unknown_option_is_rejected():
    with pytest.raises(TypeError):
        Client(transport=TestTransport(), no_such_option=True)


def test_dsn_from_environment(monkeypatch):
    monkeypatch.setenv("TRACEHUB_DSN", "https://key@ingest.example.com/42")
    monkeypatch.setenv("TRACEHUB_RELEASE", "v1.2.3")
    monkeypatch.setenv("TRACEHUB_ENVIRONMENT", "staging")

    client = Client(default_integrations=False)
    try:
        assert client.dsn == "https://key@ingest.example.com/42"
        assert client.options["release"] == "v1.2.3"
        assert client.options["environment"] == "staging"
        assert isinstance(client.transport, HttpTransport)
        assert (
            client.transport._auth.get_api_url()
            == "https://ingest.example.com/api/42/envelope/"
        )
    finally:
        client.close(timeout=0)


def test_explicit_dsn_wins_over_environment(monkeypatch):
    monkeypatch.setenv("TRACEHUB_DSN", "https://key@env.example.com/1")

    client = Client("https://key@arg.example.com/2", default_integrations=False)
    try:
        assert client.dsn == "https://key@arg.example.com/2"
    finally:
        client.close(timeout=0)


def test_debug_from_environment(monkeypatch):
    monkeypatch.setenv("TRACEHUB_DEBUG", "true")
    client = Client(transport=TestTransport(), default_integrations=False)
    assert client.options["debug"] is True


@pytest.mark.parametrize(
    "options",
    [
        {"dsn": "not-a-dsn"},
        {"dsn": "https://example.com/42"},
        {"sample_rate": 1.5},
        {"sample_rate": "half"},
        {"traces_sample_rate": -0.1},
        {"traces_sampler": "not callable"},
        {"batch_size": 0},
        {"batch_timeout": 0},
        {"overflow_policy": "drop_oldest"},
        {"block_timeout": -1},
        {"ignore_errors": ["("]},
        {"ignore_transactions": ["[unclosed"]},
    ],
)
def test_invalid_configuration_raises(options):
    with pytest.raises(ValueError):
        Client(transport=TestTransport(), default_integrations=False, **options)


def test_bad_dsn_error_type():
    with pytest.raises(BadDsn):
        Client("ftp://key@example.com/1", default_integrations=False)


def test_inactive_without_dsn():
    client = Client(default_integrations=False)
    assert client.transport is None
    assert not client.is_active()
    assert client.capture_event({"message": "dropped"}) is None
    assert client.flush(timeout=0) is True
    client.close()


def test_defaults_are_filled_in(tracehub_init, capture_events):
    tracehub_init(release="1.0", environment="prod", server_name="web-1", dist="b1")
    events = capture_events()

    tracehub.capture_message("hello")

    (event,) = events
    assert event["release"] == "1.0"
    assert event["environment"] == "prod"
    assert event["server_name"] == "web-1"
    assert event["dist"] == "b1"
    assert event["platform"] == "python"
    assert event["sdk"]["name"] == "tracehub.python"
    assert event["sdk"]["version"] == tracehub.VERSION
    assert event["event_id"]
    assert event["timestamp"] is not None


def test_event_values_are_not_overwritten(tracehub_init, capture_events):
    tracehub_init(release="1.0")
    events = capture_events()

    tracehub.capture_event({"message": "x", "release": "2.0", "event_id": "a" * 32})

    assert events[0]["release"] == "2.0"
    assert events[0]["event_id"] == "a" * 32


def test_pipeline_stage_order(tracehub_init, capture_events, global_processor):
    order = []

    def before_send(event, hint):
        order.append("before_send")
        return event

    tracehub_init(before_send=before_send)
    events = capture_events()

    @global_processor
    def global_proc(event, hint):
        order.append("global")
        return event

    def scope_proc(event, hint):
        order.append("scope")
        return event

    with Hub.current.push_scope() as scope:
        scope.add_event_processor(scope_proc)
        tracehub.capture_message("ordered")

    assert order == ["scope", "global", "before_send"]
    assert len(events) == 1


def test_scope_processor_drop_is_recorded(tracehub_init, capture_events):
    client = tracehub_init()
    events = capture_events()

    with Hub.current.push_scope() as scope:
        scope.add_event_processor(lambda event, hint: None)
        assert tracehub.capture_message("dropped") is None

    assert events == []
    assert client.transport.lost_events[("event_processor", "error")] == 1


def test_global_processor_drop_stops_pipeline(
    tracehub_init, capture_events, global_processor
):
    called = []

    def before_send(event, hint):
        called.append(event)
        return event

    client = tracehub_init(before_send=before_send)
    events = capture_events()

    global_processor(lambda event, hint: None)
    tracehub.capture_message("dropped")

    assert events == []
    assert called == []
    assert client.transport.lost_events[("event_processor", "error")] == 1


def test_before_send_can_modify(tracehub_init, capture_events):
    def before_send(event, hint):
        event["extra"] = {"modified": True}
        return event

    tracehub_init(before_send=before_send)
    events = capture_events()

    tracehub.capture_message("hi")
    assert events[0]["extra"] == {"modified": True}


def test_before_send_drop_is_recorded(tracehub_init, capture_events):
    client = tracehub_init(before_send=lambda event, hint: None)
    events = capture_events()

    assert tracehub.capture_message("dropped") is None
    assert events == []
    assert client.transport.lost_events[("before_send", "error")] == 1


@pytest.mark.tests_internal_exceptions
def test_raising_before_send_drops_event(tracehub_init, capture_events):
    def before_send(event, hint):
        raise RuntimeError("hook failed")

    client = tracehub_init(before_send=before_send)
    events = capture_events()

    assert tracehub.capture_message("dropped") is None
    assert events == []
    assert client.transport.lost_events[("before_send", "error")] == 1


def test_before_send_gets_exception_hint(tracehub_init, capture_events):
    hints = []

    def before_send(event, hint):
        hints.append(hint)
        return event

    tracehub_init(before_send=before_send)
    capture_events()

    error = ValueError("with hint")
    tracehub.capture_exception(error)

    assert hints[0]["exc_info"][1] is error


def test_before_send_transaction_only_sees_transactions(tracehub_init, capture_events):
    seen = []

    def before_send_transaction(event, hint):
        seen.append(event["type"])
        return None

    client = tracehub_init(
        traces_sample_rate=1.0, before_send_transaction=before_send_transaction
    )
    events = capture_events()

    tracehub.capture_message("error event")
    with tracehub.start_transaction(name="dropped"):
        pass

    assert seen == ["transaction"]
    assert [e.get("type") for e in events] == [None]
    assert client.transport.lost_events[("before_send", "transaction")] == 1


def test_ignore_errors_by_class(tracehub_init, capture_events):
    class MyError(LookupError):
        pass

    client = tracehub_init(ignore_errors=[LookupError])
    events = capture_events()

    tracehub.capture_exception(MyError("subclass"))
    tracehub.capture_exception(KeyError("subclass too"))
    tracehub.capture_exception(ValueError("kept"))

    assert [e["exception"]["values"][0]["type"] for e in events] == ["ValueError"]
    assert client.transport.lost_events[("ignored", "error")] == 2


def test_ignore_errors_by_name_and_pattern(tracehub_init, capture_events):
    client = tracehub_init(
        ignore_errors=["ZeroDivisionError", "^health check", "timed out$"]
    )
    events = capture_events()

    try:
        1 / 0
    except ZeroDivisionError:
        tracehub.capture_exception()
    tracehub.capture_message("health check failed")
    tracehub.capture_exception(OSError("connection timed out"))
    tracehub.capture_message("real problem")

    assert [e.get("message") for e in events] == ["real problem"]
    assert client.transport.lost_events[("ignored", "error")] == 3


def test_ignore_transactions(tracehub_init, capture_events):
    client = tracehub_init(traces_sample_rate=1.0, ignore_transactions=["^/health"])
    events = capture_events()

    with tracehub.start_transaction(name="/healthz"):
        pass
    with tracehub.start_transaction(name="/checkout"):
        pass

    assert [e["transaction"] for e in events] == ["/checkout"]
    assert client.transport.lost_events[("ignored", "transaction")] == 1


def test_sample_rate_zero_drops_every_error(tracehub_init, capture_events):
    client = tracehub_init(sample_rate=0.0)
    events = capture_events()

    for _ in range(1000):
        tracehub.capture_message("sampled out")

    assert events == []
    assert client.transport.lost_events[("sample_rate", "error")] == 1000


def test_sample_rate_one_keeps_every_error(tracehub_init, capture_events):
    tracehub_init(sample_rate=1.0)
    events = capture_events()

    for _ in range(1000):
        tracehub.capture_message("kept")

    assert len(events) == 1000


def test_sample_rate_does_not_apply_to_check_ins(tracehub_init, capture_events):
    tracehub_init(sample_rate=0.0)
    events = capture_events()

    tracehub.crons.capture_checkin(monitor_slug="job", status="ok")

    assert len(events) == 1


def test_function_transport():
    received = []
    client = Client(transport=received.append, default_integrations=False)
    Hub.current.bind_client(client)

    tracehub.capture_message("through function")

    (event,) = received
    assert event["message"] == "through function"


def test_transport_class_needs_dsn():
    client = Client(transport=HttpTransport, default_integrations=False)
    assert client.transport is None


def test_invalid_transport():
    with pytest.raises(ValueError):
        Client(transport=42, default_integrations=False)


def test_close_is_idempotent(tracehub_init, capture_events):
    client = tracehub_init()
    capture_events()

    client.close()
    client.close()

    assert not client.is_active()
    assert tracehub.capture_message("after close") is None


@pytest.mark.parametrize(
    "capture",
    [
        lambda: tracehub.capture_message("racy"),
        lambda: tracehub.logger.info("racy"),
        lambda: tracehub.metrics.count("racy"),
    ],
    ids=["event", "log", "metric"],
)
def test_close_during_capture_does_not_raise(tracehub_init, capture):
    clients = []

    def close_client(item, hint):
        clients[0].close(timeout=0)
        return item

    client = tracehub_init(
        enable_logs=True,
        before_send=close_client,
        before_send_log=close_client,
        before_send_metric=close_client,
    )
    clients.append(client)

    capture()

    assert not client.is_active()


def test_user_changes_in_before_send_do_not_leak_into_scope(
    tracehub_init, capture_events
):
    def before_send(event, hint):
        event["user"]["email"] = "scrubbed"
        event["breadcrumbs"]["values"][0]["message"] = "scrubbed"
        return event

    tracehub_init(before_send=before_send)
    events = capture_events()

    tracehub.set_user({"id": "42"})
    tracehub.add_breadcrumb(message="original")
    tracehub.capture_message("first")
    tracehub.capture_message("second")

    assert events[1]["user"] == {"id": "42", "email": "scrubbed"}
    assert Hub.current.scope._user == {"id": "42"}
    assert [c["message"] for c in Hub.current.scope._breadcrumbs] == ["original"]


def test_client_context_manager():
    with Client(transport=TestTransport(), default_integrations=False) as client:
        assert client.is_active()
    assert not client.is_active()


def test_flush_with_test_transport(tracehub_init):
    tracehub_init()
    assert tracehub.flush(timeout=1) is True


def test_drop_reasons_are_logged_in_debug_mode(tracehub_init, capture_events, caplog):
    caplog.set_level(logging.DEBUG, logger="tracehub.errors")
    tracehub_init(debug=True, before_send=lambda event, hint: None)
    capture_events()

    tracehub.capture_message("dropped")

    assert any("before send dropped event" in r.getMessage() for r in caplog.records)


def test_nothing_is_logged_without_debug(tracehub_init, capture_events, caplog):
    caplog.set_level(logging.DEBUG, logger="tracehub.errors")
    tracehub_init(before_send=lambda event, hint: None)
    capture_events()

    tracehub.capture_message("dropped")

    assert not any("dropped event" in r.getMessage() for r in caplog.records)


def test_get_integration(tracehub_init):
    from tracehub.integrations.dedupe import DedupeIntegration

    client = tracehub_init()
    assert isinstance(client.get_integration(DedupeIntegration), DedupeIntegration)
    assert isinstance(client.get_integration("dedupe"), DedupeIntegration)

    client = Client(transport=TestTransport(), default_integrations=False)
    assert client.get_integration("dedupe") is None
