import asyncio
import threading

import pytest

import tracehub
from tracehub import Hub, Scope


def test_current_hub_is_lazily_created():
    hub = Hub.current
    assert hub is Hub.main
    assert hub.client is None
    assert Hub.current is hub


def test_other_threads_get_their_own_hub(tracehub_init):
    client = tracehub_init()
    Hub.current.scope.set_tag("main", "yes")

    seen = {}

    def worker():
        hub = Hub.current
        seen["hub"] = hub
        seen["client"] = hub.client
        seen["tags"] = dict(hub.scope._tags)
        hub.scope.set_tag("worker", "yes")

    t = threading.Thread(target=worker)
    t.start()
    t.join()

    assert seen["hub"] is not Hub.main
    assert seen["client"] is client
    assert seen["tags"] == {"main": "yes"}
    assert "worker" not in Hub.main.scope._tags


def test_hub_context_manager_activates_hub():
    other = Hub(Hub.current)
    with other as hub:
        assert Hub.current is hub
    assert Hub.current is not other


def test_run_activates_hub():
    other = Hub()
    assert other.run(lambda: Hub.current) is other


def test_push_scope_layers(tracehub_init, capture_events):
    tracehub_init()
    events = capture_events()
    hub = Hub.current

    hub.scope.set_tag("outer", "1")
    with hub.push_scope() as scope:
        scope.set_tag("inner", "2")
        hub.capture_message("inside")
    hub.capture_message("outside")

    inside, outside = events
    assert inside["tags"] == {"outer": "1", "inner": "2"}
    assert outside["tags"] == {"outer": "1"}


def test_push_scope_callback(tracehub_init, capture_events):
    tracehub_init()
    events = capture_events()

    def callback(scope):
        scope.set_tag("cb", "yes")
        Hub.current.capture_message("in callback")

    Hub.current.push_scope(callback)
    Hub.current.capture_message("after")

    assert events[0]["tags"] == {"cb": "yes"}
    assert "tags" not in events[1]


def test_pop_scope_unsafe_never_pops_the_last_layer():
    hub = Hub()
    assert len(hub._stack) == 1
    assert hub.pop_scope_unsafe() is None
    assert len(hub._stack) == 1

    hub.push_scope()
    assert len(hub._stack) == 2
    hub.pop_scope_unsafe()
    assert len(hub._stack) == 1


def test_with_scope_pops_on_exception():
    hub = Hub()

    def callback(scope):
        assert len(hub._stack) == 2
        scope.set_tag("temporary", "1")
        raise ValueError("boom")

    with pytest.raises(ValueError):
        hub.with_scope(callback)

    assert len(hub._stack) == 1
    assert "temporary" not in hub.scope._tags


def test_with_scope_returns_callback_result():
    hub = Hub()
    assert hub.with_scope(lambda scope: 42) == 42


def test_configure_scope():
    hub = Hub()
    with hub.configure_scope() as scope:
        scope.set_tag("a", "b")
    hub.configure_scope(lambda scope: scope.set_tag("c", "d"))

    assert hub.scope._tags == {"a": "b", "c": "d"}


def test_clone_copies_every_layer(tracehub_init):
    client = tracehub_init()
    hub = Hub.current
    hub.scope.set_tag("base", "1")
    hub.push_scope()
    hub.scope.set_tag("top", "1")

    clone = hub.clone()
    clone.scope.set_tag("clone_only", "1")
    hub.scope.set_tag("hub_only", "1")

    assert len(clone._stack) == 2
    assert clone.client is client
    assert clone.scope._tags == {"base": "1", "top": "1", "clone_only": "1"}
    assert "clone_only" not in hub.scope._tags
    assert clone._stack[0][1] is not hub._stack[0][1]


def test_capture_event_scope_kwargs_are_temporary(tracehub_init, capture_events):
    tracehub_init()
    events = capture_events()
    hub = Hub.current

    hub.capture_message("tagged", tags={"once": "yes"}, level="error")
    hub.capture_message("plain")

    assert events[0]["tags"] == {"once": "yes"}
    assert events[0]["level"] == "error"
    assert "tags" not in events[1]
    assert events[1]["level"] == "info"
    assert hub.scope._tags == {}


def test_capture_without_client_is_noop():
    hub = Hub()
    assert hub.capture_message("nobody listens") is None
    assert hub.capture_exception(ValueError("x")) is None
    assert hub.last_event_id() is None


def test_last_event_id(tracehub_init):
    tracehub_init()
    hub = Hub.current

    event_id = hub.capture_message("hello")
    assert event_id is not None
    assert len(event_id) == 32
    assert hub.last_event_id() == event_id


def test_capture_exception(tracehub_init, capture_events):
    tracehub_init()
    events = capture_events()

    try:
        1 / 0
    except ZeroDivisionError:
        Hub.current.capture_exception()

    (event,) = events
    (exception,) = event["exception"]["values"]
    assert exception["type"] == "ZeroDivisionError"
    assert event["level"] == "error"


def test_capture_exception_outside_except_block(tracehub_init, capture_events):
    tracehub_init()
    events = capture_events()

    assert Hub.current.capture_exception() is None
    assert events == []


def test_breadcrumbs_default_cap(tracehub_init, capture_events):
    tracehub_init()
    events = capture_events()

    for i in range(40):
        tracehub.add_breadcrumb(message=str(i))
    tracehub.capture_message("with crumbs")

    crumbs = events[0]["breadcrumbs"]["values"]
    assert len(crumbs) == 30
    assert crumbs[0]["message"] == "10"
    assert crumbs[-1]["message"] == "39"
    assert crumbs[0]["type"] == "default"
    assert crumbs[0]["timestamp"] is not None


@pytest.mark.parametrize(
    "max_breadcrumbs,expected",
    [(5, 5), (0, 30), (1000, 100)],
)
def test_breadcrumbs_configured_cap(
    tracehub_init, capture_events, max_breadcrumbs, expected
):
    tracehub_init(max_breadcrumbs=max_breadcrumbs)
    events = capture_events()

    for i in range(150):
        tracehub.add_breadcrumb(message=str(i))
    tracehub.capture_message("with crumbs")

    assert len(events[0]["breadcrumbs"]["values"]) == expected


def test_negative_max_breadcrumbs_disables_breadcrumbs(tracehub_init, capture_events):
    tracehub_init(max_breadcrumbs=-1)
    events = capture_events()

    tracehub.add_breadcrumb(message="dropped")
    tracehub.capture_message("no crumbs")

    assert events[0]["breadcrumbs"]["values"] == []


def test_before_breadcrumb(tracehub_init, capture_events):
    def before_breadcrumb(crumb, hint):
        if crumb["message"] == "secret":
            return None
        crumb["data"] = {"seen": hint.get("origin")}
        return crumb

    tracehub_init(before_breadcrumb=before_breadcrumb)
    events = capture_events()

    tracehub.add_breadcrumb(message="secret")
    tracehub.add_breadcrumb(message="public", hint={"origin": "test"})
    tracehub.capture_message("done")

    (crumb,) = events[0]["breadcrumbs"]["values"]
    assert crumb["message"] == "public"
    assert crumb["data"] == {"seen": "test"}


def test_breadcrumb_without_client_is_dropped():
    hub = Hub.current
    hub.add_breadcrumb(message="nobody")
    assert hub.scope.breadcrumbs == []


def test_recover_exception(tracehub_init, capture_events):
    tracehub_init()
    events = capture_events()

    event_id = Hub.current.recover(RuntimeError("unwound"))

    (event,) = events
    assert event["event_id"] == event_id
    assert event["level"] == "fatal"
    (exception,) = event["exception"]["values"]
    assert exception["type"] == "RuntimeError"
    assert exception["mechanism"] == {"type": "recover", "handled": False}


def test_recover_non_exception_value(tracehub_init, capture_events):
    tracehub_init()
    events = capture_events()

    Hub.current.recover("plain message")
    Hub.current.recover({"code": 7})

    assert events[0]["message"] == "plain message"
    assert events[1]["message"] == "{'code': 7}"


def test_recover_with_context_passes_context_in_hint(tracehub_init, capture_events):
    hints = []

    def before_send(event, hint):
        hints.append(hint)
        return event

    tracehub_init(before_send=before_send)
    capture_events()

    context = {"request_id": "abc"}
    Hub.current.recover_with_context(context, ValueError("x"))

    assert hints[0]["context"] is context
    assert isinstance(hints[0]["recovered"], ValueError)


def test_recover_with_cancelled_context_is_skipped(tracehub_init, capture_events):
    tracehub_init()
    events = capture_events()

    cancelled = threading.Event()
    cancelled.set()
    assert Hub.current.recover_with_context(cancelled, ValueError("x")) is None

    loop = asyncio.new_event_loop()
    try:
        future = loop.create_future()
        future.cancel()
        assert Hub.current.recover_with_context(future, ValueError("x")) is None
    finally:
        loop.close()

    assert events == []


def test_recovering_reraises(tracehub_init, capture_events):
    tracehub_init()
    events = capture_events()

    with pytest.raises(KeyError):
        with Hub.current.recovering():
            raise KeyError("missing")

    (event,) = events
    assert event["exception"]["values"][0]["type"] == "KeyError"


def test_recovering_without_repanic_swallows(tracehub_init, capture_events):
    tracehub_init()
    events = capture_events()

    with Hub.current.recovering(repanic=False):
        raise KeyError("missing")

    assert len(events) == 1


def test_recovering_as_decorator(tracehub_init, capture_events):
    tracehub_init()
    events = capture_events()

    @Hub.current.recovering()
    def explode():
        raise ValueError("from decorator")

    @Hub.current.recovering()
    def fine():
        return "ok"

    assert fine() == "ok"
    with pytest.raises(ValueError):
        explode()

    assert len(events) == 1


def test_init_binds_client_and_closes_on_exit():
    transport = tracehub.Transport()
    transport.capture_envelope = lambda envelope: None

    with tracehub.init(transport=transport, default_integrations=False):
        client = Hub.current.client
        assert client is not None
        assert client.is_active()

    assert not client.is_active()


def test_init_with_invalid_configuration_raises():
    with pytest.raises(ValueError):
        tracehub.init(dsn="not a dsn", default_integrations=False)
    assert Hub.current.client is None


def test_flush_without_client():
    assert Hub().flush(timeout=0) is False


def test_scope_property():
    hub = Hub()
    assert isinstance(hub.scope, Scope)
    with hub.push_scope() as scope:
        assert hub.scope is scope


def test_breadcrumb_cap_can_be_set_per_call(tracehub_init, capture_events):
    tracehub_init()
    events = capture_events()

    for i in range(5):
        tracehub.add_breadcrumb({"message": str(i)}, max_breadcrumbs=2)
    tracehub.capture_message("with crumbs")

    crumbs = events[0]["breadcrumbs"]["values"]
    assert [c["message"] for c in crumbs] == ["3", "4"]
    assert "max_breadcrumbs" not in crumbs[0]


def test_per_call_breadcrumb_cap_is_bounded(tracehub_init, capture_events):
    tracehub_init()
    events = capture_events()

    for i in range(150):
        Hub.current.add_breadcrumb(message=str(i), max_breadcrumbs=1000)
    tracehub.capture_message("with crumbs")

    assert len(events[0]["breadcrumbs"]["values"]) == 100


def test_failed_init_unbinds_previous_client():
    transport = tracehub.Transport()
    sent = []
    transport.capture_envelope = sent.append

    tracehub.init(transport=transport, default_integrations=False)
    assert Hub.current.client is not None

    with pytest.raises(ValueError):
        tracehub.init(dsn="not a dsn", default_integrations=False)

    assert Hub.current.client is None
    assert tracehub.capture_message("after failed init") is None
    assert sent == []


def test_with_scope_drops_layers_leaked_by_callback():
    hub = Hub()
    hub.scope.set_tag("base", "1")

    def callback(scope):
        hub.push_scope()
        hub.scope.set_tag("leaked", "1")

    hub.with_scope(callback)

    assert len(hub._stack) == 1
    assert hub.scope._tags == {"base": "1"}
