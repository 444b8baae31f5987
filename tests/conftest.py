import gzip
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

import tracehub
from tracehub import hub as hub_module
from tracehub.envelope import Envelope
from tracehub.integrations import (  # noqa: F401
    _installed_integrations,
    _processed_integrations,
)
from tracehub.transport import Transport
from tracehub.utils import reraise


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "tests_internal_exceptions: let internal errors be logged instead of "
        "re-raised at the end of the test",
    )


@pytest.fixture(autouse=True)
def clean_hub():
    """
    Resets the hubs for every test to avoid leaking clients and scope data
    between tests.
    """
    hub_module._main_hub = None
    hub_module._initial_client = None
    hub_module._local.set(None)
    yield
    main_hub = hub_module._main_hub
    if main_hub is not None and main_hub.client is not None:
        main_hub.client.close(timeout=0)
    hub_module._main_hub = None
    hub_module._initial_client = None
    hub_module._local.set(None)


@pytest.fixture(autouse=True)
def internal_exceptions(request, monkeypatch):
    errors = []
    if "tests_internal_exceptions" in request.keywords:
        return

    def _capture_internal_exception(self, exc_info):
        errors.append(exc_info)

    @request.addfinalizer
    def _():
        # reraise the errors so that this just acts as a pass-through (that
        # happens to keep track of the errors which pass through it)
        for e in errors:
            reraise(*e)

    monkeypatch.setattr(
        tracehub.Hub, "_capture_internal_exception", _capture_internal_exception
    )

    return errors


@pytest.fixture
def reset_integrations():
    """
    Use with caution, sometimes we really need to start
    with a clean slate to ensure monkeypatching works well,
    but this also means some other stuff will be monkeypatched twice.
    """
    _processed_integrations.clear()
    _installed_integrations.clear()


@pytest.fixture
def tracehub_init():
    clients = []

    def inner(*a, **kw):
        kw.setdefault("transport", TestTransport())
        client = tracehub.Client(*a, **kw)
        tracehub.Hub.current.bind_client(client)
        clients.append(client)
        return client

    yield inner

    for client in clients:
        client.close(timeout=0)


class TestTransport(Transport):
    """Keeps everything it is given in memory."""

    __test__ = False

    def __init__(self):
        Transport.__init__(self)
        self.envelopes = []
        self.events = []

    def capture_envelope(self, envelope: Envelope) -> None:
        self.envelopes.append(envelope)
        for item in envelope:
            if item.headers.get("type") in ("event", "transaction", "check_in"):
                self.events.append(item.payload.json)


@pytest.fixture
def capture_events():
    def inner():
        transport = tracehub.Hub.current.client.transport
        del transport.events[:]
        return transport.events

    return inner


@pytest.fixture
def capture_envelopes():
    def inner():
        transport = tracehub.Hub.current.client.transport
        del transport.envelopes[:]
        return transport.envelopes

    return inner


@pytest.fixture
def capture_record_lost_event_calls(monkeypatch):
    def inner():
        calls = []
        test_client = tracehub.Hub.current.client

        def record_lost_event(reason, data_category=None, item=None, quantity=1):
            calls.append((reason, data_category, item, quantity))

        monkeypatch.setattr(
            test_client.transport, "record_lost_event", record_lost_event
        )
        return calls

    return inner


class CapturingServer:
    """A local HTTP endpoint that records every envelope posted to it."""

    def __init__(self):
        self.requests = []
        self.code = 200
        self.response_headers = {}
        self._lock = threading.Lock()

        server = self

        class Handler(BaseHTTPRequestHandler):
            def do_POST(self):
                length = int(self.headers.get("Content-Length") or 0)
                body = self.rfile.read(length)
                with server._lock:
                    server.requests.append((self.path, dict(self.headers), body))
                    code = server.code
                    headers = dict(server.response_headers)
                self.send_response(code)
                for key, value in headers.items():
                    self.send_header(key, value)
                self.send_header("Content-Length", "0")
                self.end_headers()

            def log_message(self, format, *args):
                pass

        self._httpd = HTTPServer(("127.0.0.1", 0), Handler)
        self.port = self._httpd.server_address[1]
        self._thread = threading.Thread(target=self._httpd.serve_forever)
        self._thread.daemon = True

    @property
    def dsn(self):
        return "http://public@127.0.0.1:%d/123" % self.port

    def start(self):
        self._thread.start()

    def stop(self):
        self._httpd.shutdown()
        self._httpd.server_close()

    def respond_with(self, code=200, headers=None):
        with self._lock:
            self.code = code
            self.response_headers = dict(headers or {})

    @property
    def envelopes(self):
        with self._lock:
            bodies = [body for _, _, body in self.requests]
        return [Envelope.deserialize(gzip.decompress(body)) for body in bodies]


@pytest.fixture
def capturing_server():
    server = CapturingServer()
    server.start()
    yield server
    server.stop()
