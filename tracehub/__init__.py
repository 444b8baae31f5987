from tracehub.hub import Hub, init
from tracehub.scope import Scope, add_global_event_processor
from tracehub.transport import HttpSyncTransport, HttpTransport, Transport
from tracehub.client import Client
from tracehub.tracing import NoOpSpan, Span, Transaction

from tracehub.api import *  # noqa

from tracehub.consts import VERSION  # noqa

from tracehub.crons import capture_checkin, monitor  # noqa

from tracehub import logger, metrics  # noqa

__all__ = [  # noqa
    "Hub",
    "Scope",
    "Client",
    "Transport",
    "HttpTransport",
    "HttpSyncTransport",
    "Span",
    "Transaction",
    "NoOpSpan",
    "init",
    "integrations",
    "logger",
    "metrics",
    "monitor",
    "capture_checkin",
    "add_global_event_processor",
    # From tracehub.api
    "get_current_hub",
    "set_current_hub",
    "get_client",
    "is_initialized",
    "capture_event",
    "capture_message",
    "capture_exception",
    "recover",
    "recover_with_context",
    "recovering",
    "add_breadcrumb",
    "configure_scope",
    "push_scope",
    "with_scope",
    "set_tag",
    "set_tags",
    "set_context",
    "set_extra",
    "set_user",
    "set_level",
    "set_transaction_name",
    "flush",
    "flush_with_context",
    "last_event_id",
    "start_span",
    "start_transaction",
    "continue_trace",
    "get_current_span",
    "get_traceparent",
]

# Initialize the debug support after everything is loaded
from tracehub.debug import init_debug_support

init_debug_support()
del init_debug_support
