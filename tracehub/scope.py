from collections import deque
from copy import copy

from tracehub.tracing import Transaction
from tracehub.utils import capture_internal_exceptions, logger

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Deque, Dict, List, Mapping, Optional

    from tracehub._types import Breadcrumb, Event, EventProcessor, Hint, LogLevelStr
    from tracehub.tracing import Span


global_event_processors: "List[EventProcessor]" = []


def add_global_event_processor(processor: "EventProcessor") -> None:
    """Registers a processor that the client runs for every event after the
    scope's own processors."""
    global_event_processors.append(processor)


def _attr_setter(fn: "Any") -> "Any":
    return property(fset=fn, doc=fn.__doc__)


class Scope:
    """The scope holds extra information that should be sent with all
    events that belong to it.
    """

    # NOTE: A scope is owned by a single hub and thread. It must not crash
    # when shared by accident, but there are no locks here.

    __slots__ = (
        "_level",
        "_fingerprint",
        "_transaction",
        "_transaction_info",
        "_user",
        "_tags",
        "_contexts",
        "_extras",
        "_breadcrumbs",
        "_event_processors",
        "_span",
        "_request",
    )

    def __init__(self) -> None:
        self._event_processors: "List[EventProcessor]" = []
        self.clear()

    def clear(self) -> None:
        """Clears the entire scope."""
        self._level: "Optional[LogLevelStr]" = None
        self._fingerprint: "Optional[List[str]]" = None
        self._transaction: "Optional[str]" = None
        self._transaction_info: "Dict[str, str]" = {}
        self._user: "Optional[Dict[str, Any]]" = None

        self._tags: "Dict[str, Any]" = {}
        self._contexts: "Dict[str, Dict[str, Any]]" = {}
        self._extras: "Dict[str, Any]" = {}
        self._request: "Optional[Dict[str, Any]]" = None

        self.clear_breadcrumbs()
        del self._event_processors[:]

        self._span: "Optional[Span]" = None

    def __copy__(self) -> "Scope":
        """
        Returns a copy of this scope.
        This also creates a copy of all referenced data structures.
        """
        rv: "Scope" = object.__new__(self.__class__)

        rv._level = self._level
        rv._fingerprint = (
            list(self._fingerprint) if self._fingerprint is not None else None
        )
        rv._transaction = self._transaction
        rv._transaction_info = self._transaction_info.copy()
        rv._user = dict(self._user) if self._user is not None else None

        rv._tags = self._tags.copy()
        rv._contexts = {k: dict(v) for k, v in self._contexts.items()}
        rv._extras = self._extras.copy()
        rv._request = dict(self._request) if self._request is not None else None

        rv._breadcrumbs = deque(dict(crumb) for crumb in self._breadcrumbs)
        rv._event_processors = list(self._event_processors)

        rv._span = self._span

        return rv

    def clone(self) -> "Scope":
        """Returns an independent copy of this scope. Changing either one
        never affects the other."""
        return copy(self)

    @_attr_setter
    def level(self, value: "Optional[LogLevelStr]") -> None:
        """When set this overrides the level."""
        self._level = value

    def set_level(self, value: "Optional[LogLevelStr]") -> None:
        """Sets the level for the scope."""
        self._level = value

    @_attr_setter
    def fingerprint(self, value: "Optional[List[str]]") -> None:
        """When set this overrides the default fingerprint."""
        self._fingerprint = value

    def set_fingerprint(self, value: "Optional[List[str]]") -> None:
        self._fingerprint = list(value) if value is not None else None

    @property
    def transaction(self) -> "Optional[Transaction]":
        """Return the transaction (root span) in the scope, if any."""
        if self._span is None:
            return None
        return self._span.containing_transaction

    def set_transaction_name(self, name: str, source: "Optional[str]" = None) -> None:
        """Set the transaction name and optionally the transaction source."""
        self._transaction = name

        if self._span and self._span.containing_transaction:
            self._span.containing_transaction.name = name
            if source:
                self._span.containing_transaction.source = source

        if source:
            self._transaction_info["source"] = source

    @_attr_setter
    def user(self, value: "Optional[Dict[str, Any]]") -> None:
        """When set a specific user is bound to the scope."""
        self.set_user(value)

    def set_user(self, value: "Optional[Dict[str, Any]]") -> None:
        """Sets a user for the scope."""
        self._user = value

    def set_request(self, value: "Optional[Dict[str, Any]]") -> None:
        """Binds a snapshot of the request being handled."""
        self._request = value

    @property
    def span(self) -> "Optional[Span]":
        """Get/set current tracing span or transaction."""
        return self._span

    @span.setter
    def span(self, span: "Optional[Span]") -> None:
        self._span = span
        if isinstance(span, Transaction):
            transaction = span
            if transaction.name:
                self._transaction = transaction.name
                if transaction.source:
                    self._transaction_info["source"] = transaction.source

    def set_tag(self, key: str, value: "Any") -> None:
        """
        Sets a tag for a key to a specific value.

        :param key: Key of the tag to set.

        :param value: Value of the tag to set.
        """
        self._tags[key] = value

    def set_tags(self, tags: "Mapping[str, object]") -> None:
        """Sets multiple tags at once. Existing keys are overwritten, other
        tags stay untouched."""
        self._tags.update(tags)

    def remove_tag(self, key: str) -> None:
        """Removes a specific tag."""
        self._tags.pop(key, None)

    def set_context(self, key: str, value: "Dict[str, Any]") -> None:
        """Binds a context at a certain key to a specific value."""
        self._contexts[key] = value

    def remove_context(self, key: str) -> None:
        """Removes a context."""
        self._contexts.pop(key, None)

    def set_extra(self, key: str, value: "Any") -> None:
        """Sets an extra key to a specific value."""
        self._extras[key] = value

    def set_extras(self, extras: "Mapping[str, Any]") -> None:
        self._extras.update(extras)

    def remove_extra(self, key: str) -> None:
        """Removes a specific extra key."""
        self._extras.pop(key, None)

    def clear_breadcrumbs(self) -> None:
        """Clears breadcrumb buffer."""
        self._breadcrumbs: "Deque[Breadcrumb]" = deque()

    def add_breadcrumb(self, crumb: "Breadcrumb", max_breadcrumbs: int) -> None:
        """
        Appends a breadcrumb, then evicts the oldest ones until at most
        `max_breadcrumbs` are left.

        Hooks and defaults are applied by the hub before the breadcrumb ends
        up here.
        """
        self._breadcrumbs.append(crumb)
        while self._breadcrumbs and len(self._breadcrumbs) > max(max_breadcrumbs, 0):
            self._breadcrumbs.popleft()

    @property
    def breadcrumbs(self) -> "List[Breadcrumb]":
        return list(self._breadcrumbs)

    def add_event_processor(self, func: "EventProcessor") -> None:
        """Register a scope local event processor on the scope.

        :param func: This function behaves like `before_send.`
        """
        if len(self._event_processors) > 20:
            logger.warning(
                "Too many event processors on scope! Clearing list to free up some memory: %r",
                self._event_processors,
            )
            del self._event_processors[:]

        self._event_processors.append(func)

    def _apply_fingerprint_to_event(self, event: "Event") -> None:
        if event.get("fingerprint") is None and self._fingerprint is not None:
            event["fingerprint"] = list(self._fingerprint)

    def _apply_user_to_event(self, event: "Event") -> None:
        if event.get("user") is None and self._user is not None:
            event["user"] = dict(self._user)

    def _apply_tags_to_event(self, event: "Event") -> None:
        if self._tags:
            event.setdefault("tags", {}).update(self._tags)

    def _apply_extra_to_event(self, event: "Event") -> None:
        if self._extras:
            event.setdefault("extra", {}).update(self._extras)

    def _apply_contexts_to_event(self, event: "Event") -> None:
        if self._contexts:
            contexts = event.setdefault("contexts", {})
            for key, value in self._contexts.items():
                if key not in contexts:
                    contexts[key] = (
                        dict(value) if isinstance(value, dict) else value
                    )

    def _apply_level_to_event(self, event: "Event") -> None:
        if self._level is not None:
            event["level"] = self._level

    def _apply_transaction_name_to_event(self, event: "Event") -> None:
        if event.get("transaction") is None and self._transaction is not None:
            event["transaction"] = self._transaction
        if event.get("transaction_info") is None and self._transaction_info:
            event["transaction_info"] = dict(self._transaction_info)

    def _apply_request_to_event(self, event: "Event") -> None:
        if event.get("request") is None and self._request is not None:
            event["request"] = dict(self._request)

    def _apply_trace_context_to_event(
        self, event: "Event", with_sampling_context: bool = True
    ) -> None:
        contexts = event.setdefault("contexts", {})
        if contexts.get("trace") is None and self._span is not None:
            trace_context = self._span.get_trace_context()
            transaction = self._span.containing_transaction
            if with_sampling_context and transaction is not None:
                trace_context["dynamic_sampling_context"] = (
                    transaction.get_baggage().dynamic_sampling_context()
                )
            contexts["trace"] = trace_context

    def _apply_breadcrumbs_to_event(self, event: "Event") -> None:
        event.setdefault("breadcrumbs", {}).setdefault("values", []).extend(
            dict(crumb) for crumb in self._breadcrumbs
        )

    def _drop(self, cause: "Any", ty: str) -> "Optional[Any]":
        logger.info("%s (%s) dropped event", ty, cause)
        return None

    def run_event_processors(self, event: "Event", hint: "Hint") -> "Optional[Event]":
        """
        Runs the scope's event processors in registration order. The first
        one returning None drops the event and the rest are skipped.
        """
        for event_processor in list(self._event_processors):
            new_event = event
            with capture_internal_exceptions():
                new_event = event_processor(event, hint)
            if new_event is None:
                return self._drop(event_processor, "event processor")
            event = new_event

        return event

    def apply_to_event(
        self,
        event: "Event",
        hint: "Hint",
        options: "Optional[Dict[str, Any]]" = None,
    ) -> "Optional[Event]":
        """Applies the information contained on the scope to the given event."""
        ty = event.get("type")
        is_transaction = ty == "transaction"
        is_check_in = ty == "check_in"

        if is_check_in:
            # Check-ins only carry the trace context
            self._apply_trace_context_to_event(event, with_sampling_context=False)
            event["contexts"] = {"trace": event["contexts"].get("trace", {})}
            return event

        self._apply_fingerprint_to_event(event)
        self._apply_user_to_event(event)
        self._apply_tags_to_event(event)
        self._apply_extra_to_event(event)
        self._apply_contexts_to_event(event)
        self._apply_level_to_event(event)
        self._apply_transaction_name_to_event(event)
        self._apply_request_to_event(event)
        self._apply_trace_context_to_event(event)

        if not is_transaction:
            self._apply_breadcrumbs_to_event(event)

        return self.run_event_processors(event, hint)

    def update_from_kwargs(
        self,
        user: "Optional[Any]" = None,
        level: "Optional[LogLevelStr]" = None,
        extras: "Optional[Dict[str, Any]]" = None,
        contexts: "Optional[Dict[str, Dict[str, Any]]]" = None,
        tags: "Optional[Dict[str, str]]" = None,
        fingerprint: "Optional[List[str]]" = None,
    ) -> None:
        """Update the scope's attributes."""
        if level is not None:
            self._level = level
        if user is not None:
            self._user = user
        if extras is not None:
            self._extras.update(extras)
        if contexts is not None:
            self._contexts.update(contexts)
        if tags is not None:
            self._tags.update(tags)
        if fingerprint is not None:
            self._fingerprint = fingerprint

    def __repr__(self) -> str:
        return "<%s id=%s>" % (
            self.__class__.__name__,
            hex(id(self)),
        )
