# NOTE: this is the logger tracehub exposes to users, not the internal
# diagnostics logger in tracehub.utils.
import functools
import time

from tracehub.hub import Hub
from tracehub.utils import capture_internal_exceptions, safe_repr

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Dict, Union


class _dict_default_key(dict):  # type: ignore[type-arg]
    """dict that returns the key if missing."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _capture_log(
    severity_text: str, severity_number: int, template: str, **kwargs: "Any"
) -> None:
    hub = Hub.current
    client = hub.client
    if client is None:
        return

    body = template
    attrs: "Dict[str, Any]" = {}
    if "attributes" in kwargs:
        attrs.update(kwargs.pop("attributes"))
    for k, v in kwargs.items():
        attrs["sentry.message.parameter.%s" % k] = v
    if kwargs:
        # only attach template if there are parameters
        attrs["sentry.message.template"] = template

        with capture_internal_exceptions():
            body = template.format_map(_dict_default_key(kwargs))

    attributes: "Dict[str, Union[str, bool, float, int]]" = {
        k: (v if isinstance(v, (str, int, bool, float)) else safe_repr(v))
        for (k, v) in attrs.items()
    }

    client.capture_log(
        {
            "severity_text": severity_text,
            "severity_number": severity_number,
            "attributes": attributes,
            "body": body,
            "time_unix_nano": time.time_ns(),
            "trace_id": None,
            "span_id": None,
        },
        scope=hub.scope,
    )


trace = functools.partial(_capture_log, "trace", 1)
debug = functools.partial(_capture_log, "debug", 5)
info = functools.partial(_capture_log, "info", 9)
warning = functools.partial(_capture_log, "warn", 13)
error = functools.partial(_capture_log, "error", 17)
fatal = functools.partial(_capture_log, "fatal", 21)
