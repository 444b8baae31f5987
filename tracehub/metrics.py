import time

from tracehub.hub import Hub
from tracehub.utils import safe_repr

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Dict, Optional, Union

    from tracehub._types import Metric, MetricType


def _capture_metric(
    name: str,
    metric_type: "MetricType",
    value: float,
    unit: "Optional[str]" = None,
    attributes: "Optional[Dict[str, Any]]" = None,
) -> None:
    hub = Hub.current
    client = hub.client
    if client is None:
        return

    attrs: "Dict[str, Union[str, bool, float, int]]" = {}
    if attributes:
        for k, v in attributes.items():
            attrs[k] = v if isinstance(v, (str, int, bool, float)) else safe_repr(v)

    metric: "Metric" = {
        "timestamp": time.time(),
        "trace_id": None,
        "span_id": None,
        "name": name,
        "type": metric_type,
        "value": float(value),
        "unit": unit,
        "attributes": attrs,
    }

    client.capture_metric(metric, scope=hub.scope)


def count(
    name: str,
    value: float = 1,
    unit: "Optional[str]" = None,
    attributes: "Optional[Dict[str, Any]]" = None,
) -> None:
    _capture_metric(name, "counter", value, unit, attributes)


def gauge(
    name: str,
    value: float,
    unit: "Optional[str]" = None,
    attributes: "Optional[Dict[str, Any]]" = None,
) -> None:
    _capture_metric(name, "gauge", value, unit, attributes)


def distribution(
    name: str,
    value: float,
    unit: "Optional[str]" = None,
    attributes: "Optional[Dict[str, Any]]" = None,
) -> None:
    _capture_metric(name, "distribution", value, unit, attributes)
