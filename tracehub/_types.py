from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from datetime import datetime
    from types import TracebackType
    from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type, Union

    from typing_extensions import Literal, TypedDict

    LogLevelStr = Literal["fatal", "error", "warning", "info", "debug"]

    Event = TypedDict(
        "Event",
        {
            "breadcrumbs": Dict[Literal["values"], List[Dict[str, Any]]],
            "check_in_id": str,
            "contexts": Dict[str, Dict[str, object]],
            "dist": str,
            "duration": Optional[float],
            "environment": Optional[str],
            "event_id": str,
            "exception": Dict[Literal["values"], List[Dict[str, Any]]],
            "extra": Dict[str, object],
            "fingerprint": List[str],
            "level": LogLevelStr,
            "logentry": Mapping[str, object],
            "measurements": Dict[str, Dict[str, Any]],
            "message": str,
            "modules": Dict[str, str],
            "monitor_config": Mapping[str, object],
            "monitor_slug": Optional[str],
            "platform": Literal["python"],
            "release": Optional[str],
            "request": Dict[str, object],
            "sdk": Mapping[str, object],
            "server_name": str,
            "spans": List[Dict[str, object]],
            "start_timestamp": datetime,
            "status": Optional[str],
            "tags": Dict[str, str],
            "timestamp": Optional[datetime],
            "transaction": str,
            "transaction_info": Mapping[str, Any],
            "type": Literal["check_in", "transaction"],
            "user": Dict[str, object],
        },
        total=False,
    )

    ExcInfo = Union[
        Tuple[Type[BaseException], BaseException, Optional[TracebackType]],
        Tuple[None, None, None],
    ]

    Hint = Dict[str, Any]
    Breadcrumb = Dict[str, Any]
    BreadcrumbHint = Dict[str, Any]

    AttributeValue = Union[str, bool, float, int]
    Attributes = Dict[str, AttributeValue]

    Log = TypedDict(
        "Log",
        {
            "severity_text": str,
            "severity_number": int,
            "body": str,
            "attributes": Attributes,
            "time_unix_nano": int,
            "trace_id": Optional[str],
            "span_id": Optional[str],
        },
    )

    MetricType = Literal["counter", "gauge", "distribution"]

    Metric = TypedDict(
        "Metric",
        {
            "timestamp": float,
            "trace_id": Optional[str],
            "span_id": Optional[str],
            "name": str,
            "type": MetricType,
            "value": float,
            "unit": Optional[str],
            "attributes": Attributes,
        },
    )

    SamplingContext = Dict[str, Any]

    EventProcessor = Callable[[Event, Hint], Optional[Event]]
    TransactionProcessor = Callable[[Event, Hint], Optional[Event]]
    BreadcrumbProcessor = Callable[[Breadcrumb, BreadcrumbHint], Optional[Breadcrumb]]
    LogProcessor = Callable[[Log, Hint], Optional[Log]]
    MetricProcessor = Callable[[Metric, Hint], Optional[Metric]]

    TracesSampler = Callable[[SamplingContext], Union[float, int, bool]]

    EventDataCategory = Literal[
        "default",
        "error",
        "transaction",
        "monitor",
        "log_item",
        "trace_metric",
    ]

    MonitorConfig = Dict[str, Any]
