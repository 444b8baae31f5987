from typing import TYPE_CHECKING

from tracehub._log_batcher import ItemBatcher
from tracehub.consts import DataCategory
from tracehub.utils import serialize_attribute

if TYPE_CHECKING:
    from typing import Any

    from tracehub._types import Metric


class MetricsBatcher(ItemBatcher):
    TYPE = "trace_metric"
    CONTENT_TYPE = "application/vnd.sentry.items.trace-metric+json"
    DATA_CATEGORY = DataCategory.TRACE_METRIC

    @staticmethod
    def _to_transport_format(metric: "Metric") -> "Any":
        res = {
            "timestamp": metric["timestamp"],
            "trace_id": metric.get("trace_id") or "00000000000000000000000000000000",
            "name": metric["name"],
            "type": metric["type"],
            "value": metric["value"],
            "attributes": {
                k: serialize_attribute(v) for (k, v) in metric["attributes"].items()
            },
        }

        if metric.get("span_id") is not None:
            res["span_id"] = metric["span_id"]

        if metric.get("unit") is not None:
            res["unit"] = metric["unit"]

        return res
