from datetime import datetime, timezone
from typing import TYPE_CHECKING

from tracehub._batcher import BatchEmitter
from tracehub.consts import DataCategory
from tracehub.envelope import Envelope, Item, PayloadRef
from tracehub.utils import format_timestamp, serialize_attribute

if TYPE_CHECKING:
    from typing import Any, Callable, List

    from tracehub._types import Log


class ItemBatcher(BatchEmitter["Any"]):
    """A batch emitter whose batches become a single envelope item."""

    TYPE = ""
    CONTENT_TYPE = ""

    def __init__(
        self,
        capture_func: "Callable[[Envelope], Any]",
        record_lost_func: "Callable[..., None]",
        **kwargs: "Any"
    ) -> None:
        kwargs.setdefault("name", "tracehub.%s" % type(self).__name__)
        BatchEmitter.__init__(
            self, self._send_batch, record_lost_func=record_lost_func, **kwargs
        )
        self._capture_func = capture_func

    def _to_envelope(self, batch: "List[Any]") -> "Envelope":
        envelope = Envelope(
            headers={"sent_at": format_timestamp(datetime.now(timezone.utc))}
        )
        envelope.add_item(
            Item(
                type=self.TYPE,
                content_type=self.CONTENT_TYPE,
                headers={
                    "item_count": len(batch),
                },
                payload=PayloadRef(
                    json={"items": [self._to_transport_format(x) for x in batch]}
                ),
            )
        )
        return envelope

    def _send_batch(self, batch: "List[Any]") -> None:
        self._capture_func(self._to_envelope(batch))

    @staticmethod
    def _to_transport_format(item: "Any") -> "Any":
        return item


class LogBatcher(ItemBatcher):
    TYPE = "log"
    CONTENT_TYPE = "application/vnd.sentry.items.log+json"
    DATA_CATEGORY = DataCategory.LOG_ITEM

    @staticmethod
    def _to_transport_format(item: "Log") -> "Any":
        if "sentry.severity_number" not in item["attributes"]:
            item["attributes"]["sentry.severity_number"] = item["severity_number"]
        if "sentry.severity_text" not in item["attributes"]:
            item["attributes"]["sentry.severity_text"] = item["severity_text"]

        res = {
            "timestamp": int(item["time_unix_nano"]) / 1.0e9,
            "trace_id": item.get("trace_id") or "00000000000000000000000000000000",
            "level": str(item["severity_text"]),
            "body": str(item["body"]),
            "attributes": {
                k: serialize_attribute(v) for (k, v) in item["attributes"].items()
            },
        }

        if item.get("span_id") is not None:
            res["span_id"] = item["span_id"]

        return res
