from tracehub.crons.api import capture_checkin
from tracehub.crons.consts import MonitorStatus
from tracehub.crons.decorator import monitor


__all__ = [
    "capture_checkin",
    "MonitorStatus",
    "monitor",
]
