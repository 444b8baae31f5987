from functools import wraps
from inspect import iscoroutinefunction

from tracehub.crons.api import capture_checkin
from tracehub.crons.consts import MonitorStatus
from tracehub.utils import now

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from types import TracebackType
    from typing import Any, Callable, Dict, Optional, Type, TypeVar

    R = TypeVar("R")


class monitor:  # noqa: N801
    """
    Decorator/context manager to capture checkin events for a monitor.

    Usage (as decorator):
    ```
    import tracehub

    @tracehub.monitor(monitor_slug='nightly-cleanup')
    def cleanup():
        ...
    ```

    Usage (as context manager):
    ```
    import tracehub

    def cleanup():
        with tracehub.monitor(monitor_slug='nightly-cleanup'):
            ...
    ```

    Coroutine functions are supported as well.
    """

    def __init__(
        self,
        monitor_slug: "Optional[str]" = None,
        monitor_config: "Optional[Dict[str, Any]]" = None,
    ) -> None:
        self.monitor_slug = monitor_slug
        self.monitor_config = monitor_config

    def __enter__(self) -> None:
        self.start_timestamp = now()
        self.check_in_id = capture_checkin(
            monitor_slug=self.monitor_slug,
            status=MonitorStatus.IN_PROGRESS,
            monitor_config=self.monitor_config,
        )

    def __exit__(
        self,
        exc_type: "Optional[Type[BaseException]]",
        exc_value: "Optional[BaseException]",
        traceback: "Optional[TracebackType]",
    ) -> None:
        duration_s = now() - self.start_timestamp

        if exc_type is None and exc_value is None and traceback is None:
            status = MonitorStatus.OK
        else:
            status = MonitorStatus.ERROR

        capture_checkin(
            monitor_slug=self.monitor_slug,
            check_in_id=self.check_in_id,
            status=status,
            duration=duration_s,
            monitor_config=self.monitor_config,
        )

    def __call__(self, fn: "Callable[..., R]") -> "Callable[..., Any]":
        if iscoroutinefunction(fn):

            @wraps(fn)
            async def inner(*args: "Any", **kwargs: "Any") -> "Any":
                with self:
                    return await fn(*args, **kwargs)

        else:

            @wraps(fn)
            def inner(*args: "Any", **kwargs: "Any") -> "Any":
                with self:
                    return fn(*args, **kwargs)

        return inner
