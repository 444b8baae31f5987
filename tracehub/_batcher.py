import os
import queue
import threading
from typing import TYPE_CHECKING, TypeVar, Generic

from tracehub.consts import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_BATCH_TIMEOUT,
    OVERFLOW_POLICIES,
    OverflowPolicy,
)
from tracehub.utils import logger, now

if TYPE_CHECKING:
    from typing import Any, Callable, List, Optional, Tuple

T = TypeVar("T")

_ITEM = "item"
_FLUSH = "flush"
_TERMINATOR = "terminator"

# Upper bound for a single wait while a cancellation signal is polled
_CANCEL_POLL_INTERVAL = 0.05


class BatchEmitter(Generic[T]):
    """
    Groups items into batches and hands every batch to ``flush_func`` from a
    single background thread.

    The pending buffer belongs to the worker thread alone. Producers and
    control calls (`flush`, `shutdown`) only post messages to its mailbox, so
    the buffer is never shared. A batch is flushed when it reaches
    ``batch_size`` items, when ``batch_timeout`` seconds have passed since its
    first item arrived, on an explicit flush request and at shutdown.

    At most ``batch_size`` items can be in the mailbox at once. What happens
    to an item beyond that depends on ``overflow_policy``: ``drop_newest``
    rejects it right away, ``block`` makes the producer wait up to
    ``block_timeout`` seconds for room.
    """

    DATA_CATEGORY = None  # type: Optional[str]

    def __init__(
        self,
        flush_func: "Callable[[List[T]], Any]",
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_timeout: float = DEFAULT_BATCH_TIMEOUT,
        overflow_policy: str = OverflowPolicy.DROP_NEWEST,
        block_timeout: "Optional[float]" = None,
        record_lost_func: "Optional[Callable[..., None]]" = None,
        name: str = "tracehub.BatchEmitter",
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1, got %r" % (batch_size,))
        if batch_timeout <= 0:
            raise ValueError(
                "batch_timeout must be positive, got %r" % (batch_timeout,)
            )
        if overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(
                "Unknown overflow_policy %r, expected one of %s"
                % (overflow_policy, ", ".join(OVERFLOW_POLICIES))
            )

        self.batch_size = batch_size
        self.batch_timeout = batch_timeout
        self.overflow_policy = overflow_policy
        self.block_timeout = block_timeout
        self.name = name

        self._flush_func = flush_func
        self._record_lost_func = record_lost_func

        self._mailbox: "queue.Queue[Tuple[str, Any]]" = queue.Queue()
        self._slots = threading.BoundedSemaphore(batch_size)
        self._lock = threading.Lock()
        self._closed = False

        self._thread: "Optional[threading.Thread]" = None
        self._thread_for_pid: "Optional[int]" = None

    @property
    def is_alive(self) -> bool:
        if self._thread_for_pid != os.getpid():
            return False
        if not self._thread:
            return False
        return self._thread.is_alive()

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> bool:
        """Starts the worker thread unless it is already running. Returns
        whether a worker is running afterwards."""
        return self._ensure_thread()

    def _ensure_thread(self) -> bool:
        """For forking processes we might need to restart the thread.
        This ensures that our process actually has that thread running.
        """
        if self._closed:
            return False

        pid = os.getpid()
        if self._thread_for_pid == pid:
            return True

        with self._lock:
            # Recheck, another thread may have started the worker meanwhile
            if self._thread_for_pid == pid:
                return True
            if self._closed:
                return False

            thread = threading.Thread(target=self._target, name=self.name)
            thread.daemon = True
            try:
                thread.start()
            except RuntimeError:
                # The interpreter is shutting down and no longer allows us to
                # spawn a thread.
                self._closed = True
                return False

            self._thread = thread
            self._thread_for_pid = pid

        return True

    def add(self, item: "T") -> bool:
        """Queues an item for the next batch. Returns False when the item was
        rejected."""
        if not self._ensure_thread():
            logger.debug("%s is shut down, dropping item", self.name)
            self._record_lost(item, "queue_overflow")
            return False

        if self.overflow_policy == OverflowPolicy.BLOCK:
            acquired = self._slots.acquire(timeout=self.block_timeout)
        else:
            acquired = self._slots.acquire(blocking=False)

        if not acquired:
            logger.debug("%s queue is full, dropping item", self.name)
            self._record_lost(item, "queue_overflow")
            return False

        # Checked and posted under the lock so nothing lands behind the
        # terminator
        with self._lock:
            closed = self._closed
            if not closed:
                self._mailbox.put((_ITEM, item))

        if closed:
            self._slots.release()
            logger.debug("%s is shut down, dropping item", self.name)
            self._record_lost(item, "queue_overflow")
            return False
        return True

    def flush(
        self,
        timeout: "Optional[float]" = None,
        cancel: "Optional[threading.Event]" = None,
    ) -> bool:
        """
        Sends every item queued before this call.

        Blocks until the worker has flushed, the timeout has elapsed or
        ``cancel`` is set, and returns True only in the first case.
        """
        if self._thread_for_pid is None and not self._closed:
            # Nothing was ever added
            return True
        if not self._ensure_thread():
            return self._wait_for_exit(timeout)

        done = threading.Event()
        with self._lock:
            closed = self._closed
            if not closed:
                self._mailbox.put((_FLUSH, done))

        if closed:
            return self._wait_for_exit(timeout)
        return _wait(done, timeout, cancel)

    def shutdown(self, timeout: "Optional[float]" = None) -> bool:
        """
        Flushes what is queued and stops the worker. Items added afterwards
        are rejected. Calling this more than once has no further effect.
        """
        with self._lock:
            already_closed = self._closed
            self._closed = True
            running = self._thread_for_pid == os.getpid() and self._thread is not None
            if running and not already_closed:
                self._mailbox.put((_TERMINATOR, None))

        if already_closed:
            return self._wait_for_exit(0)
        return self._wait_for_exit(timeout)

    def _wait_for_exit(self, timeout: "Optional[float]") -> bool:
        thread = self._thread
        if thread is not None and self._thread_for_pid == os.getpid():
            thread.join(timeout)
            if thread.is_alive():
                return False
        self._drop_leftovers()
        return True

    def _drop_leftovers(self) -> None:
        # Only reachable once no worker is reading the mailbox anymore
        while True:
            try:
                kind, payload = self._mailbox.get_nowait()
            except queue.Empty:
                return
            if kind == _ITEM:
                self._slots.release()
                self._record_lost(payload, "queue_overflow")
            elif payload is not None:
                payload.set()

    def _target(self) -> None:
        buffer = []  # type: List[T]
        deadline = None  # type: Optional[float]

        while True:
            if deadline is not None and now() >= deadline:
                self._flush_buffer(buffer)
                deadline = None

            timeout = None if deadline is None else max(0.0, deadline - now())
            try:
                kind, payload = self._mailbox.get(timeout=timeout)
            except queue.Empty:
                continue

            if kind == _ITEM:
                self._slots.release()
                if not buffer:
                    deadline = now() + self.batch_timeout
                buffer.append(payload)
                if len(buffer) >= self.batch_size:
                    self._flush_buffer(buffer)
                    deadline = None
                continue

            waiters = []
            terminate = kind == _TERMINATOR
            if payload is not None:
                waiters.append(payload)

            # Take what is already queued without waiting for new arrivals
            while True:
                try:
                    kind, payload = self._mailbox.get_nowait()
                except queue.Empty:
                    break
                if kind == _ITEM:
                    self._slots.release()
                    buffer.append(payload)
                    if len(buffer) >= self.batch_size:
                        self._flush_buffer(buffer)
                else:
                    if kind == _TERMINATOR:
                        terminate = True
                    if payload is not None:
                        waiters.append(payload)

            self._flush_buffer(buffer)
            deadline = None

            for waiter in waiters:
                waiter.set()

            if terminate:
                logger.debug("%s worker shut down", self.name)
                return

    def _flush_buffer(self, buffer: "List[T]") -> None:
        if not buffer:
            return
        batch = list(buffer)
        del buffer[:]
        try:
            self._flush_func(batch)
        except Exception:
            logger.error("%s failed to flush a batch", self.name, exc_info=True)

    def _record_lost(self, item: "T", reason: str) -> None:
        if self._record_lost_func is not None:
            self._record_lost_func(
                reason=reason, data_category=self.DATA_CATEGORY, quantity=1
            )


def _wait(
    event: "threading.Event",
    timeout: "Optional[float]",
    cancel: "Optional[threading.Event]" = None,
) -> bool:
    if cancel is None:
        return event.wait(timeout)

    deadline = None if timeout is None else now() + timeout
    while not event.is_set():
        if cancel.is_set():
            return False
        if deadline is None:
            step = _CANCEL_POLL_INTERVAL
        else:
            remaining = deadline - now()
            if remaining <= 0:
                return False
            step = min(remaining, _CANCEL_POLL_INTERVAL)
        event.wait(step)
    return True
