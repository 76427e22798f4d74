"""Outbound delivery queue (core domain).

One queue per outbound channel (bot account, push gateway, webhook). Jobs are
sent one at a time, highest priority first and FIFO within a priority, under
a rolling-window rate cap. Transport errors from ``core.errors`` decide
whether a job is dropped, retried after a channel-wide pause or resent to a
migrated target.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, Deque, List, Optional

from pagerbuddy.core.config import DeliveryConfig
from pagerbuddy.core.errors import (
    DeliveryError,
    FloodError,
    ForbiddenError,
    MalformedRequestError,
    ServerError,
    TargetMigratedError,
)

LOGGER = logging.getLogger(__name__)


class Priority(IntEnum):
    STANDARD = 0
    ALERT = 10


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED_PERMANENT = "failed_permanent"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass(frozen=True)
class DeliveryResult:
    status: DeliveryStatus
    target: str = ""
    message_id: Any = None
    error: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.status is DeliveryStatus.SENT


@dataclass(eq=False)
class DeliveryJob:
    """A single send against one target. ``send(target)`` returns the message id."""

    target: str
    send: Callable[[str], Awaitable[Any]]
    description: str = ""


class _State(Enum):
    QUEUED = "queued"
    SENDING = "sending"
    DONE = "done"


@dataclass(eq=False)
class _Entry:
    job: DeliveryJob
    priority: int
    seq: int
    deadline: Optional[float]
    future: asyncio.Future
    state: _State = _State.QUEUED
    migrated: bool = False

    def __lt__(self, other: "_Entry") -> bool:
        return (-self.priority, self.seq) < (-other.priority, other.seq)


class DeliveryHandle:
    """Awaitable outcome of an enqueued job; cancellable until it is dispatched."""

    def __init__(self, entry: _Entry) -> None:
        self._entry = entry

    def __await__(self):
        return self._entry.future.__await__()

    def done(self) -> bool:
        return self._entry.future.done()

    def cancel(self) -> bool:
        if self._entry.state is not _State.QUEUED:
            return False
        _resolve(self._entry, DeliveryResult(DeliveryStatus.CANCELLED, self._entry.job.target))
        return True


def _resolve(entry: _Entry, result: DeliveryResult) -> None:
    entry.state = _State.DONE
    if not entry.future.done():
        entry.future.set_result(result)


class DeliveryQueue:
    """Priority, rate-limited, pausable send queue with concurrency one."""

    def __init__(
        self,
        name: str,
        config: DeliveryConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self._config = config
        self._clock = clock
        self._sleep = sleep
        self._heap: List[_Entry] = []
        self._seq = itertools.count()
        self._sent_at: Deque[float] = deque()
        self._paused_until = 0.0
        self._wakeup = asyncio.Event()
        self._worker: Optional[asyncio.Task] = None
        self._current: Optional[_Entry] = None
        self.error_since: Optional[datetime] = None
        self.on_target_migrated: Optional[Callable[[str, str], Awaitable[None]]] = None
        self.on_target_forbidden: Optional[Callable[[str], Awaitable[None]]] = None

    @property
    def pending(self) -> int:
        return sum(1 for entry in self._heap if entry.state is _State.QUEUED)

    @property
    def paused(self) -> bool:
        return self._paused_until > self._clock()

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.get_running_loop().create_task(self._run(), name=f"queue-{self.name}")

    async def stop(self) -> None:
        """Stop the worker and resolve everything still waiting as CANCELLED."""

        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        leftovers = list(self._heap)
        if self._current is not None:
            leftovers.append(self._current)
        self._heap.clear()
        for entry in leftovers:
            _resolve(entry, DeliveryResult(DeliveryStatus.CANCELLED, entry.job.target))

    async def drain(self) -> None:
        """Wait until every job enqueued so far has an outcome."""

        while True:
            futures = [entry.future for entry in self._heap if not entry.future.done()]
            if self._current is not None and not self._current.future.done():
                futures.append(self._current.future)
            if not futures:
                return
            await asyncio.wait(futures)

    def enqueue(
        self,
        job: DeliveryJob,
        priority: Priority = Priority.STANDARD,
        max_latency: Optional[timedelta] = None,
    ) -> DeliveryHandle:
        if max_latency is None:
            max_latency = (
                self._config.alert_max_latency if priority >= Priority.ALERT else self._config.standard_max_latency
            )
        entry = _Entry(
            job=job,
            priority=int(priority),
            seq=next(self._seq),
            deadline=self._clock() + max_latency.total_seconds(),
            future=asyncio.get_running_loop().create_future(),
        )
        heapq.heappush(self._heap, entry)
        self._wakeup.set()
        return DeliveryHandle(entry)

    def pause(self, seconds: float) -> None:
        self._paused_until = max(self._paused_until, self._clock() + seconds)
        LOGGER.warning("Queue %s paused for %.1fs", self.name, seconds)

    def _delay(self) -> float:
        now = self._clock()
        if self._paused_until > now:
            return self._paused_until - now
        window = self._config.rate_window
        while self._sent_at and self._sent_at[0] <= now - window:
            self._sent_at.popleft()
        if len(self._sent_at) >= self._config.rate_limit:
            return self._sent_at[0] + window - now
        return 0.0

    async def _next_entry(self) -> _Entry:
        while True:
            while not self._heap:
                self._wakeup.clear()
                await self._wakeup.wait()
            delay = self._delay()
            if delay > 0:
                await self._sleep(delay)
                continue
            entry = heapq.heappop(self._heap)
            if entry.state is not _State.QUEUED:
                continue
            if entry.deadline is not None and self._clock() > entry.deadline:
                LOGGER.warning("Queue %s dropped expired job %s", self.name, entry.job.description or entry.job.target)
                _resolve(entry, DeliveryResult(DeliveryStatus.EXPIRED, entry.job.target))
                continue
            return entry

    async def _run(self) -> None:
        while True:
            entry = await self._next_entry()
            self._current = entry
            try:
                await self._dispatch(entry)
            finally:
                self._current = None

    def _requeue(self, entry: _Entry) -> None:
        entry.state = _State.QUEUED
        heapq.heappush(self._heap, entry)

    def _fail(self, entry: _Entry, exc: BaseException) -> None:
        _resolve(entry, DeliveryResult(DeliveryStatus.FAILED_PERMANENT, entry.job.target, error=str(exc)))

    async def _run_hook(self, kind: str, hook: Callable[..., Awaitable[None]], *args: str) -> None:
        # The job outcome does not depend on the hook.
        try:
            await hook(*args)
        except Exception:
            LOGGER.exception("Queue %s: %s hook failed for %s", self.name, kind, args[0])

    async def _dispatch(self, entry: _Entry) -> None:
        job = entry.job
        entry.state = _State.SENDING
        self._sent_at.append(self._clock())
        try:
            message_id = await job.send(job.target)
        except MalformedRequestError as exc:
            LOGGER.error("Queue %s: malformed request for %s: %s", self.name, job.target, exc)
            self._fail(entry, exc)
        except ForbiddenError as exc:
            LOGGER.warning("Queue %s: target %s refused delivery: %s", self.name, job.target, exc)
            self._fail(entry, exc)
            if self.on_target_forbidden is not None:
                await self._run_hook("forbidden", self.on_target_forbidden, job.target)
        except FloodError as exc:
            self.pause(exc.retry_after if exc.retry_after is not None else self._config.default_pause)
            self._requeue(entry)
        except ServerError as exc:
            if self.error_since is None:
                self.error_since = datetime.now(timezone.utc)
            LOGGER.warning("Queue %s: transient failure for %s: %s", self.name, job.target, exc)
            self.pause(self._config.default_pause)
            self._requeue(entry)
        except TargetMigratedError as exc:
            if entry.migrated:
                LOGGER.error("Queue %s: target %s migrated twice, giving up", self.name, job.target)
                self._fail(entry, exc)
                return
            old_target = job.target
            entry.migrated = True
            job.target = exc.new_target
            LOGGER.info("Queue %s: target %s migrated to %s", self.name, old_target, exc.new_target)
            if self.on_target_migrated is not None:
                await self._run_hook("migration", self.on_target_migrated, old_target, exc.new_target)
            self._requeue(entry)
        except DeliveryError as exc:
            LOGGER.error("Queue %s: delivery to %s failed: %s", self.name, job.target, exc)
            self._fail(entry, exc)
        except Exception as exc:
            LOGGER.exception("Queue %s: unexpected failure sending to %s", self.name, job.target)
            self._fail(entry, exc)
        else:
            self.error_since = None
            _resolve(entry, DeliveryResult(DeliveryStatus.SENT, job.target, message_id))


class Debouncer:
    """Runs only the last action of a burst; every caller gets its outcome."""

    def __init__(self, delay: float, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self._delay = delay
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._waiting = False
        self._waiters: List[asyncio.Future] = []

    def call(self, action: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._waiters.append(future)
        # An action that is already running is never interrupted.
        if self._task is not None and self._waiting:
            self._task.cancel()
        self._waiting = True
        self._task = loop.create_task(self._run(action))
        return future

    def cancel(self) -> None:
        """Drop the pending action. Callers still waiting resolve with None."""

        if self._task is not None and self._waiting:
            self._task.cancel()
            self._waiting = False
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    async def _run(self, action: Callable[[], Awaitable[Any]]) -> None:
        await self._sleep(self._delay)
        self._waiting = False
        waiters, self._waiters = self._waiters, []
        try:
            result = await action()
        except Exception as exc:
            LOGGER.exception("Debounced action failed")
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_exception(exc)
            return
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(result)
