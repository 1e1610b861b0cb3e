# FILE: widelog/drain.py
from __future__ import annotations

import asyncio
import concurrent.futures
import copy
import inspect
import logging
import math
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Protocol, Sequence, Set, Union

from .enrichers import RequestInfo
from .metrics import WidelogMetrics
from .utils import compact_json

_log = logging.getLogger(__name__)


@dataclass
class DrainContext:
    event: Dict[str, Any]
    request: Optional[RequestInfo] = None
    headers: Mapping[str, str] = field(default_factory=dict)


class Drain(Protocol):
    """
    A destination for kept events.

    `drain()` may return an awaitable; the dispatcher schedules it and does
    not wait for it.
    """

    def drain(self, ctx: DrainContext) -> Optional[Awaitable[Any]]:
        ...


DrainLike = Union[Drain, Callable[[DrainContext], Any]]


class FunctionDrain:
    def __init__(self, fn: Callable[[DrainContext], Any], name: Optional[str] = None) -> None:
        self._fn = fn
        self.name = name or getattr(fn, "__name__", "drain")

    def drain(self, ctx: DrainContext) -> Any:
        return self._fn(ctx)


def as_drain(obj: DrainLike) -> Drain:
    if hasattr(obj, "drain"):
        return obj  # type: ignore[return-value]
    if callable(obj):
        return FunctionDrain(obj)
    raise TypeError("drain must be callable or implement drain()")


def drain_name(d: Any) -> str:
    return str(getattr(d, "name", None) or type(d).__name__)


async def _await(aw: Awaitable[Any]) -> Any:
    return await aw


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class DrainDispatcher:
    """
    Hands one event to every registered drain.

    Each drain gets its own deep copy. Synchronous drains run inline;
    awaitables are scheduled as tasks on the running loop, or on a
    background loop thread when the caller has no loop (sync handlers in
    the threadpool, scripts). Dispatch never waits for async deliveries.
    Failures are logged and counted, never raised.
    """

    def __init__(self, drains: Sequence[DrainLike], *, metrics: Optional[WidelogMetrics] = None) -> None:
        self.drains = tuple(as_drain(d) for d in drains)
        self._metrics = metrics
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._futures: Set["concurrent.futures.Future[Any]"] = set()
        self._lock = threading.Lock()
        self._bg_loop: Optional[asyncio.AbstractEventLoop] = None
        self._bg_thread: Optional[threading.Thread] = None

    def _failed(self, name: str) -> None:
        _log.error("drain %s failed", name, exc_info=True)
        if self._metrics is not None:
            self._metrics.drain_failed(name)

    def dispatch(
        self,
        event: Mapping[str, Any],
        *,
        request: Optional[RequestInfo] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        for d in self.drains:
            name = drain_name(d)
            ctx = DrainContext(event=copy.deepcopy(dict(event)), request=request, headers=dict(headers or {}))
            try:
                result = d.drain(ctx)
            except Exception:
                self._failed(name)
                continue
            if inspect.isawaitable(result):
                self._schedule(result, name)

    async def _guard(self, aw: Awaitable[Any], name: str) -> None:
        try:
            await aw
        except Exception:
            self._failed(name)

    def _background_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._bg_loop is None or self._bg_loop.is_closed():
                loop = asyncio.new_event_loop()
                thread = threading.Thread(target=loop.run_forever, name="widelog-drains", daemon=True)
                thread.start()
                self._bg_loop = loop
                self._bg_thread = thread
            return self._bg_loop

    def _schedule(self, aw: Awaitable[Any], name: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            fut = asyncio.run_coroutine_threadsafe(self._guard(aw, name), self._background_loop())
            with self._lock:
                self._futures.add(fut)
            fut.add_done_callback(self._forget_future)
            return

        task = loop.create_task(self._guard(aw, name))
        with self._lock:
            self._tasks.add(task)
        task.add_done_callback(self._forget)

    def _forget(self, task: "asyncio.Task[Any]") -> None:
        with self._lock:
            self._tasks.discard(task)

    def _forget_future(self, fut: "concurrent.futures.Future[Any]") -> None:
        with self._lock:
            self._futures.discard(fut)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._tasks) + len(self._futures)

    async def wait_pending(self) -> None:
        """Await in-flight async deliveries: tasks on this loop and background ones."""
        loop = asyncio.get_running_loop()
        with self._lock:
            tasks = [t for t in self._tasks if t.get_loop() is loop]
            futures = list(self._futures)
        waiting = tasks + [asyncio.wrap_future(f) for f in futures]
        if waiting:
            await asyncio.gather(*waiting, return_exceptions=True)
        with self._lock:
            self._futures.difference_update(f for f in futures if f.done())

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until background deliveries finish. False on timeout."""
        with self._lock:
            futures = list(self._futures)
        if not futures:
            return True
        done, not_done = concurrent.futures.wait(futures, timeout=timeout)
        with self._lock:
            self._futures.difference_update(done)
        return not not_done

    def close(self, timeout: float = 5.0) -> None:
        """Wait for background deliveries, then stop the background loop."""
        self.flush(timeout)
        with self._lock:
            loop, thread = self._bg_loop, self._bg_thread
            self._bg_loop = self._bg_thread = None
        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=timeout)
        if not loop.is_running():
            loop.close()


# ---------------------------------------------------------------------------
# Console
# ---------------------------------------------------------------------------


class ConsoleDrain:
    """One compact JSON line per event. Used when nothing else is registered."""

    name = "console"

    def __init__(self, stream: Any = None) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def drain(self, ctx: DrainContext) -> None:
        stream = self._stream or sys.stdout
        line = compact_json(ctx.event)
        with self._lock:
            stream.write(line + "\n")
            stream.flush()


# ---------------------------------------------------------------------------
# Batching with retry
# ---------------------------------------------------------------------------

BACKOFF_STRATEGIES = ("exponential", "linear", "fixed")

BatchTransport = Callable[[List[Dict[str, Any]]], Any]
DroppedCallback = Callable[[List[Dict[str, Any]], Optional[BaseException]], Any]


def _positive(name: str, value: float) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
        raise ValueError(f"{name} must be a positive finite number, got: {value!r}")


def _non_negative(name: str, value: float) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0:
        raise ValueError(f"{name} must be a non-negative finite number, got: {value!r}")


class BatchingDrain:
    """
    Buffers events and hands them to `transport` in batches.

    - A batch goes out when `batch_size` events are buffered, or every
      `interval` seconds for whatever is pending.
    - The buffer holds at most `max_buffer_size` events; on overflow the
      oldest event is dropped and reported through `on_dropped`.
    - A failing batch is retried up to `max_attempts` times in total, with
      exponential / linear / fixed backoff capped at `max_delay`. A batch
      that exhausts its attempts is reported through `on_dropped`.

    `transport` receives a list of event dicts; it may be a plain callable,
    a coroutine function, or an object with a `send_batch` method. Batches
    are sent from a daemon worker thread, never from the request path.

        drain = BatchingDrain(AxiomDrain(dataset="logs", token=tok))
        ...
        drain.close()   # at shutdown
    """

    def __init__(
        self,
        transport: Any,
        *,
        batch_size: int = 50,
        interval: float = 5.0,
        max_buffer_size: int = 1000,
        max_attempts: int = 3,
        backoff: str = "exponential",
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        on_dropped: Optional[DroppedCallback] = None,
        metrics: Optional[WidelogMetrics] = None,
        sleep: Callable[[float], None] = time.sleep,
        name: Optional[str] = None,
    ) -> None:
        _positive("batch_size", batch_size)
        _positive("interval", interval)
        _positive("max_buffer_size", max_buffer_size)
        _positive("max_attempts", max_attempts)
        _non_negative("initial_delay", initial_delay)
        _non_negative("max_delay", max_delay)
        if backoff not in BACKOFF_STRATEGIES:
            raise ValueError(f"backoff must be one of {BACKOFF_STRATEGIES}, got: {backoff!r}")

        if hasattr(transport, "send_batch"):
            self._send: BatchTransport = transport.send_batch
        elif callable(transport):
            self._send = transport
        else:
            raise TypeError("transport must be callable or implement send_batch()")

        self.name = name or f"batching:{drain_name(transport)}"
        self.batch_size = int(batch_size)
        self.interval = float(interval)
        self.max_buffer_size = int(max_buffer_size)
        self.max_attempts = int(max_attempts)
        self.backoff = backoff
        self.initial_delay = float(initial_delay)
        self.max_delay = float(max_delay)
        self._on_dropped = on_dropped
        self._metrics = metrics
        self._sleep = sleep

        self._buffer: Deque[Dict[str, Any]] = deque()
        self._lock = threading.Lock()
        # one batch in flight at a time
        self._send_lock = threading.Lock()
        self._wake = threading.Event()
        self._closed = threading.Event()
        self._worker: Optional[threading.Thread] = None

    # -- producer side ----------------------------------------------------

    def drain(self, ctx: DrainContext) -> None:
        self.push(ctx.event)

    def push(self, event: Dict[str, Any]) -> None:
        dropped: List[Dict[str, Any]] = []
        reason = "overflow"
        with self._lock:
            if self._closed.is_set():
                dropped.append(event)
                reason = "closed"
                full = False
            else:
                if len(self._buffer) >= self.max_buffer_size:
                    dropped.append(self._buffer.popleft())
                self._buffer.append(event)
                full = len(self._buffer) >= self.batch_size
                self._ensure_worker()

        if dropped:
            self._report_dropped(dropped, None, reason)
        if full:
            self._wake.set()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    # -- worker -----------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run, name=f"widelog-{self.name}", daemon=True)
        self._worker.start()

    def _run(self) -> None:
        while not self._closed.is_set():
            self._wake.wait(timeout=self.interval)
            self._wake.clear()
            if self._closed.is_set():
                break
            self._drain_buffer()

    def _drain_buffer(self, limit: Optional[int] = None) -> None:
        with self._send_lock:
            remaining = limit
            while remaining is None or remaining > 0:
                with self._lock:
                    if not self._buffer:
                        return
                    n = min(self.batch_size, len(self._buffer))
                    if remaining is not None:
                        n = min(n, remaining)
                    batch = [self._buffer.popleft() for _ in range(n)]
                if remaining is not None:
                    remaining -= n
                self._send_with_retry(batch)

    def retry_delay(self, attempt: int) -> float:
        """Delay in seconds after failed attempt number `attempt` (1-based)."""
        if self.backoff == "linear":
            delay = self.initial_delay * attempt
        elif self.backoff == "fixed":
            delay = self.initial_delay
        else:
            delay = self.initial_delay * (2 ** (attempt - 1))
        return min(delay, self.max_delay)

    def _call_transport(self, batch: List[Dict[str, Any]]) -> None:
        result = self._send(batch)
        if inspect.isawaitable(result):
            asyncio.run(_await(result))

    def _send_with_retry(self, batch: List[Dict[str, Any]]) -> None:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                self._call_transport(batch)
                return
            except Exception as exc:
                last_error = exc
                _log.warning(
                    "batch delivery failed",
                    extra={"sink": self.name, "attempt": attempt, "size": len(batch)},
                    exc_info=True,
                )
                if attempt < self.max_attempts:
                    self._sleep(self.retry_delay(attempt))
        if self._metrics is not None:
            self._metrics.drain_failed(self.name)
        self._report_dropped(batch, last_error, "retries_exhausted")

    def _report_dropped(self, events: List[Dict[str, Any]], error: Optional[BaseException], reason: str) -> None:
        _log.error("dropping %d event(s)", len(events), extra={"sink": self.name, "reason": reason})
        if self._metrics is not None:
            self._metrics.batch_dropped(len(events), reason)
        if self._on_dropped is None:
            return
        try:
            self._on_dropped(events, error)
        except Exception:
            _log.warning("on_dropped callback failed", exc_info=True)

    # -- lifecycle --------------------------------------------------------

    def flush(self) -> None:
        """
        Send everything buffered at the time of the call, on the calling
        thread. Events pushed while flushing wait for the next cycle.
        """
        self._drain_buffer(limit=self.pending)

    async def aflush(self) -> None:
        await asyncio.to_thread(self.flush)

    def close(self, timeout: float = 5.0) -> None:
        """Stop the worker and flush what is left. Later pushes are dropped."""
        self._closed.set()
        self._wake.set()
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=timeout)
        self.flush()
