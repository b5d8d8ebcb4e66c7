"""Output delivery: per-session event channels and per-tab batching.

Backends never talk to the consumer directly. Each session owns one
bounded ``EventChannel``; a single pump task drains it in arrival order
and hands events to the ``OutputDispatcher``, which buffers them per tab
and flushes according to the configured interval:

- a flush happens immediately unless one already happened within
  ``flush_interval``, in which case one timer per tab schedules it
- up to ``batch_threshold`` buffered events are delivered one by one;
  more than that are concatenated into one combined event whose type is
  "error" if any part came from stderr
- directory-changed events flush whatever is pending and are delivered
  right away
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .events import EventKind, OutputEvent


ConsumerCallback = Callable[[str, Dict[str, Any]], None]


@dataclass
class _TabBuffer:
    pending: List[OutputEvent] = field(default_factory=list)
    last_flush: Optional[float] = None
    timer: Optional[asyncio.TimerHandle] = None


class OutputDispatcher:
    """Buffers output events per tab and delivers them to a consumer."""

    def __init__(
        self,
        consumer: ConsumerCallback,
        flush_interval: float = 0.0,
        batch_threshold: int = 5,
        debug_logger: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize dispatcher.

        Args:
            consumer: Callback(tab_id, payload) receiving delivered output
            flush_interval: Minimum seconds between two flushes of a tab
            batch_threshold: Max events delivered individually per flush
            debug_logger: Optional callback for debug messages
            clock: Monotonic time source
        """
        self._consumer = consumer
        self.flush_interval = flush_interval
        self.batch_threshold = batch_threshold
        self._debug_logger = debug_logger or (lambda msg: None)
        self._clock = clock
        self._buffers: Dict[str, _TabBuffer] = {}

    def publish(self, tab_id: str, event: OutputEvent) -> None:
        """Accept one event for a tab and flush or schedule as needed."""
        buf = self._buffers.setdefault(tab_id, _TabBuffer())

        if event.kind is EventKind.CWD:
            self.flush(tab_id)
            self._deliver(tab_id, event.to_payload())
            return

        if not event.text:
            return

        buf.pending.append(event)
        now = self._clock()
        elapsed = None if buf.last_flush is None else now - buf.last_flush
        if elapsed is None or elapsed >= self.flush_interval:
            self.flush(tab_id)
            return

        if buf.timer is None:
            loop = asyncio.get_running_loop()
            buf.timer = loop.call_later(self.flush_interval - elapsed, self.flush, tab_id)

    def flush(self, tab_id: str) -> None:
        """Deliver everything buffered for a tab."""
        buf = self._buffers.get(tab_id)
        if buf is None:
            return
        if buf.timer is not None:
            buf.timer.cancel()
            buf.timer = None
        buf.last_flush = self._clock()
        pending, buf.pending = buf.pending, []
        if not pending:
            return

        if len(pending) <= self.batch_threshold:
            for event in pending:
                self._deliver(tab_id, event.to_payload())
            return

        combined = "".join(event.text for event in pending)
        if any(event.is_error for event in pending):
            payload = {"stdout": "", "stderr": combined, "type": "error"}
        else:
            payload = {"stdout": combined, "stderr": "", "type": "output"}
        self._debug_logger(f"[{tab_id}] combined {len(pending)} events into one flush")
        self._deliver(tab_id, payload)

    def discard(self, tab_id: str) -> None:
        """Drop buffered output and the flush timer of a closed tab."""
        buf = self._buffers.pop(tab_id, None)
        if buf is not None and buf.timer is not None:
            buf.timer.cancel()

    def _deliver(self, tab_id: str, payload: Dict[str, Any]) -> None:
        try:
            self._consumer(tab_id, payload)
        except Exception as exc:
            self._debug_logger(f"[{tab_id}] output consumer failed: {exc!r}")


class EventChannel:
    """Bounded, ordered queue of events from one session's backends.

    Producers ``await send()``; when the queue is full they wait, which
    slows the readers down instead of growing memory without bound.
    """

    def __init__(
        self,
        name: str,
        deliver: Callable[[OutputEvent], None],
        maxsize: int = 256,
        debug_logger: Optional[Callable[[str], None]] = None,
    ):
        self.name = name
        self._deliver = deliver
        self._queue: asyncio.Queue[OutputEvent] = asyncio.Queue(maxsize=maxsize)
        self._pump: Optional[asyncio.Task] = None
        self._closed = False
        self._debug_logger = debug_logger or (lambda msg: None)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: OutputEvent) -> None:
        if self._closed:
            self._debug_logger(f"[{self.name}] dropped {event.kind.value} event after close")
            return
        self._ensure_pump()
        await self._queue.put(event)

    async def join(self) -> None:
        """Wait until every queued event has been handed to the dispatcher."""
        if self._closed or self._pump is None:
            return
        await self._queue.join()

    def close(self) -> None:
        self._closed = True
        if self._pump is not None:
            self._pump.cancel()
            self._pump = None

    def _ensure_pump(self) -> None:
        if self._pump is None:
            self._pump = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self._deliver(event)
            except Exception as exc:
                self._debug_logger(f"[{self.name}] delivery failed: {exc!r}")
            finally:
                self._queue.task_done()
