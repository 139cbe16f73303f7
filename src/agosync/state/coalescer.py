"""Per-entity write coalescing.

A :class:`WriteCoalescer` owns a table of ``key -> slot`` where each slot
holds the pending patch (field -> latest value) and the handle of the
scheduled flush. Invariants:

* at most one slot, and therefore one pending patch and one live timer,
  per key;
* a new edit overwrites the pending value of the same field and restarts
  the timer (debounce, not throttle);
* flushes for one key never overlap: a flush that fires while the previous
  one for the same key is still running waits for it;
* ``cancel(key)`` discards the slot without flushing;
* a failed patch handed back with ``requeue`` never overrides a value that
  a later flush of the same key already carries.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from contextvars import ContextVar
from dataclasses import dataclass, field
from functools import partial
from typing import Generic, Protocol, TypeVar

_logger = logging.getLogger(__name__)

# Sequence number of the flush running in the current task.
_flush_seq: ContextVar[int | None] = ContextVar("agosync_flush_seq", default=None)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

FlushCallback = Callable[[K, dict[str, V]], Awaitable[None]]


class ScheduledHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Cancelable delayed-call primitive."""

    def schedule(self, delay: float, callback: Callable[[], None]) -> ScheduledHandle:
        ...


class LoopScheduler:
    """:class:`Scheduler` backed by ``loop.call_later`` on the running loop."""

    def schedule(self, delay: float, callback: Callable[[], None]) -> ScheduledHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


@dataclass(slots=True)
class _Slot(Generic[V]):
    patch: dict[str, V] = field(default_factory=dict)
    handle: ScheduledHandle | None = None


class WriteCoalescer(Generic[K, V]):
    """Merge field edits per key and flush them after an inactivity window.

    Parameters
    ----------
    flush : callable
        ``async flush(key, patch)`` invoked with the collected patch. It
        should handle its own failures; anything it raises is logged.
    delay : float
        Debounce window in seconds.
    scheduler : Scheduler, optional
        Timer primitive; defaults to :class:`LoopScheduler`.
    name : str
        Label used in log messages.
    """

    def __init__(
        self,
        flush: FlushCallback[K, V],
        *,
        delay: float,
        scheduler: Scheduler | None = None,
        name: str = "writes",
    ) -> None:
        self._flush = flush
        self._delay = delay
        self._scheduler = scheduler or LoopScheduler()
        self._name = name
        self._slots: dict[K, _Slot[V]] = {}
        self._running: dict[K, asyncio.Task[None]] = {}
        self._inflight: dict[K, dict[str, V]] = {}
        # field -> sequence number of the newest flush that carried it
        self._fired: dict[K, dict[str, int]] = {}
        self._seq = 0
        self._closed = False

    @property
    def delay(self) -> float:
        return self._delay

    def __contains__(self, key: object) -> bool:
        return key in self._slots

    def has_timer(self, key: K) -> bool:
        slot = self._slots.get(key)
        return slot is not None and slot.handle is not None

    def record(self, key: K, field_name: str, value: V) -> None:
        """Merge ``field_name=value`` into *key*'s patch and restart its timer."""
        if self._closed:
            raise RuntimeError(f"{self._name} coalescer is closed")
        slot = self._slots.get(key)
        if slot is None:
            slot = _Slot()
            self._slots[key] = slot
        slot.patch[field_name] = value
        self._reschedule(key, slot)

    def _reschedule(self, key: K, slot: _Slot[V]) -> None:
        if slot.handle is not None:
            slot.handle.cancel()
        slot.handle = self._scheduler.schedule(self._delay, partial(self._fire, key))

    def cancel(self, key: K) -> None:
        """Drop *key*'s timer and pending patch without flushing.

        A flush already running for *key* completes, but its patch is no
        longer reported by :meth:`pending` and cannot be requeued.
        """
        slot = self._slots.pop(key, None)
        if slot is not None and slot.handle is not None:
            slot.handle.cancel()
        self._inflight.pop(key, None)
        self._fired.pop(key, None)

    def cancel_many(self, keys: list[K] | tuple[K, ...]) -> None:
        for key in keys:
            self.cancel(key)

    def pending(self, key: K) -> dict[str, V]:
        """Values recorded for *key* that are not yet durable (in-flight + pending)."""
        merged: dict[str, V] = dict(self._inflight.get(key, {}))
        slot = self._slots.get(key)
        if slot is not None:
            merged.update(slot.patch)
        return merged

    def pending_keys(self) -> set[K]:
        return set(self._slots) | set(self._inflight)

    def requeue(self, key: K, patch: dict[str, V]) -> bool:
        """Return a failed *patch* to *key*'s slot without starting a timer.

        Values recorded since the failed flush started win over the
        requeued ones, and so do values carried by a later flush of *key*.
        Returns ``False`` (and drops the patch) if *key* was cancelled while
        its flush was running or every field has been superseded.
        """
        if key not in self._inflight:
            return False
        seq = _flush_seq.get()
        if seq is not None:
            fired = self._fired.get(key, {})
            patch = {name: value for name, value in patch.items() if fired.get(name, seq) <= seq}
        if not patch:
            return False
        slot = self._slots.get(key)
        if slot is None:
            slot = _Slot()
            self._slots[key] = slot
        slot.patch = {**patch, **slot.patch}
        return True

    def reschedule_idle(self) -> int:
        """Start timers for slots holding requeued patches; returns how many."""
        count = 0
        for key, slot in self._slots.items():
            if slot.handle is None and slot.patch:
                self._reschedule(key, slot)
                count += 1
        return count

    def _fire(self, key: K) -> None:
        slot = self._slots.pop(key, None)
        if slot is None:
            return
        slot.handle = None
        if not slot.patch:
            return
        inflight = self._inflight.setdefault(key, {})
        inflight.update(slot.patch)
        self._seq += 1
        fired = self._fired.setdefault(key, {})
        for name in slot.patch:
            fired[name] = self._seq
        previous = self._running.get(key)
        task = asyncio.get_running_loop().create_task(self._run_flush(key, slot.patch, previous, self._seq))
        self._running[key] = task
        task.add_done_callback(partial(self._flush_done, key))

    async def _run_flush(
        self,
        key: K,
        patch: dict[str, V],
        previous: asyncio.Task[None] | None,
        seq: int,
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        _flush_seq.set(seq)
        _logger.debug("Flushing %s for %r: %s", self._name, key, sorted(patch))
        try:
            await self._flush(key, patch)
        except Exception:
            _logger.exception("Unhandled error flushing %s for %r", self._name, key)

    def _flush_done(self, key: K, task: asyncio.Task[None]) -> None:
        if self._running.get(key) is task:
            del self._running[key]
            self._inflight.pop(key, None)
            self._fired.pop(key, None)

    def flush(self, key: K) -> asyncio.Task[None] | None:
        """Fire *key*'s pending flush now; returns the flush task, if any."""
        slot = self._slots.get(key)
        if slot is None:
            return self._running.get(key)
        if slot.handle is not None:
            slot.handle.cancel()
        self._fire(key)
        return self._running.get(key)

    async def flush_all(self) -> None:
        """Flush every pending slot immediately and wait for all flushes."""
        for key in list(self._slots):
            self.flush(key)
        await self.wait_idle()

    async def wait_idle(self) -> None:
        """Wait until no flush is running."""
        while self._running:
            await asyncio.wait(set(self._running.values()))

    def close(self) -> None:
        """Cancel all timers and discard pending patches. Running flushes finish."""
        self._closed = True
        for key in list(self._slots):
            slot = self._slots.pop(key)
            if slot.handle is not None:
                slot.handle.cancel()
