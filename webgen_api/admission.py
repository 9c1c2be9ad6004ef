"""
Admission control for remote generation calls.

Two policies: identical requests share one in-flight call (coalescing), and
distinct calls are started no closer together than a minimum interval, in
arrival order.
"""

import asyncio
import hashlib
import json
import time
from collections.abc import Awaitable, Callable
from typing import Any

from .logger import logger
from .models import GenerationOptions


def request_key(prompt: str, options: GenerationOptions) -> str:
    """Stable key identifying a logical request: sha256 of prompt and options."""
    payload = json.dumps(
        {"prompt": prompt, "options": options.model_dump(mode="json")},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class RequestCoalescer:
    """At most one outstanding call per key; duplicates await the same result."""

    def __init__(self):
        self._pending: dict[str, asyncio.Task] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run factory() for key unless a call for the same key is in flight.

        Args:
            key: Request key
            factory: Zero-argument coroutine function issuing the call

        Returns:
            The shared result of the single call
        """
        task = self._pending.get(key)
        if task is None:
            task = asyncio.create_task(factory())
            self._pending[key] = task
            task.add_done_callback(lambda done: self._release(key, done))
        else:
            logger.debug(f"Request {key[:12]} already in flight, awaiting shared result")
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            task.exception()


class RequestPacer:
    """
    Spaces request starts by a minimum interval.

    Waiters queue on an asyncio.Lock, which wakes them in FIFO order, so
    requests beyond the cadence are issued in arrival order.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_start: float | None = None

    @property
    def min_interval(self) -> float:
        return self._min_interval

    async def wait_turn(self) -> float:
        """
        Wait until the next request may start.

        Returns:
            Seconds spent waiting for the slot (excluding time queued behind others)
        """
        async with self._lock:
            now = self._clock()
            waited = 0.0
            if self._last_start is not None:
                next_start = self._last_start + self._min_interval
                if next_start > now:
                    waited = next_start - now
                    await self._sleep(waited)
                    now = max(self._clock(), next_start)
            self._last_start = now
            return waited
