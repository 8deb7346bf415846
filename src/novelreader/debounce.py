from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


class Debouncer(Generic[T]):
    """
    Coalesce rapid triggers into one delayed call carrying the latest value.

    Each ``trigger`` restarts the delay. A call already running is never
    cancelled; a value that arrives meanwhile is delivered after it finishes.
    """

    def __init__(
        self,
        delay: float,
        action: Callable[[T], Awaitable[None]],
        *,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        if delay < 0:
            raise ValueError("Debounce delay cannot be negative.")
        self.delay = delay
        self._action = action
        self._on_error = on_error
        self._value: T | None = None
        self._has_value = False
        self._timer: asyncio.Task[None] | None = None
        self._inflight: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def pending(self) -> bool:
        return self._has_value

    def trigger(self, value: T) -> None:
        if self._closed:
            raise RuntimeError("Debouncer is closed.")
        self._value = value
        self._has_value = True
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._fire_later())

    def cancel(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        self._value = None
        self._has_value = False

    async def _fire_later(self) -> None:
        await asyncio.sleep(self.delay)
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            await asyncio.wait({inflight})
        self._start_run()

    def _start_run(self) -> None:
        if not self._has_value:
            return
        value = self._value
        self._value = None
        self._has_value = False
        self._inflight = asyncio.get_running_loop().create_task(self._run(value))  # type: ignore[arg-type]

    async def _run(self, value: T) -> None:
        try:
            await self._action(value)
        except Exception as exc:
            if self._on_error is None:
                raise
            self._on_error(exc)

    async def flush(self) -> None:
        """Deliver any pending value now and wait until nothing is running."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            await asyncio.wait({inflight})
        self._start_run()
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            await asyncio.wait({inflight})

    async def close(self, *, flush: bool = True) -> None:
        if flush:
            await self.flush()
        else:
            self.cancel()
            inflight = self._inflight
            if inflight is not None and not inflight.done():
                await asyncio.wait({inflight})
        self._closed = True


__all__ = ["Debouncer"]
