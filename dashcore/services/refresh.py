# dashcore/services/refresh.py
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from dashcore.errors import StoreUnavailable
from dashcore.infra.store import invoke_callback

logger = logging.getLogger(__name__)


class RefreshCoalescer:
    """
    Runs a refresh at most once at a time. A request while one is in
    flight is ignored; if the data changed during the run, exactly one
    follow-up run is made after it.
    """

    def __init__(self, refresh: Callable[[], Awaitable[Any]]):
        self._refresh = refresh
        self._running = False
        self._changed = False
        self.runs = 0

    @property
    def in_flight(self) -> bool:
        return self._running

    def mark_changed(self):
        if self._running:
            self._changed = True

    async def trigger(self) -> bool:
        """Returns False when the request was absorbed by a run in flight."""
        if self._running:
            return False
        self._running = True
        try:
            while True:
                self._changed = False
                self.runs += 1
                await self._refresh()
                if not self._changed:
                    break
                logger.debug("Data changed during refresh, running one follow-up")
        finally:
            self._running = False
        return True


class PollingSubscription:
    """
    Poll-based stand-in for a realtime subscription: loads every
    ``interval`` seconds and hands each result to ``on_change``.
    Same handle shape as a store subscription.
    """

    def __init__(
        self,
        load: Callable[[], Awaitable[Any]],
        on_change: Callable[[Any], Any],
        on_error: Optional[Callable[[Exception], Any]] = None,
        interval: float = 30.0,
    ):
        self._load = load
        self._on_change = on_change
        self._on_error = on_error
        self._interval = interval
        self._active = True
        self._coalescer = RefreshCoalescer(self._poll)
        self._task = asyncio.get_running_loop().create_task(self._run())

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self):
        if not self._active:
            return
        self._active = False
        self._task.cancel()

    __call__ = unsubscribe

    async def refresh(self) -> bool:
        """On-demand refresh, coalesced with the periodic one."""
        try:
            return await self._coalescer.trigger()
        except StoreUnavailable as e:
            await invoke_callback(self._on_error, e, "poll")
            return False

    async def _run(self):
        while self._active:
            await self.refresh()
            await asyncio.sleep(self._interval)

    async def _poll(self):
        result = await self._load()
        if self._active:
            await invoke_callback(self._on_change, result, "poll")
