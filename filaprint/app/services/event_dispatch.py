"""Named handler registries for telemetry fan-out.

Handlers run in registration order on the thread that delivers the event
(paho's network thread for live traffic). A failing handler is logged and
skipped. Coroutine handlers are not awaited inline: their coroutine is
scheduled on the owning asyncio loop, with a cap on how many invocations
per handler may be outstanding so a slow consumer cannot pile up work.
"""

import asyncio
import inspect
import logging
import threading
from typing import Any, Callable

from filaprint.app.core.config import settings

logger = logging.getLogger(__name__)


class HandlerRegistry:
    def __init__(self, name: str, max_pending: int | None = None):
        self.name = name
        self.max_pending = max_pending if max_pending is not None else settings.handler_max_pending
        self._handlers: dict[str, Callable[[Any], Any]] = {}
        self._pending: dict[str, int] = {}
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

    def set_event_loop(self, loop: asyncio.AbstractEventLoop | None):
        """Set the loop coroutine handlers are scheduled on."""
        self._loop = loop

    def register(self, handler_id: str, callback: Callable[[Any], Any]):
        """Register or replace a handler. Replacing keeps its position."""
        with self._lock:
            self._handlers[handler_id] = callback

    def unregister(self, handler_id: str) -> bool:
        with self._lock:
            self._pending.pop(handler_id, None)
            return self._handlers.pop(handler_id, None) is not None

    def handler_ids(self) -> list[str]:
        with self._lock:
            return list(self._handlers)

    def pending(self, handler_id: str) -> int:
        with self._lock:
            return self._pending.get(handler_id, 0)

    def __len__(self) -> int:
        return len(self._handlers)

    def dispatch(self, event: Any) -> int:
        """Deliver an event to every handler. Returns how many accepted it."""
        with self._lock:
            handlers = list(self._handlers.items())

        delivered = 0
        for handler_id, callback in handlers:
            try:
                result = callback(event)
            except Exception as e:
                logger.error(f"Error in {self.name} handler '{handler_id}': {e}", exc_info=True)
                continue
            if inspect.iscoroutine(result):
                if not self._schedule(handler_id, result):
                    continue
            delivered += 1
        return delivered

    def _schedule(self, handler_id: str, coro) -> bool:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning(f"No event loop for async {self.name} handler '{handler_id}', dropping event")
            coro.close()
            return False

        with self._lock:
            outstanding = self._pending.get(handler_id, 0)
            if outstanding >= self.max_pending:
                logger.warning(
                    f"{self.name} handler '{handler_id}' has {outstanding} pending events, dropping event"
                )
                coro.close()
                return False
            self._pending[handler_id] = outstanding + 1

        try:
            asyncio.run_coroutine_threadsafe(self._run(handler_id, coro), loop)
        except RuntimeError as e:
            logger.warning(f"Could not schedule {self.name} handler '{handler_id}': {e}")
            coro.close()
            self._release(handler_id)
            return False
        return True

    async def _run(self, handler_id: str, coro):
        try:
            await coro
        except Exception as e:
            logger.error(f"Error in async {self.name} handler '{handler_id}': {e}", exc_info=True)
        finally:
            self._release(handler_id)

    def _release(self, handler_id: str):
        with self._lock:
            if handler_id in self._pending:
                self._pending[handler_id] = max(self._pending[handler_id] - 1, 0)
