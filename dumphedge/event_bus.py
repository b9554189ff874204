# dumphedge/event_bus.py
import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Set

Handler = Callable[..., Any]


class EventBus:
    """
    Explicit publish/subscribe channel passed to the components that need it.
    A failing handler is logged and never affects the publisher or other handlers.
    """
    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event: str, handler: Handler):
        self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: Handler):
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def publish(self, event: str, payload: Any = None):
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(payload)
            except Exception as e:
                self.logger.error(f"Handler {getattr(handler, '__name__', handler)} failed on {event}: {e}")
                continue
            if inspect.isawaitable(result):
                try:
                    task = asyncio.ensure_future(result, loop=asyncio.get_running_loop())
                except RuntimeError:
                    if inspect.iscoroutine(result):
                        result.close()
                    self.logger.warning(f"No running loop for async handler on {event}, skipped")
                    continue
                self._tasks.add(task)
                task.add_done_callback(lambda t, ev=event: self._on_task_done(t, ev))

    def _on_task_done(self, task: asyncio.Task, event: str):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(f"Async handler failed on {event}: {exc}")

    async def drain(self):
        """Waits for async handlers scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))
