"""
Cancellable per-session timers

Schedulers keep one pending callback per key (the capture session id).
AsyncioScheduler runs them as asyncio tasks inside the service's event loop;
ManualScheduler keeps a virtual clock that tests and offline tools advance
explicitly.
"""
import asyncio
from typing import Callable, Dict, List, Tuple

from measure_engine import logger


class AsyncioScheduler:
    """One asyncio task per key, cancelled when the key is rescheduled or cancelled"""

    def __init__(self):
        self.tasks: Dict[str, asyncio.Task] = {}

    def schedule(self, key: str, delay: float, callback: Callable[[], None]):
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self.tasks[key] = loop.create_task(self._fire(key, delay, callback))

    async def _fire(self, key: str, delay: float, callback: Callable[[], None]):
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.log_debug("Timer Cancelled", {"key": key})
            raise
        self.tasks.pop(key, None)
        try:
            callback()
        except Exception as e:
            logger.log_error("Timer Callback Failed", e, {"key": key})

    def cancel(self, key: str) -> bool:
        task = self.tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def is_scheduled(self, key: str) -> bool:
        return key in self.tasks and not self.tasks[key].done()

    def cancel_all(self):
        for key in list(self.tasks):
            self.cancel(key)


class ManualScheduler:
    """Deterministic scheduler driven by advance()"""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.pending: Dict[str, Tuple[float, Callable[[], None]]] = {}

    def schedule(self, key: str, delay: float, callback: Callable[[], None]):
        self.pending[key] = (self.now + delay, callback)

    def cancel(self, key: str) -> bool:
        return self.pending.pop(key, None) is not None

    def is_scheduled(self, key: str) -> bool:
        return key in self.pending

    def cancel_all(self):
        self.pending.clear()

    def advance(self, seconds: float) -> List[str]:
        """Move the clock forward and fire every callback that came due, in due order"""
        self.now += seconds
        due = sorted(
            (when, key) for key, (when, _) in self.pending.items() if when <= self.now
        )
        fired = []
        for _, key in due:
            entry = self.pending.pop(key, None)
            if entry is None:
                continue
            entry[1]()
            fired.append(key)
        return fired
