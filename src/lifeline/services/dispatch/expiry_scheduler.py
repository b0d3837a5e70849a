"""
Expiry scheduler

One cancellable timer per active emergency. When a timer fires it schedules
the expiry callback as a task; the callback itself is responsible for the
compare-and-set, so a timer that fires after a cancel does nothing.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, Set

from lifeline.models.emergency import utcnow


class ExpiryScheduler:
    """Keeps loop.call_later handles keyed by emergency id"""

    def __init__(self, on_expire: Callable[[str, str], Awaitable[None]]):
        self.logger = logging.getLogger(__name__)
        self.on_expire = on_expire
        self._handles: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()

    def arm(self, emergency_id: str, owner_id: str, expires_at: datetime,
            now: Optional[datetime] = None) -> None:
        """Schedule expiry at ``expires_at``; overdue emergencies fire on the next loop turn"""
        self.cancel(emergency_id)
        delay = max(0.0, (expires_at - (now or utcnow())).total_seconds())
        loop = asyncio.get_running_loop()
        self._handles[emergency_id] = loop.call_later(delay, self._fire, emergency_id, owner_id)
        self.logger.debug(f"Expiry for {emergency_id} armed in {delay:.1f}s")

    def cancel(self, emergency_id: str) -> bool:
        handle = self._handles.pop(emergency_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_armed(self, emergency_id: str) -> bool:
        return emergency_id in self._handles

    def _fire(self, emergency_id: str, owner_id: str) -> None:
        self._handles.pop(emergency_id, None)
        task = asyncio.create_task(self.on_expire(emergency_id, owner_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def stop(self) -> None:
        """Cancel all pending timers and any expiry still running"""
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._handles)
