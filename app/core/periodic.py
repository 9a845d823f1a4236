"""
Periodic background loop running inside the API process.

Each tick's errors are logged and swallowed so one failing sweep never kills
its loop; cancellation stops it.
"""
import asyncio
from typing import Awaitable, Callable

from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


class PeriodicTask:
    """לולאה שמריצה coroutine כל interval שניות עד stop()"""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[object]],
        *,
        run_immediately: bool = False,
    ) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self._func = func
        self._run_immediately = run_immediately
        self._task: asyncio.Task | None = None
        self.runs = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info(
            "Periodic task started",
            extra_data={"task": self.name, "interval_seconds": self.interval_seconds},
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Periodic task stopped", extra_data={"task": self.name})

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self.interval_seconds)
        while True:
            set_correlation_id()
            try:
                await self._func()
                self.runs += 1
            except Exception as e:
                self.failures += 1
                logger.error(
                    f"Periodic task '{self.name}' failed",
                    extra_data={"task": self.name, "error": str(e)},
                    exc_info=True,
                )
            await asyncio.sleep(self.interval_seconds)
