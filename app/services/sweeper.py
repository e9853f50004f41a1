"""
Stale Request Sweeper - Periodically fails requests stuck in analyzing.

Each pass opens its own database session; a failed pass is logged and the
loop carries on at the next interval.
"""

import asyncio
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from app.services.valuation import ValuationService

logger = get_logger(__name__)


class StaleRequestSweeper:
    """Background loop around ValuationService.sweep_stale."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        build_service: Callable[[AsyncSession], ValuationService],
        interval_seconds: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.build_service = build_service
        self.interval_seconds = interval_seconds
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

    async def sweep_once(self) -> tuple[int, int]:
        async with self.session_factory() as session:
            return await self.build_service(session).sweep_stale()

    async def run(self) -> None:
        """Sweep forever until cancelled."""
        logger.info("sweeper_started", interval_seconds=self.interval_seconds)
        try:
            while True:
                try:
                    await self.sweep_once()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("sweeper_iteration_failed")
                await self._sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("sweeper_stopped")
            raise

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
