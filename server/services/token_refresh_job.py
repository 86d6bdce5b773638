import asyncio
import logging
from contextlib import suppress
from datetime import timedelta

from core.logging_setup import log_step

from services.integration_service import IntegrationOrchestrator, RefreshReport

logger = logging.getLogger(__name__)

LOG_STEP = "REFRESH-JOB"


class TokenRefreshJob:
    """
    Periodically refreshes tokens that are about to expire.
    Each tick makes one attempt per integration; failures wait for the next tick.
    """

    def __init__(
        self,
        orchestrator: IntegrationOrchestrator,
        interval_seconds: float,
        window_seconds: float,
    ):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.window = timedelta(seconds=window_seconds)
        self._task: asyncio.Task | None = None

    @property
    def enabled(self) -> bool:
        return self.interval_seconds > 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> RefreshReport | None:
        with log_step(LOG_STEP):
            try:
                return await self.orchestrator.refresh_expiring(self.window)
            except Exception as e:
                logger.error(f"Token refresh pass failed: {e}", exc_info=True)
                return None

    async def _run_forever(self):
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)

    def start(self):
        if not self.enabled:
            with log_step(LOG_STEP):
                logger.info("Token refresh job disabled.")
            return
        if self.running:
            return
        self._task = asyncio.create_task(self._run_forever())
        with log_step(LOG_STEP):
            logger.info(f"Token refresh job started (every {self.interval_seconds}s).")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        with log_step(LOG_STEP):
            logger.info("Token refresh job stopped.")
