import asyncio
from datetime import timedelta

import pytest

from services.integration_service import RefreshReport
from services.token_refresh_job import TokenRefreshJob


class RecordingOrchestrator:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.windows: list[timedelta] = []
        self.called = asyncio.Event()

    async def refresh_expiring(self, within):
        self.windows.append(within)
        self.called.set()
        if self.error is not None:
            raise self.error
        return RefreshReport(refreshed=1)


# Purpose: verify a zero interval disables the job entirely.
@pytest.mark.asyncio
async def test_disabled_job_does_not_start():
    job = TokenRefreshJob(RecordingOrchestrator(), interval_seconds=0, window_seconds=900)

    job.start()

    assert job.enabled is False
    assert job.running is False
    await job.stop()


# Purpose: verify a single pass asks for tokens expiring inside the window.
@pytest.mark.asyncio
async def test_run_once_uses_window():
    orchestrator = RecordingOrchestrator()
    job = TokenRefreshJob(orchestrator, interval_seconds=60, window_seconds=900)

    report = await job.run_once()

    assert report.refreshed == 1
    assert orchestrator.windows == [timedelta(seconds=900)]


# Purpose: verify a failing pass is logged and does not propagate.
@pytest.mark.asyncio
async def test_run_once_swallows_errors():
    job = TokenRefreshJob(
        RecordingOrchestrator(error=RuntimeError("db down")), interval_seconds=60, window_seconds=900
    )

    assert await job.run_once() is None


# Purpose: verify the background task runs a pass and stops cleanly.
@pytest.mark.asyncio
async def test_start_and_stop():
    orchestrator = RecordingOrchestrator()
    job = TokenRefreshJob(orchestrator, interval_seconds=3600, window_seconds=900)

    job.start()
    assert job.running is True
    await asyncio.wait_for(orchestrator.called.wait(), timeout=1)

    await job.stop()
    assert job.running is False
    assert len(orchestrator.windows) == 1
