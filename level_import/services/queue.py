"""
Level Import Service - Import Queue Runtime

One poll loop per process drives the import worker:

    - every ``IMPORT_POLL_INTERVAL`` seconds (or immediately after
      ``kick()``) it fails stale jobs that ran out of attempts, then claims
      the oldest claimable job and runs the pipeline on it;
    - after finishing a job it polls again right away so a backlog drains
      without waiting out the interval;
    - the blocking pipeline runs in a worker thread so the event loop stays
      free for HTTP requests.

Several processes can run this loop against the same database; the atomic
claim guarantees each job is held by at most one fresh lock at a time.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from loguru import logger

from level_import.config import IMPORT_POLL_INTERVAL, IMPORT_WORKER_ID
from level_import.database import claim_next_job, expire_exhausted_jobs
from level_import.services.orchestrator import process_import_job


class ImportQueueRuntime:
    """Poll loop that claims and processes import jobs."""

    def __init__(
        self,
        worker_id: str | None = None,
        poll_interval: float | None = None,
        processor: Callable[[dict[str, Any], str], Any] | None = None,
    ):
        self.worker_id = worker_id or IMPORT_WORKER_ID
        self.poll_interval = IMPORT_POLL_INTERVAL if poll_interval is None else poll_interval
        self.processor = processor or process_import_job
        self._task: asyncio.Task[None] | None = None
        self._wake: asyncio.Event | None = None
        self._busy = False
        self.jobs_processed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the poll loop (no-op when already running)."""
        if self.running:
            return
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "🔄 Import queue started (worker={}, interval={}s)",
            self.worker_id,
            self.poll_interval,
        )

    async def stop(self) -> None:
        """Stop the poll loop and wait for it to exit (no-op when stopped)."""
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("🛑 Import queue stopped (worker={})", self.worker_id)

    def kick(self) -> None:
        """Wake the poll loop now instead of at the next interval."""
        if self._wake is not None:
            self._wake.set()

    async def tick(self) -> bool:
        """
        Claim and process at most one job.

        Returns True when a job was processed.  An overlapping call while a
        tick is in progress returns False immediately.
        """
        if self._busy:
            return False
        self._busy = True
        try:
            await asyncio.to_thread(expire_exhausted_jobs)
            job = await asyncio.to_thread(claim_next_job, self.worker_id)
            if job is None:
                return False
            await asyncio.to_thread(self.processor, job, self.worker_id)
            self.jobs_processed += 1
            return True
        finally:
            self._busy = False

    async def _loop(self) -> None:
        assert self._wake is not None
        while True:
            try:
                if await self.tick():
                    continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Store hiccups are retried on the next tick
                logger.error("❌ Import queue tick failed: {}", e)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
