"""
Bounded worker pool for background processing runs.

Callers that used to fire-and-forget a processing run submit it here
instead.  At most `max_workers` runs execute at once; every exception that
escapes a run is logged and published on the `errors` queue, so no failure
goes unobserved.

Usage:
    pool = ProcessingWorkerPool(orchestrator, max_workers=4)
    pool.submit(item_id)
    outcomes = await pool.join()
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from mosaic.processing.orchestrator import ProcessingOrchestrator
from mosaic.schemas import ProcessingOutcome


@dataclass
class WorkerFailure:
    item_id: str
    error: BaseException


class ProcessingWorkerPool:
    def __init__(self, orchestrator: ProcessingOrchestrator, max_workers: int = 4) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.orchestrator = orchestrator
        self.max_workers = max_workers
        self.errors: asyncio.Queue[WorkerFailure] = asyncio.Queue()
        self._semaphore = asyncio.Semaphore(max_workers)
        self._tasks: list[asyncio.Task] = []

    def submit(
        self,
        item_id: str,
        rerun: bool = False,
        source: str = "worker",
    ) -> asyncio.Task:
        """Schedule a run. Must be called from inside a running event loop."""
        task = asyncio.create_task(self._run(item_id, rerun, source), name=f"process:{item_id}")
        self._tasks.append(task)
        logger.debug(f"[WorkerPool] submitted {item_id} | pending={self.pending}")
        return task

    async def _run(self, item_id: str, rerun: bool, source: str) -> Optional[ProcessingOutcome]:
        async with self._semaphore:
            try:
                return await self.orchestrator.process_item(item_id, rerun=rerun, source=source)
            except Exception as exc:
                logger.exception(f"[WorkerPool] run for {item_id} raised")
                await self.errors.put(WorkerFailure(item_id=item_id, error=exc))
                return None

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    async def join(self) -> list[Optional[ProcessingOutcome]]:
        """Wait for every run submitted since the last join, in submission order.

        Outcomes are None for runs that raised.
        """
        tasks, self._tasks = self._tasks, []
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    def drain_errors(self) -> list[WorkerFailure]:
        failures = []
        while not self.errors.empty():
            failures.append(self.errors.get_nowait())
        return failures
