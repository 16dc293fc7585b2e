"""Supervised background execution of sync job phases.

Each phase runs as an asyncio task owned by ``JobSupervisor``. An exception
escaping a phase is logged and written back to the job row as ``error``;
nothing is left to a process-wide handler. A phase cancelled by ``shutdown``
marks its job ``error`` as well, so no row is left ``processing``.
"""

import asyncio
import logging
import uuid
from collections.abc import Coroutine
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from customs_sync.sync_engine.job_store import fail_interrupted_jobs, mark_job_error

logger = logging.getLogger("customs.supervisor")

INTERRUPTED_MESSAGE = "Sync job interrupted by shutdown"


class JobSupervisor:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], max_concurrent: int = 4):
        self.session_factory = session_factory
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def spawn(self, job_id: uuid.UUID, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(self._run(job_id, coro), name=f"sync-job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, job_id: uuid.UUID, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            async with self._semaphore:
                await coro
        except asyncio.CancelledError:
            # Closes a phase that was cancelled before it started
            coro.close()
            logger.info("Sync job %s task cancelled", job_id)
            await asyncio.shield(self._report_failure(job_id, INTERRUPTED_MESSAGE))
            raise
        except Exception as e:
            logger.exception("Sync job %s failed", job_id)
            await self._report_failure(job_id, str(e) or type(e).__name__)

    async def _report_failure(self, job_id: uuid.UUID | None, message: str) -> None:
        if job_id is None:
            return
        try:
            async with self.session_factory() as db:
                await mark_job_error(db, job_id, message)
                await db.commit()
        except Exception:
            logger.exception("Could not mark sync job %s as failed", job_id)

    async def reconcile_interrupted(self) -> int:
        """Fail jobs left processing by a previous process."""
        async with self.session_factory() as db:
            count = await fail_interrupted_jobs(db)
            await db.commit()
        if count:
            logger.warning("Marked %d interrupted sync job(s) as error", count)
        return count

    async def join(self) -> None:
        """Wait until no supervised task is left, including tasks spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        # Newly spawned tasks must enter _run before cancellation to report it
        await asyncio.sleep(0)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Supervisor stopped %d sync task(s)", len(tasks))
