"""Phase 2: fetch detail documents for declarations that only have list data.

The worklist is read back from the database page by page (cursor on id), so a
restarted job finds exactly the declarations that still lack detail. Calls are
strictly sequential with a fixed pause after each one, as required by the
customs API rate policy.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from customs_sync.config import Settings
from customs_sync.customs_gateway.client import CustomsGateway, GatewayError
from customs_sync.models.declaration import Declaration
from customs_sync.models.sync_job import SyncJobStatus
from customs_sync.services.summary_service import DeclarationSummaryService
from customs_sync.sync_engine.job_store import get_job_status, set_detail_progress
from customs_sync.sync_engine.upsert import merge_detail

logger = logging.getLogger("customs.backfill")


@dataclass
class BackfillResult:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False


class DetailBackfillWorker:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        summaries: DeclarationSummaryService,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        pacing_seconds: float | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.summaries = summaries
        self.sleep = sleep
        self.pacing_seconds = (
            settings.detail_pacing_ms / 1000 if pacing_seconds is None else pacing_seconds
        )
        self.page_size = settings.detail_page_size
        self.progress_every = max(1, settings.detail_progress_every)

    async def run(
        self,
        gateway: CustomsGateway,
        job_id: uuid.UUID,
        company_id: uuid.UUID,
        date_from: date,
        date_to: date,
    ) -> BackfillResult:
        result = BackfillResult()
        cursor: uuid.UUID | None = None

        while True:
            page = await self._next_page(company_id, date_from, date_to, cursor)
            if not page:
                break

            for declaration_id, guid in page:
                cursor = declaration_id
                if not await self._still_processing(job_id):
                    logger.info("Detail backfill for job %s stopped: job no longer processing", job_id)
                    result.cancelled = True
                    await self._save_progress(job_id, result.processed)
                    return result

                outcome = await self._backfill_one(gateway, declaration_id, guid)
                if outcome == "skipped":
                    result.skipped += 1
                    continue

                result.processed += 1
                if outcome == "ok":
                    result.completed += 1
                else:
                    result.failed += 1
                if result.processed % self.progress_every == 0:
                    await self._save_progress(job_id, result.processed)
                await self.sleep(self.pacing_seconds)

        await self._save_progress(job_id, result.processed)
        logger.info(
            "Detail backfill for job %s done: %d fetched, %d failed, %d skipped",
            job_id, result.completed, result.failed, result.skipped,
        )
        return result

    async def _next_page(
        self, company_id: uuid.UUID, date_from: date, date_to: date, cursor: uuid.UUID | None
    ) -> list[tuple[uuid.UUID, str]]:
        query = (
            select(Declaration.id, Declaration.customs_id)
            .where(
                Declaration.company_id == company_id,
                Declaration.has_detail.is_(False),
                Declaration.customs_id.is_not(None),
                Declaration.date >= date_from,
                Declaration.date <= date_to,
            )
            .order_by(Declaration.id)
            .limit(self.page_size)
        )
        if cursor is not None:
            query = query.where(Declaration.id > cursor)
        async with self.session_factory() as db:
            rows = (await db.execute(query)).all()
        return [(row[0], row[1]) for row in rows]

    async def _still_processing(self, job_id: uuid.UUID) -> bool:
        async with self.session_factory() as db:
            return await get_job_status(db, job_id) == SyncJobStatus.PROCESSING

    async def _save_progress(self, job_id: uuid.UUID, processed: int) -> None:
        async with self.session_factory() as db:
            await set_detail_progress(db, job_id, processed)
            await db.commit()

    async def _backfill_one(self, gateway: CustomsGateway, declaration_id: uuid.UUID, guid: str) -> str:
        async with self.session_factory() as db:
            declaration = await db.get(Declaration, declaration_id)
            if declaration is None or declaration.has_detail:
                return "skipped"

        try:
            detail_xml = await gateway.fetch_detail(guid)
        except GatewayError as e:
            logger.warning("Detail fetch for %s failed (%s): %s", guid, e.code, e.message)
            return "failed"

        try:
            async with self.session_factory() as db:
                declaration = await db.get(Declaration, declaration_id)
                if declaration is None:
                    return "failed"
                await merge_detail(db, declaration, detail_xml, self.summaries)
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Could not store detail for %s: %s", guid, e)
            return "failed"
        return "ok"
