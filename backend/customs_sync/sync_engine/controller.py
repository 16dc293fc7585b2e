"""SyncJobController: starts, runs, cancels and reports customs sync jobs.

A job lists declarations chunk by chunk (phase 1), then backfills detail
documents for whatever is still missing them (phase 2). Both phases run in
the background under the ``JobSupervisor``; callers get the job row back
immediately and poll for progress.

Job states only move forward: processing -> completed | cancelled | error.
Cancellation is cooperative and checked before every chunk and every detail
fetch; writes already made are kept.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from customs_sync.config import Settings
from customs_sync.customs_gateway.client import CustomsGateway, GatewayError
from customs_sync.models.company import Company, MemberRole, role_at_least
from customs_sync.models.declaration import Declaration
from customs_sync.models.sync_job import SyncJob, SyncJobFailure, SyncJobStatus, SyncPhase
from customs_sync.services.credentials import decrypt_token
from customs_sync.services.statistics_cache import StatisticsCache
from customs_sync.services.summary_service import DeclarationSummaryService
from customs_sync.services.sync_history import DETAIL_PHASE, LIST_PHASE, SyncHistoryService
from customs_sync.sync_engine import job_store
from customs_sync.sync_engine.backfill import BackfillResult, DetailBackfillWorker
from customs_sync.sync_engine.chunks import (
    Chunk,
    resolve_chunk_days,
    resolve_detail_pacing_seconds,
    split_period,
)
from customs_sync.sync_engine.errors import (
    CredentialError,
    DeclarationNotFoundError,
    SyncAlreadyRunningError,
    SyncAuthorizationError,
    SyncJobNotFoundError,
    SyncValidationError,
)
from customs_sync.sync_engine.retry import backoff_seconds, classify_failure
from customs_sync.sync_engine.stage_marker import STAGES, StageMarker, next_stage_after
from customs_sync.sync_engine.supervisor import JobSupervisor
from customs_sync.sync_engine.upsert import find_declaration, merge_detail, upsert_declaration

logger = logging.getLogger("customs.sync")

GatewayFactory = Callable[[str, str], CustomsGateway]


@dataclass
class CompanyAccess:
    """The caller's company and role, as resolved by the access layer."""

    company_id: uuid.UUID
    role: MemberRole
    edrpou: str | None
    encrypted_token: str | None
    sync_settings: dict | None = None

    @classmethod
    def from_company(cls, company: Company, role: MemberRole) -> "CompanyAccess":
        return cls(
            company_id=company.id,
            role=role,
            edrpou=company.edrpou,
            encrypted_token=company.customs_token,
            sync_settings=company.sync_settings,
        )


@dataclass
class SyncRun:
    """Everything a background phase needs; nothing here is read from the request."""

    job_id: uuid.UUID
    company_id: uuid.UUID
    token: str
    edrpou: str
    date_from: date
    date_to: date
    chunks: list[Chunk]
    detail_pacing_seconds: float
    stage: int | None = None


@dataclass
class JobStatusView:
    job: SyncJob
    status_note: str | None
    failures: list[SyncJobFailure] = field(default_factory=list)
    hint: str | None = None


@dataclass
class IncrementalSyncResult:
    job: SyncJob | None
    message: str


class SyncJobController:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        supervisor: JobSupervisor,
        gateway_factory: GatewayFactory | None = None,
        summaries: DeclarationSummaryService | None = None,
        statistics: StatisticsCache | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        today: Callable[[], date] = date.today,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.supervisor = supervisor
        self.gateway_factory = gateway_factory or (
            lambda token, edrpou: CustomsGateway(settings, token, edrpou)
        )
        self.summaries = summaries or DeclarationSummaryService()
        self.statistics = statistics
        self.sleep = sleep
        self.today = today

    # ── Preconditions ──

    def _authorize(self, access: CompanyAccess) -> None:
        if not role_at_least(access.role, MemberRole.MEMBER):
            raise SyncAuthorizationError("Only company owners and members can run a sync")

    def _credentials(self, access: CompanyAccess) -> tuple[str, str]:
        if not access.edrpou or not access.encrypted_token:
            raise CredentialError("Customs token or EDRPOU is not set for this company")
        return decrypt_token(self.settings, access.encrypted_token), access.edrpou

    def retention_horizon(self) -> date:
        return self.today() - timedelta(days=self.settings.retention_days)

    def validate_period(self, date_from: date, date_to: date) -> None:
        if date_to < date_from:
            raise SyncValidationError("Period end is before period start")
        span = (date_to - date_from).days + 1
        if span > self.settings.max_period_days:
            raise SyncValidationError(
                f"Period cannot exceed {self.settings.max_period_days} days (got {span})"
            )
        self._validate_retention(date_from)

    def _validate_retention(self, date_from: date) -> None:
        horizon = self.retention_horizon()
        if date_from < horizon:
            raise SyncValidationError(f"Start date cannot be earlier than {horizon.isoformat()}")

    # ── Entry points ──

    async def start_period_sync(self, access: CompanyAccess, date_from: date, date_to: date) -> SyncJob:
        self._authorize(access)
        token, edrpou = self._credentials(access)
        self.validate_period(date_from, date_to)
        return await self._launch(access, token, edrpou, date_from, date_to)

    async def start_staged_sync(self, access: CompanyAccess, stage: int = 1) -> SyncJob:
        self._authorize(access)
        if stage not in STAGES:
            raise SyncValidationError(f"Stage must be between 1 and {max(STAGES)}")
        token, edrpou = self._credentials(access)
        days_back, _ = STAGES[stage]
        date_to = self.today()
        date_from = max(date_to - timedelta(days=days_back), self.retention_horizon())
        return await self._launch(access, token, edrpou, date_from, date_to, stage=stage)

    async def start_incremental_sync(self, access: CompanyAccess) -> IncrementalSyncResult:
        """Sync from the last successful list phase up to today."""
        self._authorize(access)
        token, edrpou = self._credentials(access)

        async with self.session_factory() as db:
            last = await SyncHistoryService.last_successful(db, access.company_id)
        if last is None:
            raise SyncValidationError("No previous sync found; run a full sync first")

        last_at = last.created_at
        if last_at.tzinfo is None:
            last_at = last_at.replace(tzinfo=timezone.utc)
        if datetime.now(timezone.utc) - last_at < timedelta(minutes=1):
            return IncrementalSyncResult(
                job=None, message="A sync ran less than a minute ago; try again shortly"
            )

        date_from = last_at.astimezone().date()
        date_to = self.today()
        if date_from > date_to:
            return IncrementalSyncResult(job=None, message="Data is already up to date")
        try:
            self._validate_retention(date_from)
        except SyncValidationError:
            raise SyncValidationError(
                "Last sync is older than the retention period; run a full sync instead"
            ) from None

        job = await self._launch(access, token, edrpou, date_from, date_to)
        return IncrementalSyncResult(job=job, message=f"Syncing {date_from} .. {date_to}")

    async def cancel_active_job(self, access: CompanyAccess) -> SyncJob:
        self._authorize(access)
        async with self.session_factory() as db:
            job = await job_store.find_active_job(db, access.company_id)
            if job is None:
                raise SyncJobNotFoundError("No running sync job to cancel")
            cancelled = await job_store.finish_job(
                db, job.id, SyncJobStatus.CANCELLED, cancelled_at=datetime.now(timezone.utc)
            )
            await db.commit()
            if not cancelled:
                raise SyncJobNotFoundError("Sync job already finished")
            await db.refresh(job)
        logger.info("Sync job %s cancelled", job.id)
        return job

    async def get_job_status(self, company_id: uuid.UUID, job_id: uuid.UUID | None = None) -> JobStatusView:
        async with self.session_factory() as db:
            if job_id is None:
                job = await job_store.find_latest_job(db, company_id)
            else:
                job = await db.get(SyncJob, job_id)
                if job is not None and job.company_id != company_id:
                    job = None
            if job is None:
                raise SyncJobNotFoundError("Sync job not found")

            view = JobStatusView(job=job, status_note=self._status_note(job))
            if job.status.is_terminal:
                view.failures = list((await db.execute(
                    select(SyncJobFailure)
                    .where(SyncJobFailure.job_id == job.id)
                    .order_by(SyncJobFailure.chunk_index)
                )).scalars().all())
            elif job.failed_chunk_count:
                view.hint = (
                    f"Errors in {job.failed_chunk_count} of {job.total_chunks} periods; "
                    "details available after completion"
                )
        return view

    async def refetch_detail(self, access: CompanyAccess, guid: str) -> Declaration:
        """Fetch and overwrite the detail document of one declaration."""
        self._authorize(access)
        token, edrpou = self._credentials(access)
        async with self.session_factory() as db:
            declaration = await find_declaration(db, access.company_id, guid, None)
            if declaration is None:
                raise DeclarationNotFoundError(f"Declaration {guid} not found")

        async with self.gateway_factory(token, edrpou) as gateway:
            detail_xml = await gateway.fetch_detail(guid)

        async with self.session_factory() as db:
            declaration = await db.get(Declaration, declaration.id)
            await merge_detail(db, declaration, detail_xml, self.summaries, force=True)
            await db.commit()
            await db.refresh(declaration)
        await self._invalidate_statistics(access.company_id)
        return declaration

    # ── Launch ──

    @staticmethod
    def _status_note(job: SyncJob) -> str | None:
        marker = StageMarker.from_job(job)
        return marker.serialize() if marker else None

    async def _launch(
        self,
        access: CompanyAccess,
        token: str,
        edrpou: str,
        date_from: date,
        date_to: date,
        stage: int | None = None,
    ) -> SyncJob:
        chunks = split_period(date_from, date_to, resolve_chunk_days(self.settings, access.sync_settings))

        async with self.session_factory() as db:
            existing = await job_store.find_active_job(db, access.company_id)
            if existing is not None:
                raise SyncAlreadyRunningError(existing.id)
            job = SyncJob(
                id=uuid.uuid4(),
                company_id=access.company_id,
                status=SyncJobStatus.PROCESSING,
                phase=SyncPhase.LISTING,
                date_from=date_from,
                date_to=date_to,
                total_chunks=len(chunks),
                stage=stage,
                stage_label=STAGES[stage][1] if stage else None,
            )
            db.add(job)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise SyncAlreadyRunningError() from None

        logger.info(
            "Sync job %s started for company %s: %s..%s in %d chunks%s",
            job.id, access.company_id, date_from, date_to, len(chunks),
            f" (stage {stage})" if stage else "",
        )
        run = SyncRun(
            job_id=job.id,
            company_id=access.company_id,
            token=token,
            edrpou=edrpou,
            date_from=date_from,
            date_to=date_to,
            chunks=chunks,
            detail_pacing_seconds=resolve_detail_pacing_seconds(self.settings, access.sync_settings),
            stage=stage,
        )
        self.supervisor.spawn(job.id, self.run_list_phase(run))
        return job

    async def _still_processing(self, job_id: uuid.UUID) -> bool:
        async with self.session_factory() as db:
            return await job_store.get_job_status(db, job_id) == SyncJobStatus.PROCESSING

    # ── Phase 1: list ──

    async def run_list_phase(self, run: SyncRun) -> None:
        declarations = 0
        failed = 0
        processed = 0

        async with self.gateway_factory(run.token, run.edrpou) as gateway:
            for chunk in run.chunks:
                if not await self._still_processing(run.job_id):
                    logger.info("Sync job %s stopped before chunk %d", run.job_id, chunk.index)
                    return

                count = await self._process_chunk(gateway, run, chunk)
                processed += 1
                if count is None:
                    failed += 1
                else:
                    declarations += count

                if chunk.index < len(run.chunks) - 1:
                    await self.sleep(self.settings.chunk_pacing_ms / 1000)

        if not await self._still_processing(run.job_id):
            return

        async with self.session_factory() as db:
            targets = await job_store.count_detail_targets(db, run.company_id, run.date_from, run.date_to)
            job = await db.get(SyncJob, run.job_id)
            job.total_detail_targets = targets
            job.phase = SyncPhase.DETAILING
            summary = f"Processed {processed} of {len(run.chunks)} periods, {declarations} declarations"
            if failed:
                summary += f"; errors in {failed} periods"
            await SyncHistoryService.record(
                db,
                company_id=run.company_id,
                job_id=run.job_id,
                phase=LIST_PHASE,
                date_from=run.date_from,
                date_to=run.date_to,
                items_count=declarations,
                errors_count=failed,
                summary=summary,
            )
            await db.commit()

        logger.info("Sync job %s list phase done: %s; %d detail targets", run.job_id, summary, targets)
        self.supervisor.spawn(run.job_id, self.run_detail_phase(run))

    async def _process_chunk(self, gateway: CustomsGateway, run: SyncRun, chunk: Chunk) -> int | None:
        """Fetch and store one chunk; returns the item count, or None when the chunk failed."""
        attempts = 0
        while True:
            try:
                summaries = await gateway.fetch_list(chunk.start, chunk.end)
                break
            except GatewayError as e:
                failure = classify_failure(e)
                if failure.retryable and attempts < self.settings.chunk_max_retries:
                    attempts += 1
                    delay = backoff_seconds(failure, self.settings)
                    logger.warning(
                        "Chunk %d (%s..%s) of job %s failed with %s, retrying in %.0fs",
                        chunk.index, chunk.start, chunk.end, run.job_id, failure.value, delay,
                    )
                    await self.sleep(delay)
                    continue
                logger.warning(
                    "Chunk %d (%s..%s) of job %s failed: %s",
                    chunk.index, chunk.start, chunk.end, run.job_id, e.message,
                )
                await self._record_failure(run, chunk, e.message, e.code, attempts)
                return None

        try:
            async with self.session_factory() as db:
                for summary in summaries:
                    await upsert_declaration(db, run.company_id, summary, self.summaries)
                await job_store.advance_chunk_progress(db, run.job_id, failed=False)
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Could not store chunk %d of job %s: %s", chunk.index, run.job_id, e)
            await self._record_failure(run, chunk, str(e), "PERSISTENCE_ERROR", attempts)
            return None
        return len(summaries)

    async def _record_failure(
        self, run: SyncRun, chunk: Chunk, message: str, code: str, attempts: int
    ) -> None:
        async with self.session_factory() as db:
            await job_store.record_chunk_failure(
                db, run.job_id, chunk, message, code,
                retry_attempts=attempts, is_retried=attempts > 0,
            )
            await db.commit()

    # ── Phase 2: detail ──

    async def run_detail_phase(self, run: SyncRun) -> None:
        worker = DetailBackfillWorker(
            self.settings,
            self.session_factory,
            self.summaries,
            sleep=self.sleep,
            pacing_seconds=run.detail_pacing_seconds,
        )
        async with self.gateway_factory(run.token, run.edrpou) as gateway:
            result = await worker.run(gateway, run.job_id, run.company_id, run.date_from, run.date_to)
        if result.cancelled:
            return
        await self._finalize(run, result)

    async def _finalize(self, run: SyncRun, result: BackfillResult) -> None:
        async with self.session_factory() as db:
            job = await db.get(SyncJob, run.job_id)
            values = {
                "phase": SyncPhase.COMPLETED,
                "completed_detail_targets": result.processed,
            }
            if run.stage is not None:
                values["next_stage"] = next_stage_after(run.stage)
            if not await job_store.finish_job(db, run.job_id, SyncJobStatus.COMPLETED, **values):
                return
            if job.total_detail_targets > 0 or result.processed > 0:
                await SyncHistoryService.record(
                    db,
                    company_id=run.company_id,
                    job_id=run.job_id,
                    phase=DETAIL_PHASE,
                    date_from=run.date_from,
                    date_to=run.date_to,
                    items_count=result.completed,
                    errors_count=result.failed,
                    summary=(
                        f"Fetched details for {result.completed} of {result.processed} declarations"
                    ),
                )
            await db.commit()

        logger.info("Sync job %s completed", run.job_id)
        await self._invalidate_statistics(run.company_id)

    async def _invalidate_statistics(self, company_id: uuid.UUID) -> None:
        if self.statistics is None:
            return
        try:
            await self.statistics.invalidate(company_id)
        except Exception as e:
            logger.warning("Statistics cache invalidation failed for %s: %s", company_id, e)
