"""End-to-end tests of sync jobs: both phases run on the supervisor with a fake gateway."""

import asyncio
import uuid
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from customs_sync.customs_gateway.client import GatewayError
from customs_sync.models.company import MemberRole
from customs_sync.models.declaration import Declaration
from customs_sync.models.sync_job import SyncHistoryEntry, SyncJob, SyncJobStatus, SyncPhase
from customs_sync.services.sync_history import DETAIL_PHASE, LIST_PHASE, SyncHistoryService
from customs_sync.sync_engine.controller import CompanyAccess, SyncJobController
from customs_sync.sync_engine.errors import (
    CredentialError,
    DeclarationNotFoundError,
    SyncAlreadyRunningError,
    SyncAuthorizationError,
    SyncJobNotFoundError,
    SyncValidationError,
)
from customs_sync.sync_engine.payload import decode_payload
from conftest import TODAY, create_job, make_summary, seed_declarations


@pytest.fixture
def access(company) -> CompanyAccess:
    return CompanyAccess.from_company(company, MemberRole.OWNER)


async def history(session_factory, company_id) -> list[SyncHistoryEntry]:
    async with session_factory() as session:
        return await SyncHistoryService.list_entries(session, company_id)


async def job_count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count(SyncJob.id)))).scalar_one()


async def add_history(session_factory, company_id, created_at, items=3, errors=0):
    async with session_factory() as session:
        session.add(SyncHistoryEntry(
            id=uuid.uuid4(),
            company_id=company_id,
            phase=LIST_PHASE,
            date_from=date(2025, 1, 1),
            date_to=date(2025, 1, 7),
            items_count=items,
            errors_count=errors,
            created_at=created_at,
        ))
        await session.commit()


class TestPeriodSync:

    async def test_full_run(self, controller, supervisor, access, fake_gateway, recording_sleep, session_factory):
        fake_gateway.list_responses = [
            [make_summary("guid-000001"), make_summary("guid-000002")],
            [make_summary("guid-000003", registered="20250110T080000")],
        ]

        job = await controller.start_period_sync(access, date(2025, 1, 1), date(2025, 1, 14))
        assert job.status is SyncJobStatus.PROCESSING
        assert job.total_chunks == 2
        await supervisor.join()

        view = await controller.get_job_status(access.company_id, job.id)
        assert view.job.status is SyncJobStatus.COMPLETED
        assert view.job.phase is SyncPhase.COMPLETED
        assert view.job.completed_chunks == 2
        assert view.job.failed_chunk_count == 0
        assert view.job.total_detail_targets == 3
        assert view.job.completed_detail_targets == 3
        assert view.job.finished_at is not None
        assert view.failures == []
        assert view.status_note is None

        assert fake_gateway.list_calls == [
            (date(2025, 1, 1), date(2025, 1, 7)),
            (date(2025, 1, 8), date(2025, 1, 14)),
        ]
        assert sorted(fake_gateway.detail_calls) == ["guid-000001", "guid-000002", "guid-000003"]
        # One pause between the two chunks, then one after every detail fetch
        assert recording_sleep.calls == [2.0, 1.0, 1.0, 1.0]

        entries = {e.phase: e for e in await history(session_factory, access.company_id)}
        assert entries[LIST_PHASE].items_count == 3
        assert entries[LIST_PHASE].errors_count == 0
        assert entries[DETAIL_PHASE].items_count == 3

        async with session_factory() as session:
            declarations = (await session.execute(select(Declaration))).scalars().all()
        assert all(d.has_detail for d in declarations)
        assert all(decode_payload(d.raw_payload).list_data for d in declarations)

    async def test_failed_chunk_does_not_stop_the_job(
        self, controller, supervisor, access, fake_gateway, recording_sleep, session_factory
    ):
        fake_gateway.list_responses = [
            [make_summary("guid-000001")],
            [],
            GatewayError("Bad request", kind="http", http_status=400, body="invalid request"),
            [],
            [],
        ]

        job = await controller.start_period_sync(access, date(2025, 1, 1), date(2025, 1, 31))
        assert job.total_chunks == 5
        await supervisor.join()

        view = await controller.get_job_status(access.company_id, job.id)
        assert view.job.status is SyncJobStatus.COMPLETED
        assert view.job.completed_chunks == 5
        assert view.job.failed_chunk_count == 1
        assert len(view.failures) == 1
        failure = view.failures[0]
        assert failure.chunk_index == 2
        assert (failure.chunk_start, failure.chunk_end) == (date(2025, 1, 15), date(2025, 1, 21))
        assert failure.error_code == "400"
        assert failure.is_retried is False
        assert failure.retry_attempts == 0
        assert len(fake_gateway.list_calls) == 5
        assert recording_sleep.calls == [2.0, 2.0, 2.0, 2.0, 1.0]

        entries = {e.phase: e for e in await history(session_factory, access.company_id)}
        assert entries[LIST_PHASE].errors_count == 1
        assert "errors in 1 periods" in entries[LIST_PHASE].summary

    async def test_retryable_failure_is_retried_once(
        self, controller, supervisor, access, fake_gateway, recording_sleep
    ):
        fake_gateway.list_responses = [
            GatewayError("Request timed out", kind="timeout", vendor_code="ETIMEDOUT"),
            [make_summary("guid-000001")],
        ]

        job = await controller.start_period_sync(access, date(2025, 1, 1), date(2025, 1, 7))
        await supervisor.join()

        view = await controller.get_job_status(access.company_id, job.id)
        assert view.job.status is SyncJobStatus.COMPLETED
        assert view.job.failed_chunk_count == 0
        assert len(fake_gateway.list_calls) == 2
        assert recording_sleep.calls == [5.0, 1.0]

    async def test_retry_exhausted_records_failure(
        self, controller, supervisor, access, fake_gateway, recording_sleep, session_factory
    ):
        fake_gateway.list_responses = [
            GatewayError("Customs API returned 500", kind="http", http_status=500),
            GatewayError("Customs API returned 500", kind="http", http_status=500),
        ]

        job = await controller.start_period_sync(access, date(2025, 1, 1), date(2025, 1, 7))
        await supervisor.join()

        view = await controller.get_job_status(access.company_id, job.id)
        assert view.job.status is SyncJobStatus.COMPLETED
        failure = view.failures[0]
        assert failure.error_code == "500"
        assert failure.is_retried is True
        assert failure.retry_attempts == 1
        assert recording_sleep.calls == [8.0]
        # No detail targets, so only the list phase is logged
        assert [e.phase for e in await history(session_factory, access.company_id)] == [LIST_PHASE]

    async def test_company_chunk_size_is_used(self, controller, supervisor, company, fake_gateway):
        access = CompanyAccess.from_company(company, MemberRole.MEMBER)
        access.sync_settings = {"chunk_days": 1}
        job = await controller.start_period_sync(access, date(2025, 1, 1), date(2025, 1, 3))
        await supervisor.join()
        assert job.total_chunks == 3
        assert len(fake_gateway.list_calls) == 3

    async def test_unexpected_error_marks_job_failed(self, controller, supervisor, access, fake_gateway):
        fake_gateway.list_responses = [RuntimeError("x" * 800)]

        job = await controller.start_period_sync(access, date(2025, 1, 1), date(2025, 1, 7))
        await supervisor.join()

        view = await controller.get_job_status(access.company_id, job.id)
        assert view.job.status is SyncJobStatus.ERROR
        assert view.job.error_message == "x" * 500
        assert view.job.finished_at is not None

    async def test_shutdown_frees_company_for_next_sync(self, controller, supervisor, access, fake_gateway):
        started = asyncio.Event()

        async def hanging_list(date_from, date_to):
            started.set()
            await asyncio.Event().wait()

        fake_gateway.fetch_list = hanging_list
        first = await controller.start_period_sync(access, date(2025, 1, 1), date(2025, 1, 7))
        await started.wait()
        await supervisor.shutdown()

        view = await controller.get_job_status(access.company_id, first.id)
        assert view.job.status is SyncJobStatus.ERROR
        assert "interrupted" in view.job.error_message

        del fake_gateway.fetch_list
        second = await controller.start_period_sync(access, date(2025, 1, 1), date(2025, 1, 7))
        await supervisor.join()
        view = await controller.get_job_status(access.company_id, second.id)
        assert view.job.status is SyncJobStatus.COMPLETED


class TestPreconditions:

    async def test_period_beyond_retention(self, controller, access, session_factory):
        with pytest.raises(SyncValidationError):
            await controller.start_period_sync(
                access, TODAY - timedelta(days=1100), TODAY - timedelta(days=1090)
            )
        assert await job_count(session_factory) == 0

    async def test_period_longer_than_45_days(self, controller, access, session_factory):
        with pytest.raises(SyncValidationError):
            await controller.start_period_sync(access, date(2024, 12, 1), date(2025, 1, 15))
        assert await job_count(session_factory) == 0

    async def test_45_day_period_is_accepted(self, controller, supervisor, access):
        job = await controller.start_period_sync(access, date(2024, 12, 1), date(2025, 1, 14))
        await supervisor.join()
        assert job.total_chunks == 7

    async def test_end_before_start(self, controller, access):
        with pytest.raises(SyncValidationError):
            await controller.start_period_sync(access, date(2025, 1, 10), date(2025, 1, 1))

    async def test_viewer_cannot_sync(self, controller, company, session_factory):
        viewer = CompanyAccess.from_company(company, MemberRole.VIEWER)
        with pytest.raises(SyncAuthorizationError):
            await controller.start_period_sync(viewer, date(2025, 1, 1), date(2025, 1, 7))
        with pytest.raises(SyncAuthorizationError):
            await controller.cancel_active_job(viewer)
        assert await job_count(session_factory) == 0

    async def test_missing_token(self, controller, access):
        access.encrypted_token = None
        with pytest.raises(CredentialError):
            await controller.start_period_sync(access, date(2025, 1, 1), date(2025, 1, 7))

    async def test_missing_edrpou(self, controller, access):
        access.edrpou = None
        with pytest.raises(CredentialError):
            await controller.start_staged_sync(access, 1)

    async def test_undecryptable_token(self, controller, access):
        access.encrypted_token = "not-a-fernet-token"
        with pytest.raises(CredentialError):
            await controller.start_period_sync(access, date(2025, 1, 1), date(2025, 1, 7))

    async def test_one_running_job_per_company(self, controller, access, session_factory):
        running = await create_job(session_factory, access.company_id)
        with pytest.raises(SyncAlreadyRunningError) as exc:
            await controller.start_period_sync(access, date(2025, 1, 1), date(2025, 1, 7))
        assert exc.value.job_id == running.id
        assert await job_count(session_factory) == 1


class TestCancellation:

    async def test_cancel_between_chunks(
        self, controller, supervisor, access, fake_gateway, recording_sleep, session_factory
    ):
        async def cancel_on_first_pause(count):
            if count == 1:
                await controller.cancel_active_job(access)

        recording_sleep.on_sleep = cancel_on_first_pause
        fake_gateway.list_responses = [[make_summary("guid-000001")], [make_summary("guid-000002")]]

        job = await controller.start_period_sync(access, date(2025, 1, 1), date(2025, 1, 14))
        await supervisor.join()

        view = await controller.get_job_status(access.company_id, job.id)
        assert view.job.status is SyncJobStatus.CANCELLED
        assert view.job.cancelled_at is not None
        assert view.job.completed_chunks == 1
        assert len(fake_gateway.list_calls) == 1
        assert fake_gateway.detail_calls == []
        assert await history(session_factory, access.company_id) == []
        # Data written before the cancel is kept
        async with session_factory() as session:
            assert (await session.execute(select(func.count(Declaration.id)))).scalar_one() == 1

    async def test_cancel_during_detail_phase(self, controller, supervisor, access, fake_gateway, recording_sleep):
        async def cancel_on_first_detail(count):
            if count == 1:
                await controller.cancel_active_job(access)

        recording_sleep.on_sleep = cancel_on_first_detail
        fake_gateway.list_responses = [[make_summary("guid-000001"), make_summary("guid-000002")]]

        job = await controller.start_period_sync(access, date(2025, 1, 1), date(2025, 1, 7))
        await supervisor.join()

        view = await controller.get_job_status(access.company_id, job.id)
        assert view.job.status is SyncJobStatus.CANCELLED
        assert len(fake_gateway.detail_calls) == 1

    async def test_nothing_to_cancel(self, controller, access):
        with pytest.raises(SyncJobNotFoundError):
            await controller.cancel_active_job(access)


class TestStagedSync:

    async def test_stage_two(self, controller, supervisor, access, fake_gateway):
        job = await controller.start_staged_sync(access, 2)
        assert (job.date_from, job.date_to) == (TODAY - timedelta(days=30), TODAY)
        assert job.stage_label == "Last month"

        await supervisor.join()

        view = await controller.get_job_status(access.company_id)
        assert view.job.id == job.id
        assert view.job.next_stage == 3
        assert view.status_note == "STAGE:2:Last month|COMPLETED|NEXT:3"
        assert len(fake_gateway.list_calls) == job.total_chunks == 5

    async def test_unknown_stage(self, controller, access):
        with pytest.raises(SyncValidationError):
            await controller.start_staged_sync(access, 6)


class TestJobStatus:

    async def test_hint_while_running(self, controller, access, session_factory):
        job = await create_job(session_factory, access.company_id, total_chunks=5, failed_chunk_count=1)
        view = await controller.get_job_status(access.company_id, job.id)
        assert view.hint == "Errors in 1 of 5 periods; details available after completion"
        assert view.failures == []

    async def test_job_of_other_company_is_hidden(self, controller, access, session_factory):
        job = await create_job(session_factory, access.company_id)
        with pytest.raises(SyncJobNotFoundError):
            await controller.get_job_status(uuid.uuid4(), job.id)

    async def test_no_jobs_yet(self, controller, access):
        with pytest.raises(SyncJobNotFoundError):
            await controller.get_job_status(access.company_id)


class TestIncrementalSync:

    async def test_requires_previous_sync(self, controller, access):
        with pytest.raises(SyncValidationError):
            await controller.start_incremental_sync(access)

    async def test_failed_empty_run_does_not_count(self, controller, access, session_factory):
        await add_history(session_factory, access.company_id, datetime(2025, 1, 15, tzinfo=timezone.utc), items=0, errors=2)
        with pytest.raises(SyncValidationError):
            await controller.start_incremental_sync(access)

    async def test_recent_sync_is_a_no_op(self, controller, access, session_factory):
        await add_history(session_factory, access.company_id, datetime.now(timezone.utc))
        result = await controller.start_incremental_sync(access)
        assert result.job is None
        assert "less than a minute" in result.message
        assert await job_count(session_factory) == 0

    async def test_syncs_from_last_run(self, controller, supervisor, access, session_factory):
        await add_history(session_factory, access.company_id, datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc))
        result = await controller.start_incremental_sync(access)
        await supervisor.join()

        assert result.job is not None
        assert result.job.date_to == TODAY
        assert date(2025, 1, 14) <= result.job.date_from <= date(2025, 1, 16)

    async def test_long_gap_is_not_limited_to_45_days(self, controller, supervisor, access, session_factory):
        await add_history(session_factory, access.company_id, datetime(2024, 9, 1, 12, 0, tzinfo=timezone.utc))
        result = await controller.start_incremental_sync(access)
        await supervisor.join()
        assert (result.job.date_to - result.job.date_from).days > 45

    async def test_too_old_for_retention(self, controller, access, session_factory):
        await add_history(session_factory, access.company_id, datetime(2020, 1, 1, tzinfo=timezone.utc))
        with pytest.raises(SyncValidationError):
            await controller.start_incremental_sync(access)


class TestRefetchDetail:

    async def test_overwrites_detail_and_keeps_list_data(
        self, test_settings, session_factory, supervisor, access, fake_gateway
    ):
        statistics = AsyncMock()
        statistics.invalidate.side_effect = ConnectionError("redis down")
        controller = SyncJobController(
            test_settings, session_factory, supervisor,
            gateway_factory=lambda token, edrpou: fake_gateway,
            statistics=statistics,
            today=lambda: TODAY,
        )
        await seed_declarations(session_factory, access.company_id, [make_summary("guid-000001")])
        fake_gateway.details = {"guid-000001": "<ccd>first</ccd>"}
        await controller.refetch_detail(access, "guid-000001")
        fake_gateway.details = {"guid-000001": "<ccd>fresh</ccd>"}

        declaration = await controller.refetch_detail(access, "guid-000001")

        payload = decode_payload(declaration.raw_payload)
        assert payload.detail_data == "<ccd>fresh</ccd>"
        assert payload.list_data["guid"] == "guid-000001"
        assert declaration.has_detail is True
        statistics.invalidate.assert_awaited_with(access.company_id)

    async def test_unknown_declaration(self, controller, access):
        with pytest.raises(DeclarationNotFoundError):
            await controller.refetch_detail(access, "missing-guid")

    async def test_gateway_error_propagates(self, controller, access, fake_gateway, session_factory):
        await seed_declarations(session_factory, access.company_id, [make_summary("guid-000001")])
        fake_gateway.details = {"guid-000001": GatewayError("timed out", kind="timeout", vendor_code="ETIMEDOUT")}
        with pytest.raises(GatewayError):
            await controller.refetch_detail(access, "guid-000001")


class TestStatisticsInvalidation:

    async def test_invalidated_after_completion(
        self, test_settings, session_factory, supervisor, access, fake_gateway, recording_sleep
    ):
        statistics = AsyncMock()
        controller = SyncJobController(
            test_settings, session_factory, supervisor,
            gateway_factory=lambda token, edrpou: fake_gateway,
            statistics=statistics,
            sleep=recording_sleep,
            today=lambda: TODAY,
        )
        await controller.start_period_sync(access, date(2025, 1, 1), date(2025, 1, 7))
        await supervisor.join()
        statistics.invalidate.assert_awaited_once_with(access.company_id)
