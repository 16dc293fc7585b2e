import uuid
from datetime import date

import pytest
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import all models so they register with Base.metadata for create_all
import customs_sync.models  # noqa: F401
from customs_sync.config import Settings
from customs_sync.customs_gateway.list_parser import DeclarationSummary
from customs_sync.models.base import Base
from customs_sync.models.company import Company
from customs_sync.services.credentials import encrypt_token
from customs_sync.sync_engine.controller import SyncJobController
from customs_sync.sync_engine.supervisor import JobSupervisor

TEST_ENCRYPTION_KEY = Fernet.generate_key().decode()
TODAY = date(2025, 1, 20)


@pytest.fixture
async def test_engine(tmp_path):
    # SQLite file per test: background phases open their own sessions
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(_env_file=None, encryption_key=TEST_ENCRYPTION_KEY, redis_url="redis://localhost:1/0")


@pytest.fixture
async def company(session_factory, test_settings) -> Company:
    async with session_factory() as session:
        company = Company(
            id=uuid.uuid4(),
            name="Test Importer LLC",
            edrpou="12345678",
            customs_token=encrypt_token(test_settings, "customs-token"),
        )
        session.add(company)
        await session.commit()
    return company


def make_item(guid: str, registered: str = "20250105T101500", status: str = "R", **extra) -> dict:
    item = {
        "guid": guid,
        "MRN": f"25UA{guid[-6:].upper()}",
        "ccd_registered": registered,
        "ccd_status": status,
        "ccd_type": "ІМ 40 ДЕ",
        "ccd_sender_name": "Sender GmbH",
        "ccd_recipient_name": "Recipient LLC",
        "ccd_decl_name": "Broker LLC",
    }
    item.update(extra)
    return item


def make_summary(guid: str, **kwargs) -> DeclarationSummary:
    return DeclarationSummary.from_item(make_item(guid, **kwargs))


class FakeGateway:
    """Stands in for CustomsGateway; list responses are consumed in call order."""

    def __init__(self, list_responses=None, details=None):
        self.list_responses = list(list_responses or [])
        self.details = details or {}
        self.list_calls: list[tuple[date, date]] = []
        self.detail_calls: list[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def fetch_list(self, date_from, date_to):
        self.list_calls.append((date_from, date_to))
        if not self.list_responses:
            return []
        response = self.list_responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def fetch_detail(self, guid):
        self.detail_calls.append(guid)
        response = self.details.get(guid, f"<ccd><guid>{guid}</guid><ccd_registered>20250105T101500</ccd_registered></ccd>")
        if isinstance(response, Exception):
            raise response
        return response


class RecordingSleep:
    def __init__(self, on_sleep=None):
        self.calls: list[float] = []
        self.on_sleep = on_sleep

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.on_sleep is not None:
            await self.on_sleep(len(self.calls))


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def supervisor(session_factory) -> JobSupervisor:
    return JobSupervisor(session_factory, max_concurrent=2)


@pytest.fixture
def controller(test_settings, session_factory, supervisor, fake_gateway, recording_sleep) -> SyncJobController:
    return SyncJobController(
        test_settings,
        session_factory,
        supervisor,
        gateway_factory=lambda token, edrpou: fake_gateway,
        sleep=recording_sleep,
        today=lambda: TODAY,
    )


@pytest.fixture
async def client(session_factory, controller):
    from customs_sync.database import get_db
    from customs_sync.dependencies import get_sync_controller
    from customs_sync.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_controller] = lambda: controller

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def seed_declarations(session_factory, company_id, summaries) -> list:
    from customs_sync.services.summary_service import DeclarationSummaryService
    from customs_sync.sync_engine.upsert import upsert_declaration

    service = DeclarationSummaryService()
    async with session_factory() as session:
        declarations = [await upsert_declaration(session, company_id, s, service) for s in summaries]
        await session.commit()
    return declarations


async def create_job(session_factory, company_id, **values):
    from customs_sync.models.sync_job import SyncJob, SyncJobStatus

    values.setdefault("status", SyncJobStatus.PROCESSING)
    values.setdefault("date_from", date(2025, 1, 1))
    values.setdefault("date_to", TODAY)
    async with session_factory() as session:
        job = SyncJob(id=uuid.uuid4(), company_id=company_id, **values)
        session.add(job)
        await session.commit()
    return job
