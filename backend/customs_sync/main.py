import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from customs_sync.api.router import api_router
from customs_sync.config import APP_VERSION, settings
from customs_sync.database import dispose_engine, get_session_factory
from customs_sync.middleware.logging import RequestLoggingMiddleware
from customs_sync.sync_engine.supervisor import JobSupervisor

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.environment,
            )
            logger.info("Sentry initialized (env=%s)", settings.environment)
        except Exception as e:
            logger.warning("Failed to initialize Sentry: %s", e)

    app.state.supervisor = JobSupervisor(get_session_factory(), settings.max_concurrent_jobs)
    try:
        await app.state.supervisor.reconcile_interrupted()
    except Exception as e:
        logger.warning("Failed to reconcile interrupted sync jobs: %s", e)
    logger.info("Starting customs sync backend (env=%s)", settings.environment)
    yield
    logger.info("Shutting down customs sync backend")
    await app.state.supervisor.shutdown()
    await dispose_engine()


app = FastAPI(
    title="Customs Sync",
    description="Customs declaration ingestion with staged, resumable synchronization",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(api_router, prefix="/api")
