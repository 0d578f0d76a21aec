from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from imagegen.config import settings
from imagegen.api.credits import router as credits_router
from imagegen.api.generations import router as generations_router
from imagegen.api.kie import router as kie_router
from imagegen.api.referrals import router as referrals_router
from imagegen.api.subscriptions import router as subscriptions_router
from imagegen.api.webhooks import router as webhooks_router
from imagegen.errors import register_exception_handlers
from imagegen.integrations.asset_storage import AssetDownloader, LocalAssetStorage
from imagegen.integrations.kie_client import KieClient
from imagegen.middleware.rate_limit import RateLimitMiddleware
from imagegen.services.audit_logger import AuditLogger
from imagegen.services.payment_service import StripeGateway
from imagegen.services.task_lifecycle import PollReconciler, TaskLifecycle
from imagegen.services.task_store import RedisTaskMetadataStore
from imagegen.services.task_submitter import TaskSubmitter

# Configure structlog
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        (
            structlog.dev.ConsoleRenderer()
            if settings.APP_ENV == "development"
            else structlog.processors.JSONRenderer()
        ),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(0),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

log = structlog.get_logger()


def build_collaborators(app: FastAPI, redis: Redis) -> None:
    """Construct the per-process clients and services and hang them on app.state."""
    provider = KieClient()
    downloader = AssetDownloader()
    store = RedisTaskMetadataStore(redis)
    lifecycle = TaskLifecycle(
        store=store,
        downloader=downloader,
        storage=LocalAssetStorage(),
        audit=AuditLogger(),
    )
    app.state.redis = redis
    app.state.provider = provider
    app.state.downloader = downloader
    app.state.task_store = store
    app.state.task_lifecycle = lifecycle
    app.state.poll_reconciler = PollReconciler(provider, lifecycle)
    app.state.task_submitter = TaskSubmitter(provider, store)
    app.state.payment_gateway = StripeGateway()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log.info("starting_up", env=settings.APP_ENV)
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        await redis.ping()
        log.info("redis_connected", url=settings.REDIS_URL)
    except Exception as e:
        log.warning("redis_connection_failed", error=str(e))
    build_collaborators(app, redis)

    yield

    # Shutdown
    log.info("shutting_down")
    await app.state.provider.aclose()
    await app.state.downloader.aclose()
    await redis.aclose()


app = FastAPI(
    title="ImageGen",
    lifespan=lifespan,
)

# CORS middleware for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.APP_ENV == "development" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RateLimitMiddleware)

register_exception_handlers(app)

app.include_router(kie_router)
app.include_router(generations_router)
app.include_router(credits_router)
app.include_router(referrals_router)
app.include_router(subscriptions_router)
app.include_router(webhooks_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
