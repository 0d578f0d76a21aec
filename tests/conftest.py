import io
import json
import time
import uuid
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from imagegen.config import settings
from imagegen.database import get_db
from imagegen.errors import PaymentVerificationError, StorageError
from imagegen.integrations.asset_storage import AssetDownloader
from imagegen.integrations.kie_client import KieClient
from imagegen.main import app
from imagegen.models import Base, CheckInReward, PaymentPlan, UserProfile
from imagegen.services.auth_service import create_access_token
from imagegen.services.credit_service import append_transaction
from imagegen.services.task_lifecycle import PollReconciler, TaskLifecycle
from imagegen.services.task_store import STATUS_PENDING, STATUS_PROCESSING, GenerationTask
from imagegen.services.task_submitter import TaskSubmitter

TEST_JWT_SECRET = "test-jwt-secret"
TEST_ADMIN_TOKEN = "test-admin-token"


def png_bytes(size: int = 4) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (size, size), (200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class InMemoryTaskStore:
    """Dict-backed task store with the same claim/finalize rules as Redis."""

    def __init__(self) -> None:
        self.tasks: dict[str, GenerationTask] = {}

    @staticmethod
    def _copy(task: GenerationTask) -> GenerationTask:
        return GenerationTask.from_json(task.to_json())

    async def save(self, task: GenerationTask) -> bool:
        if task.task_id in self.tasks:
            return False
        self.tasks[task.task_id] = self._copy(task)
        return True

    async def get(self, task_id: str) -> GenerationTask | None:
        task = self.tasks.get(task_id)
        return self._copy(task) if task else None

    async def mark_processing(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.status != STATUS_PENDING:
            return False
        task.status = STATUS_PROCESSING
        return True

    async def claim(self, task_id: str, token: str, ttl_seconds: int) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.is_terminal or task.has_live_claim():
            return False
        task.claim_token = token
        task.claim_expires_at = time.time() + ttl_seconds
        return True

    async def finalize(
        self,
        task_id,
        token,
        *,
        status,
        result_urls=None,
        error=None,
        error_code=None,
        consume_credits=None,
        cost_time_ms=None,
    ):
        task = self.tasks.get(task_id)
        if task is None or task.is_terminal or task.claim_token != token:
            return None
        task.status = status
        task.result_urls = list(result_urls or [])
        task.error = error
        task.error_code = error_code
        if consume_credits is not None:
            task.consume_credits = consume_credits
        if cost_time_ms is not None:
            task.cost_time_ms = cost_time_ms
        task.claim_token = None
        task.claim_expires_at = None
        task.completed_at = task.updated_at
        return self._copy(task)


class RecordingStorage:
    def __init__(self, fail: bool = False) -> None:
        self.puts: list[tuple[str, str, int]] = []
        self.fail = fail

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        if self.fail:
            raise StorageError("disk full")
        self.puts.append((key, content_type, len(data)))
        return f"https://assets.test/{key}"


class FakeGateway:
    """Stands in for ``StripeGateway``; events are plain JSON, signed with "valid"."""

    def __init__(self, paid: bool = True) -> None:
        self.paid = paid
        self.sessions: list[str] = []

    def create_checkout_session(self, order_id, user_id, plan, customer_email=None):
        session_id = f"cs_test_{uuid.uuid4().hex[:12]}"
        self.sessions.append(session_id)
        return session_id, f"https://checkout.test/{session_id}"

    def is_session_paid(self, session_id: str) -> bool:
        return self.paid

    def construct_event(self, payload: bytes, sig_header: str):
        if sig_header != "valid":
            raise PaymentVerificationError("Invalid signature")
        return json.loads(payload)


def _asset_handler(request: httpx.Request) -> httpx.Response:
    if "missing" in request.url.path:
        return httpx.Response(404)
    if "garbage" in request.url.path:
        return httpx.Response(200, content=b"not an image")
    return httpx.Response(200, content=png_bytes(), headers={"content-type": "image/png"})


def allowing_redis(count: int = 1):
    """A Redis double whose rate-limit pipeline reports ``count`` hits."""
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[0, True, count, True])
    redis = AsyncMock()
    redis.pipeline = MagicMock(return_value=pipe)
    return redis


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET_KEY", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", TEST_ADMIN_TOKEN)
    monkeypatch.setattr(settings, "SITE_URL", "http://site.test")
    monkeypatch.setattr(settings, "GENERATION_CREDIT_COST", 5)
    monkeypatch.setattr(settings, "REFERRAL_SIGNUP_REWARD", 10)
    monkeypatch.setattr(settings, "REFERRAL_PURCHASE_REWARD", 30)
    monkeypatch.setattr(settings, "REFEREE_SIGNUP_REWARD", 0)


@pytest.fixture
async def db_session():
    """In-memory SQLite session with the schema and reference rows loaded."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_factory() as session:
        session.add_all(
            [
                CheckInReward(day=1, credits=1, is_bonus_day=False),
                CheckInReward(day=2, credits=1, is_bonus_day=False),
                CheckInReward(day=3, credits=2, is_bonus_day=False),
                CheckInReward(day=4, credits=3, is_bonus_day=True),
                CheckInReward(day=5, credits=2, is_bonus_day=False),
                CheckInReward(day=6, credits=3, is_bonus_day=False),
                CheckInReward(day=7, credits=5, is_bonus_day=True),
                PaymentPlan(id="basic_monthly", name="Basic", credits=100, price_cents=999),
                PaymentPlan(id="pro_monthly", name="Pro", credits=500, price_cents=2999),
            ]
        )
        await session.commit()
        yield session
    await engine.dispose()


@pytest.fixture
def make_profile(db_session):
    """Create a profile; a non-zero starting balance is granted through the ledger.

    The returned object is detached so service-level rollbacks cannot expire it.
    """

    async def _make(credits: int = 0, **fields) -> UserProfile:
        profile = UserProfile(
            id=uuid.uuid4(),
            email=fields.pop("email", f"{uuid.uuid4().hex[:10]}@example.com"),
            credits=0,
            **fields,
        )
        db_session.add(profile)
        await db_session.commit()
        if credits:
            await append_transaction(db_session, profile.id, credits, "bonus", "Test grant")
            await db_session.commit()
        await db_session.refresh(profile)
        db_session.expunge(profile)
        return profile

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user_id: uuid.UUID) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _headers


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {TEST_ADMIN_TOKEN}"}


@pytest.fixture
def task_store():
    return InMemoryTaskStore()


@pytest.fixture
def storage():
    return RecordingStorage()


@pytest.fixture
async def downloader():
    client = httpx.AsyncClient(transport=httpx.MockTransport(_asset_handler))
    dl = AssetDownloader(http_client=client)
    yield dl
    await dl.aclose()


@pytest.fixture
def lifecycle(task_store, downloader, storage):
    return TaskLifecycle(store=task_store, downloader=downloader, storage=storage)


@pytest.fixture
def provider():
    mock = AsyncMock(spec=KieClient)
    mock.create_task.return_value = "task-123"
    return mock


@pytest.fixture
def payment_gateway():
    return FakeGateway()


@pytest.fixture
async def client(db_session, task_store, lifecycle, provider, payment_gateway):
    """HTTP client against the app with every collaborator replaced by a test double."""

    async def _override_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_db
    app.state.redis = allowing_redis()
    app.state.task_store = task_store
    app.state.task_lifecycle = lifecycle
    app.state.poll_reconciler = PollReconciler(provider, lifecycle)
    app.state.task_submitter = TaskSubmitter(provider, task_store)
    app.state.payment_gateway = payment_gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
