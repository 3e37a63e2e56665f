"""Pytest configuration and fixtures."""

import os

# Settings are read at import time by the app modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("WEBHOOK_SECRET", "")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("REDIS_URL", "")

from io import BytesIO
from typing import AsyncGenerator, Callable, Optional, Union

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from reconciler.api.webhooks import get_reconciler
from reconciler.config import Settings, get_settings
from reconciler.db.models import Generation, GenerationStatus, JobKind, TrainingModel, TrainingStatus, User
from reconciler.db.session import Base
from reconciler.main import app
from reconciler.services.credits import CreditLedger
from reconciler.services.media import MediaPersister
from reconciler.services.reconciler import WebhookReconciler
from reconciler.services.storage import StorageError

CDN_BASE = "https://cdn.test"
PROVIDER_BASE = "https://replicate.delivery/pbxt"

Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class FakeStorage:
    """In-memory object store with the storage service contract."""

    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fail_keys: Callable[[str], bool] = lambda key: False
        self.healthy = True

    def upload(self, data: bytes, key: str, content_type: str) -> str:
        if self.fail_keys(key):
            raise StorageError(f"Failed to upload {key}: simulated outage", key=key)
        self.objects[key] = (data, content_type)
        return self.public_url(key)

    def delete(self, key: str) -> bool:
        return self.objects.pop(key, None) is not None

    def public_url(self, key: str) -> str:
        return f"{CDN_BASE}/{key}"

    def health_check(self) -> bool:
        return self.healthy


class FakePublisher:
    """Records published events instead of talking to Redis."""

    def __init__(self):
        self.events: list[tuple[str, str, dict]] = []
        self.error: Optional[Exception] = None

    async def publish(self, owner_id: str, event_type: str, payload: dict) -> int:
        if self.error is not None:
            raise self.error
        self.events.append((owner_id, event_type, payload))
        return 1

    async def ping(self) -> bool:
        return True

    async def close(self):
        pass


class ProviderMedia:
    """URL -> response table served through an httpx mock transport."""

    def __init__(self):
        self.routes: dict[str, Responder] = {}
        self.requests: list[httpx.Request] = []

    def add(self, url: str, content: bytes, content_type: str = "image/png", status_code: int = 200):
        self.routes[url] = httpx.Response(
            status_code, content=content, headers={"content-type": content_type}
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, text="expired")
        if callable(route):
            return route(request)
        return route

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def make_png(size: tuple[int, int] = (640, 480), color: str = "red") -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Isolated settings; no .env file, no webhook secret."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        storage_backend="local",
        local_storage_path=str(tmp_path / "media"),
        redis_url="",
        webhook_secret=None,
    )


@pytest_asyncio.fixture
async def test_engine(settings: Settings):
    """Create a fresh test database per test."""
    engine = create_async_engine(settings.database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def provider_media() -> ProviderMedia:
    return ProviderMedia()


@pytest.fixture
def media(storage: FakeStorage, settings: Settings, provider_media: ProviderMedia) -> MediaPersister:
    return MediaPersister(storage, settings, transport=provider_media.transport)


@pytest.fixture
def ledger(session_factory) -> CreditLedger:
    return CreditLedger(session_factory)


@pytest.fixture
def reconciler(session_factory, media, ledger, publisher, settings) -> WebhookReconciler:
    return WebhookReconciler(
        session_factory=session_factory,
        media=media,
        ledger=ledger,
        publisher=publisher,
        settings=settings,
    )


@pytest_asyncio.fixture
async def user(session_factory) -> User:
    """User U1 with no credits used."""
    async with session_factory() as db:
        user = User(id="U1", email="u1@example.com", credits_used=0, credits_limit=100)
        db.add(user)
        await db.commit()
    return user


@pytest_asyncio.fixture
async def make_generation(session_factory, ledger: CreditLedger, user: User):
    """Factory for generation-store jobs, charged through the ledger."""

    async def _make(
        job_id: str = "J1",
        external_job_id: Optional[str] = "pred-1",
        kind: JobKind = JobKind.GENERATION,
        status: GenerationStatus = GenerationStatus.PROCESSING,
        credits: int = 10,
        owner_id: str = "U1",
    ) -> Generation:
        async with session_factory() as db:
            generation = Generation(
                id=job_id,
                user_id=owner_id,
                kind=kind,
                status=status,
                external_job_id=external_job_id,
                prompt="a red fox in the snow",
                result_urls=[],
                thumbnail_urls=[],
                credits_charged=credits,
            )
            db.add(generation)
            await db.commit()
        if credits:
            await ledger.charge(job_id, owner_id, credits, job_kind=kind)
        return generation

    return _make


@pytest_asyncio.fixture
async def make_training(session_factory, ledger: CreditLedger, user: User):
    """Factory for model training jobs, charged through the ledger."""

    async def _make(
        model_id: str = "M1",
        external_job_id: Optional[str] = "train-1",
        status: TrainingStatus = TrainingStatus.TRAINING,
        credits: int = 50,
        progress: int = 0,
    ) -> TrainingModel:
        async with session_factory() as db:
            model = TrainingModel(
                id=model_id,
                user_id="U1",
                name="Portrait model",
                status=status,
                external_job_id=external_job_id,
                progress=progress,
                training_config={"steps": 1000},
                credits_charged=credits,
            )
            db.add(model)
            await db.commit()
        if credits:
            await ledger.charge(model_id, "U1", credits, job_kind=JobKind.TRAINING)
        return model

    return _make


@pytest_asyncio.fixture
async def client(reconciler: WebhookReconciler, settings: Settings) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    app.dependency_overrides[get_settings] = lambda: settings

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
