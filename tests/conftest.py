"""Pytest configuration and fixtures."""

import os
from decimal import Decimal
from io import BytesIO
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from src.api.dependencies import get_session_factory, get_storage
from src.database import Base, enable_sqlite_foreign_keys, get_db
from src.main import app
from src.models.enums import CreditTransactionType
from src.models.receipt_job import ReceiptJob
from src.models.user import User
from src.schemas.receipt import ExtractedItem, ExtractedReceipt
from src.services.credit_ledger import CreditLedger
from src.services.receipt_store import ReceiptStore
from src.services.storage import FilesystemObjectStore, upload_key


class AuthHeaders(dict):
    """Dict subclass that also stores user_id and email."""

    def __init__(self, *args, user_id: int | None = None, email: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.user_id = user_id
        self.email = email


# Use test database - PostgreSQL in Docker, SQLite locally
if os.getenv("DATABASE_URL"):
    # Running in Docker - use PostgreSQL test database
    SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL").replace("/receipts", "/receipts_test")
else:
    # Running locally - use SQLite
    SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"

connect_args = {"check_same_thread": False} if "sqlite" in SQLALCHEMY_DATABASE_URL else {}
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=connect_args)
if "sqlite" in SQLALCHEMY_DATABASE_URL:
    enable_sqlite_foreign_keys(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create test database schema once at the start of the test session."""
    if "postgresql" in SQLALCHEMY_DATABASE_URL:
        from sqlalchemy_utils import create_database, database_exists

        if not database_exists(SQLALCHEMY_DATABASE_URL):
            create_database(SQLALCHEMY_DATABASE_URL)

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(scope="function", autouse=True)
def db():
    """Create a fresh database session for each test with cleanup."""
    session = TestingSessionLocal()

    yield session

    # Clean up all data after test
    session.rollback()
    for table in reversed(Base.metadata.sorted_tables):
        session.execute(table.delete())
    session.commit()
    session.close()


@pytest.fixture(autouse=True)
def mock_redis():
    """Replace the publishing Redis client so no test needs a Redis server."""
    redis_client = MagicMock()
    with patch("src.services.realtime.get_sync_redis", return_value=redis_client):
        yield redis_client


@pytest.fixture
def mock_enqueue():
    """Stop submissions from reaching Celery."""
    with patch("src.tasks.receipt_processing.process_receipt_job.delay") as mock_task:
        yield mock_task


@pytest.fixture
def session_factory():
    """Session factory for code that opens its own sessions."""
    return TestingSessionLocal


@pytest.fixture
def storage(tmp_path):
    """Object store rooted in a temporary directory."""
    return FilesystemObjectStore(root=tmp_path / "storage", bucket="receipts")


@pytest.fixture(scope="function")
def client(db, storage):
    """Create a test client with database and storage overrides."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(client):
    """Create a user and return auth headers with user info."""
    response = client.post(
        "/api/v1/auth/register",
        json={"email": "test@example.com", "password": "testpass123", "name": "Test User"},
    )
    assert response.status_code == 201
    data = response.json()
    token = data["access_token"]
    user_id = data["user"]["id"]

    return AuthHeaders(
        {"Authorization": f"Bearer {token}"}, user_id=user_id, email="test@example.com"
    )


@pytest.fixture
def make_user(db):
    """Factory for users whose balance comes from a logged signup bonus."""

    def _make_user(email: str = "owner@example.com", credits: int = 5) -> User:
        user = User(email=email, password_hash="not-a-real-hash", name="Owner")
        db.add(user)
        db.commit()
        if credits:
            CreditLedger(db).add(user.id, credits, CreditTransactionType.SIGNUP_BONUS)
        db.refresh(user)
        return user

    return _make_user


def _image_bytes(image_format: str) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (32, 48), color=(240, 240, 240)).save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    """A small valid PNG."""
    return _image_bytes("PNG")


@pytest.fixture
def jpeg_bytes() -> bytes:
    """A small valid JPEG."""
    return _image_bytes("JPEG")


@pytest.fixture
def lidl_receipt() -> ExtractedReceipt:
    """Extraction result for a two-item Lidl receipt."""
    return ExtractedReceipt(
        store_name="Lidl",
        store_address="ul. Prosta 1, Warszawa",
        currency="PLN",
        total=Decimal("12.30"),
        items=[
            ExtractedItem(name="MLEKO 2% 1L", inferred_name="Mleko 2% 1 litr", total_price=Decimal("4.30")),
            ExtractedItem(name="CHLEB PSZENNY", product_type="chleb", total_price=Decimal("8.00")),
        ],
    )


class FakeExtractionClient:
    """Extraction client that replays scripted outcomes.

    Each outcome is an ``ExtractedReceipt`` to return or an exception to raise.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[tuple[bytes, str]] = []

    async def extract(self, image_data: bytes, mime_type: str) -> ExtractedReceipt:
        self.calls.append((image_data, mime_type))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def fake_extraction():
    """Factory for scripted extraction clients."""
    return FakeExtractionClient


@pytest.fixture
def pending_job(db, storage, png_bytes):
    """Factory for a pending receipt with a stored image and a queued job."""

    def _pending_job(user: User | None, data: bytes | None = None, extension: str = "png") -> ReceiptJob:
        image_path = storage.save(upload_key(extension), data or png_bytes)
        receipt = ReceiptStore(db, publisher=MagicMock()).create_pending(
            user.id if user else None, image_path
        )
        job = ReceiptJob(receipt_id=receipt.id)
        db.add(job)
        db.commit()
        return job

    return _pending_job
