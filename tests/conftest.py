"""
Test configuration for Invoice Service tests
"""

import os
import tempfile
from datetime import timedelta

# Test environment variables, set before the package reads its settings
_TEST_ROOT = tempfile.mkdtemp(prefix="invoice-service-tests-")
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_ROOT}/default.db"
os.environ["STORAGE_ROOT"] = os.path.join(_TEST_ROOT, "storage")
os.environ["AUTH_SECRET_KEY"] = "test-secret-key"
os.environ["AUTO_CREATE_TABLES"] = "false"
# Wide enough that CLI tables never wrap ids or amounts
os.environ["COLUMNS"] = "200"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from invoice_service import crud, models, schemas
from invoice_service.auth import create_access_token
from invoice_service.database import build_engine, build_session_factory, get_db, init_models, utcnow
from invoice_service.events import InvoiceEventBus
from invoice_service.main import app, get_event_bus, get_pdf_manager
from invoice_service.pdf_manager import PdfConsistencyManager
from invoice_service.storage import LocalBlobStorage


class FakeRenderer:
    """Records every document it renders and returns tiny fake PDF bytes"""

    def __init__(self):
        self.documents = []

    def render(self, document: schemas.InvoiceDocument) -> bytes:
        self.documents.append(document)
        return f"%PDF-1.4 {document.invoice_number} {document.status.value}".encode()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'invoices.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def storage(tmp_path):
    return LocalBlobStorage(str(tmp_path / "blobs"), base_url="/storage")


@pytest.fixture
def pdf_manager(session_factory, renderer, storage):
    return PdfConsistencyManager(session_factory, renderer, storage, timeout=5, pdf_directory="invoices")


@pytest.fixture
def bus(pdf_manager):
    bus = InvoiceEventBus()
    bus.subscribe(pdf_manager.handle)
    return bus


@pytest_asyncio.fixture
async def users(db):
    """An admin and two regular users"""
    admin = models.User(name="Ada Admin", email="admin@example.com", role="admin")
    alice = models.User(name="Alice", email="alice@example.com", role="user")
    bob = models.User(name="Bob", email="bob@example.com", role="user")
    db.add_all([admin, alice, bob])
    await db.commit()
    return {"admin": admin, "alice": alice, "bob": bob}


@pytest_asyncio.fixture
async def client_record(db):
    return await crud.create_client(
        db,
        schemas.ClientCreate(
            first_name="John",
            last_name="Doe",
            document_type="CC",
            document_number="123456789",
            email="john.doe@example.com",
            phone="+57 300 000 0000",
        ),
    )


@pytest.fixture
def make_invoice_data(client_record):
    """Factory for valid create payloads, dated relative to now"""

    def _make(**overrides) -> schemas.InvoiceCreate:
        now = utcnow()
        data = {
            "client_id": client_record.id,
            "description": "Consulting services",
            "notes": "Thanks for your business",
            "issue_date": now,
            "due_date": now + timedelta(days=30),
            "items": [
                {"name": "Development", "quantity": 2, "unit_price": "100.00", "tax_rate": "19"},
                {"name": "Support", "quantity": 1, "unit_price": "50.00", "tax_rate": "19"},
            ],
        }
        data.update(overrides)
        return schemas.InvoiceCreate(**data)

    return _make


def auth_header(user: models.User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


@pytest.fixture
def headers(users):
    return {name: auth_header(user) for name, user in users.items()}


@pytest_asyncio.fixture
async def api(session_factory, bus, pdf_manager):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_bus] = lambda: bus
    app.dependency_overrides[get_pdf_manager] = lambda: pdf_manager

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
