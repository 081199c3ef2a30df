"""Shared test fixtures for Corrispettivi-Engine."""

import os
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient

from corrispettivi_engine.authority.client import AuthorityClient
from corrispettivi_engine.common.config import CorrispettiviSettings
from corrispettivi_engine.common.database import DatabaseManager
from corrispettivi_engine.common.exceptions import TransportError
from corrispettivi_engine.pem.session import EmissionPointConfig, EmissionPointSession
from corrispettivi_engine.pem.storage import MemoryStorage
from corrispettivi_engine.receipts.builder import LineInput


API_KEY = "test-admin-api-key"
VAT_NUMBER = "12345678901"
DEVICE_ID = "PEM-0001"
REFERENCE_DATE = "2025-01-15"


class StepClock:
    """Deterministic clock: each call advances by ``step``."""

    def __init__(
        self,
        start: datetime = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc),
        step: timedelta = timedelta(seconds=1),
    ):
        self._now = start
        self.step = step

    def __call__(self) -> datetime:
        value = self._now
        self._now += self.step
        return value


class FakeAuthority(AuthorityClient):
    """In-memory authority: records submissions, serves configured outcomes."""

    def __init__(self):
        self.sent: list[dict] = []
        self.immediate = None
        self.outcomes: dict[tuple[str, str, str], object] = {}
        self.fail_send = False
        self.fail_query = False
        self.queries = 0

    async def send_report(self, report):
        if self.fail_send:
            raise TransportError("authority unreachable")
        self.sent.append(report)
        return self.immediate

    async def query_outcome(self, vat_number, device_id, reference_date):
        self.queries += 1
        if self.fail_query:
            raise TransportError("authority unreachable")
        return self.outcomes.get((vat_number, device_id, reference_date))


def make_settings(**overrides) -> CorrispettiviSettings:
    defaults = {
        "db_url": "sqlite+aiosqlite://",
        "api_key": API_KEY,
        "storage_backend": "memory",
    }
    defaults.update(overrides)
    return CorrispettiviSettings(**defaults)


def run_day(lines_per_receipt, clock=None, device_id=DEVICE_ID):
    """Run one offline PEM session and return its receipts and sealed journal."""
    storage = MemoryStorage()
    session = EmissionPointSession(
        EmissionPointConfig(VAT_NUMBER, "Bar Centrale", device_id),
        storage,
        clock=clock or StepClock(),
    )
    session.open_session()
    receipts = [session.emit_receipt(lines).receipt for lines in lines_per_receipt]
    summary = session.close_session()
    return SimpleNamespace(
        receipts=[r.to_dict() for r in receipts],
        receipt_objects=receipts,
        journal=storage.get_journal(session.reference_date),
        summary=summary,
        session=session,
        storage=storage,
    )


@pytest.fixture
def api_key():
    return API_KEY


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def authority():
    return FakeAuthority()


@pytest.fixture
async def db(settings):
    manager = DatabaseManager(settings)
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def closed_day():
    """Receipt A (2 x 2.50 @ 10%) and B (1 x 5.00 @ 10%) in one closed session."""
    return run_day([
        [LineInput("Caffe", 2, "2.50", 10)],
        [LineInput("Cornetto", 1, "5.00", 10)],
    ])


@pytest.fixture
def app(authority):
    """Create a test app with in-memory DB and blob store."""
    os.environ["CORRISPETTIVI_DB_URL"] = "sqlite+aiosqlite://"
    os.environ["CORRISPETTIVI_API_KEY"] = API_KEY
    os.environ["CORRISPETTIVI_STORAGE_BACKEND"] = "memory"

    # Clear caches and singletons so new env vars take effect
    from corrispettivi_engine.common.config import get_settings
    get_settings.cache_clear()

    from corrispettivi_engine.deps import reset_singletons, set_authority_client
    reset_singletons()
    set_authority_client(authority)

    from corrispettivi_engine.app import create_app
    return create_app()


@pytest.fixture
async def client(app):
    # Manually init DB since ASGITransport doesn't run lifespan
    from corrispettivi_engine.deps import get_aggregation_service, get_audit_service, get_db
    db = get_db()
    await db.init()
    await db.create_all()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await get_aggregation_service().drain()
    await get_audit_service().drain()
    await db.close()


@pytest.fixture
def admin_headers():
    return {"X-Corrispettivi-Api-Key": API_KEY}
