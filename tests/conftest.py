"""
Shared fixtures for the invoice bot test suite.

Every test that touches the database gets its own file-backed SQLite
database under pytest's tmp_path, so SAVEPOINTs and separate sessions
behave like they do against a real server.
"""

import os

# Settings are read at import time
os.environ.setdefault("WHATSAPP_ACCESS_TOKEN", "test-access-token")
os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("WHATSAPP_APP_SECRET", "test-app-secret")
os.environ.setdefault("MESSENGER_ACCESS_TOKEN", "test-page-token")
os.environ.setdefault("DOCUMENT_STORAGE_BACKEND", "local")

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402

from src.invoicebot.db import create_engine_for_url, create_session_factory, init_db  # noqa: E402
from src.invoicebot.models import Organization  # noqa: E402
from src.invoicebot.services.conversation_flow import ConversationEngine  # noqa: E402
from src.invoicebot.services.documents import LocalDocumentStore  # noqa: E402
from src.invoicebot.services.rate_limit import RateLimiter  # noqa: E402

FAKE_PDF = b"%PDF-1.4\n% invoicebot test document\n"


class FakeRenderer:
    """Stands in for the ReportLab renderer; records what it was asked to render."""

    def __init__(self):
        self.rendered = []

    async def render(self, data):
        self.rendered.append(data)
        return FAKE_PDF


@pytest.fixture
async def db_engine(tmp_path):
    """Async engine on a fresh SQLite file with all tables created."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
async def organization(session_factory):
    """VAT-paying organization routed by phone-number id PHONE123."""
    async with session_factory() as session:
        async with session.begin():
            org = Organization(
                name="Testovací s.r.o.",
                ico="87654321",
                dic="CZ87654321",
                is_vat_payer=True,
                address_street="Dlouhá 1",
                address_city="Praha",
                address_zip="11000",
                default_currency="CZK",
                default_vat_rate=Decimal("21"),
                invoice_prefix="",
                whatsapp_phone_id="PHONE123",
                whatsapp_business_account_id="WABA123",
            )
            session.add(org)
    return org


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def document_store(tmp_path):
    return LocalDocumentStore(str(tmp_path / "documents"))


@pytest.fixture
def conversation_engine(session_factory, renderer, document_store):
    return ConversationEngine(
        session_factory,
        renderer=renderer,
        document_store=document_store,
        rate_limiter=RateLimiter(max_per_minute=100),
        due_days=14,
    )
