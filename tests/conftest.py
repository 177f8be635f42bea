"""
Test configuration and fixtures for Wealth CRM
"""

import os

# Settings are read at import time; point them at throwaway backends first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["NATS_ENABLED"] = "false"
os.environ["BOOKING_AUTO_CONFIRM"] = "true"
os.environ.pop("EMAIL_API_URL", None)
os.environ.pop("ARCHIVE_API_URL", None)

import pytest
from datetime import time
from typing import AsyncGenerator, Iterable, Optional
from uuid import uuid4
from types import SimpleNamespace
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from crm.app.main import app
from crm.app.core.database import Base, engine_options, get_db
from crm.app.core.errors import DeliveryError, ArchiveError
from crm.app.api.dependencies import get_notifier, get_archiver
from crm.app.models import (
    User,
    Contact,
    Deal,
    DealStage,
    KYCStatus,
    Document,
    DocumentType,
    DocumentStatus,
    SignatureStatus,
    AvailabilityTemplate,
    AvailabilityRule,
)


class FakeNotifier:
    """Records emails instead of sending them"""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send_email(self, to_email, subject, content, communication_type=None, **kwargs):
        if self.fail:
            raise DeliveryError(f"Mailbox unavailable for {to_email}")
        message = SimpleNamespace(
            id=uuid4(),
            to_email=to_email,
            subject=subject,
            content=content,
            type=communication_type,
            **kwargs
        )
        self.sent.append(message)
        return message


class FakeArchiver:
    """Records archive calls and returns a fixed folder"""

    def __init__(self):
        self.calls = []
        self.fail = False

    async def archive_documents(self, deal_id, document_ids):
        if self.fail:
            raise ArchiveError(f"Drive quota exceeded for deal {deal_id}")
        self.calls.append((deal_id, list(document_ids)))
        return f"https://drive.example.com/folders/deal-{deal_id}"


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits"""
    url = f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    test_engine = create_async_engine(url, **engine_options(url))
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def archiver():
    return FakeArchiver()


@pytest.fixture
async def client(session_factory, notifier, archiver):
    """HTTP client with database and collaborator overrides."""
    async def get_test_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = get_test_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_archiver] = lambda: archiver

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
async def owner(test_db: AsyncSession) -> User:
    user = User(email="advisor@example.com", first_name="Ada", last_name="Lovelace")
    test_db.add(user)
    await test_db.commit()
    return user


@pytest.fixture
async def contact(test_db: AsyncSession) -> Contact:
    investor = Contact(full_name="Grace Hopper", email="grace@example.com", phone_number="+15550100")
    test_db.add(investor)
    await test_db.commit()
    return investor


@pytest.fixture
def make_deal(test_db: AsyncSession, owner: User, contact: Contact):
    """Factory for deals in a given state, optionally with documents."""
    async def _make_deal(
        stage: DealStage = DealStage.NEW_LEAD,
        kyc_status: KYCStatus = KYCStatus.PENDING,
        due_diligence_notes: Optional[str] = None,
        documents: Iterable[dict] = (),
        with_contact: bool = True
    ) -> Deal:
        deal = Deal(
            name="Hopper Family Trust",
            stage=stage.value,
            kyc_status=kyc_status.value,
            deal_value=250000,
            due_diligence_notes=due_diligence_notes,
            owner_user_id=owner.id,
            contact_id=contact.id if with_contact else None,
        )
        test_db.add(deal)
        await test_db.flush()
        for spec in documents:
            test_db.add(Document(deal_id=deal.id, **spec))
        await test_db.commit()
        return deal

    return _make_deal


@pytest.fixture
def document_spec():
    """Builds Document kwargs; verified KYC ID by default."""
    def _document_spec(file_type: DocumentType = DocumentType.KYC_ID, **overrides) -> dict:
        spec = {
            "file_name": f"{file_type.value.lower()}.pdf",
            "file_type": file_type.value,
            "status": DocumentStatus.VERIFIED.value,
            "e_signature_status": SignatureStatus.NOT_SENT.value,
        }
        spec.update(overrides)
        return spec

    return _document_spec


@pytest.fixture
async def template(test_db: AsyncSession, owner: User) -> AvailabilityTemplate:
    """30 minute meetings, 15 minute buffer, Mondays 09:00-17:00 UTC."""
    availability = AvailabilityTemplate(
        user_id=owner.id,
        name="Portfolio Review",
        description="Quarterly portfolio review",
        duration_minutes=30,
        buffer_minutes=15,
        booking_link="review30min",
        timezone="UTC",
        is_active=True,
        rules=[AvailabilityRule(day_of_week=1, start_time=time(9, 0), end_time=time(17, 0), is_available=True)],
    )
    test_db.add(availability)
    await test_db.commit()
    return availability
