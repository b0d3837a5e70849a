"""
Global pytest configuration and fixtures for Lifeline testing.
"""
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from lifeline.core.database import DatabaseManager
from lifeline.models.emergency import UserRecord
from lifeline.services.dispatch.dispatch_engine import DispatchConfig, DispatchEngine
from lifeline.services.dispatch.emergency_store import EmergencyStore
from lifeline.services.dispatch.subscriber_registry import SubscriberRegistry
from lifeline.services.dispatch.user_directory import UserDirectory
from tests.mocks.dispatch_mocks import (
    MockAEDIndex, MockPushSender, MockTriageService, RecordingTransport
)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db(temp_dir):
    """Migrated SQLite database in a temporary directory."""
    manager = DatabaseManager(str(temp_dir / "test.db"), max_connections=5)
    yield manager
    manager.close()


@pytest.fixture
def users(db):
    return UserDirectory(db)


@pytest.fixture
def store(db):
    return EmergencyStore(db)


@pytest.fixture
def make_user(users):
    """Factory that inserts a user profile."""
    def _make_user(user_id, location=None, session_epoch=1, **kwargs):
        user = UserRecord(
            id=user_id,
            username=kwargs.pop('username', user_id),
            name=kwargs.pop('name', user_id.title()),
            phone_number=kwargs.pop('phone_number', "+6590000000"),
            medical=kwargs.pop('medical', [{"condition": "Asthma", "treatment": "Inhaler", "remarks": ""}]),
            skills=kwargs.pop('skills', [{"name": "CPR", "level": "certified"}]),
            location=location,
            session_epoch=session_epoch,
            **kwargs
        )
        return users.upsert_user(user)
    return _make_user


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def aed_index():
    return MockAEDIndex()


@pytest.fixture
def triage():
    return MockTriageService()


@pytest.fixture
def push():
    return MockPushSender()


@pytest.fixture
def dispatch_config():
    return DispatchConfig(
        emergency_ttl_seconds=600,
        fanout_radius_m=500000,
        aed_neighbours=5,
        aed_timeout_seconds=0.5,
        ai_timeout_seconds=0.5,
        ai_ack_grace_seconds=0.2,
        broadcast_on_expiry=True
    )


@pytest_asyncio.fixture
async def engine(store, users, transport, aed_index, triage, push, dispatch_config):
    """Dispatch engine wired to recording fakes; stopped after the test."""
    engine = DispatchEngine(
        store=store,
        users=users,
        transport=transport,
        aed_index=aed_index,
        triage=triage,
        push=push,
        config=dispatch_config,
        registry=SubscriberRegistry()
    )
    yield engine
    await engine.stop()
