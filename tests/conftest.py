"""Pytest configuration and fixtures."""
from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine, event, update
from sqlalchemy.pool import StaticPool

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("DRY_RUN", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RESTORE_ON_STARTUP", "false")

from core.config import get_settings
from core.db import Base, get_session_factory
from core.events import EventEmitter, FunnelEvent
from core.models import Conversation, Funnel
from messaging.provider import MessagingProvider, ProviderMessage
from scheduler.registry import MonitoringRegistry
from scheduler.tick_scheduler import ManualClock, ManualTickScheduler
from services.conversation_store import ConversationStore
from services.notification import NotificationService
from services.user_join import handle_user_joined


EXPERIENCE_ID = "exp_1"
GUIDE_LINK = "https://example.com/guide"
APP_BASE_URL = "https://app.example.com"
START_TIME = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

SAMPLE_FLOW = {
    "startBlockId": "welcome-1",
    "stages": [
        {"id": "s1", "name": "WELCOME", "blockIds": ["welcome-1"]},
        {"id": "s2", "name": "VALUE_DELIVERY", "blockIds": ["value-1", "value-2"]},
        {"id": "s3", "name": "QUALIFICATION", "blockIds": ["qual-1"]},
        {"id": "s4", "name": "TRANSITION", "blockIds": ["transition-1"]},
        {"id": "s5", "name": "EXPERIENCE_QUALIFICATION", "blockIds": ["exp-1", "exp-2"]},
    ],
    "blocks": {
        "welcome-1": {
            "id": "welcome-1",
            "message": "What's your niche?",
            "options": [
                {"text": "E-commerce", "nextBlockId": "value-1"},
                {"text": "SaaS", "nextBlockId": "value-2"},
            ],
        },
        "value-1": {
            "id": "value-1",
            "message": "Here is your free store guide: [LINK]",
            "resourceName": "guide",
            "options": [{"text": "Done", "nextBlockId": "qual-1"}],
        },
        "value-2": {
            "id": "value-2",
            "message": "Here is your free SaaS guide: [LINK]",
            "resourceName": "guide",
            "options": [{"text": "Done", "nextBlockId": "qual-1"}],
        },
        "qual-1": {
            "id": "qual-1",
            "message": "How experienced are you?",
            "options": [
                {"text": "Beginner", "nextBlockId": "transition-1"},
                {"text": "Advanced", "nextBlockId": "transition-1"},
            ],
        },
        "transition-1": {
            "id": "transition-1",
            "message": "Let's continue in private: [LINK_TO_PRIVATE_CHAT]",
            "options": [],
        },
        "exp-1": {
            "id": "exp-1",
            "message": "What's your monthly revenue?",
            "options": [
                {"text": "Under 10k", "nextBlockId": "exp-2"},
                {"text": "Over 10k", "nextBlockId": "exp-2"},
            ],
        },
        "exp-2": {
            "id": "exp-2",
            "message": "Thanks, a strategist will reach out.",
            "options": [],
        },
    },
}


class FakeProvider(MessagingProvider):
    """
    In-memory DM provider.

    Inbound messages are queued per user with ``reply``; listings return
    everything after the cursor (or everything, with ``replay_all``).
    """

    def __init__(self):
        self.inbox: Dict[str, List[ProviderMessage]] = {}
        self.sent: List[Dict[str, str]] = []
        self.fetch_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self.replay_all = False
        self.fetch_calls = 0
        self._counter = 0

    def reply(self, user_id: str, text: str) -> ProviderMessage:
        self._counter += 1
        message = ProviderMessage(id=f"in-{self._counter}", user_id=user_id, text=text)
        self.inbox.setdefault(user_id, []).append(message)
        return message

    def list_unread_messages(
        self, channel_id: str, since_cursor: Optional[str] = None
    ) -> List[ProviderMessage]:
        self.fetch_calls += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        messages = list(self.inbox.get(channel_id, []))
        if self.replay_all or since_cursor is None:
            return messages
        ids = [m.id for m in messages]
        if since_cursor not in ids:
            return messages
        return messages[ids.index(since_cursor) + 1:]

    def send(self, user_id: str, text: str) -> str:
        if self.send_error is not None:
            raise self.send_error
        self._counter += 1
        message_id = f"out-{self._counter}"
        self.sent.append({"id": message_id, "user_id": user_id, "text": text})
        return message_id

    def texts_to(self, user_id: str) -> List[str]:
        return [m["text"] for m in self.sent if m["user_id"] == user_id]


class EventRecorder:
    """Collects emitted events for assertions."""

    def __init__(self):
        self.events: List[FunnelEvent] = []

    def __call__(self, event: FunnelEvent) -> None:
        self.events.append(event)

    def names(self) -> List[str]:
        return [e.name for e in self.events]

    def of(self, name: str) -> List[FunnelEvent]:
        return [e for e in self.events if e.name == name]


@pytest.fixture
def engine():
    """Create a fresh in-memory database per test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Enable foreign key support for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Sessions that commit on success, bound to the test database."""
    return get_session_factory(bind=engine)


@pytest.fixture
def settings():
    """Application settings with test values."""
    return get_settings().model_copy(
        update={
            "app_base_url": APP_BASE_URL,
            "handoff_funnel_id": None,
            "max_invalid_responses": 3,
            "conversation_timeout_hours": 24.0,
            "poll_initial_interval_seconds": 5.0,
            "poll_regular_interval_seconds": 10.0,
            "poll_initial_window_seconds": 60.0,
            "poll_max_consecutive_failures": 5,
            "poll_max_conflict_retries": 3,
            "nudge_schedule_phase1": "10,60,720",
            "nudge_schedule_phase2": "15,60,720",
            "slack_webhook_url": None,
            "alert_phone_number": None,
        }
    )


@pytest.fixture
def clock():
    return ManualClock(START_TIME)


@pytest.fixture
def ticks(clock):
    return ManualTickScheduler(clock)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def events(recorder):
    emitter = EventEmitter()
    emitter.subscribe(recorder)
    return emitter


@pytest.fixture
def notifier(settings, events):
    """Synchronous, dry-run notifier; alerts show up as events."""
    return NotificationService(settings=settings, events=events, background=False, dry_run=True)


@pytest.fixture
def funnel(session_factory) -> int:
    """A deployed funnel for EXPERIENCE_ID; returns its id."""
    with session_factory() as session:
        funnel = Funnel(
            name="Strategy session",
            version=1,
            experience_id=EXPERIENCE_ID,
            flow=SAMPLE_FLOW,
            resources={"guide": GUIDE_LINK},
            is_deployed=True,
        )
        session.add(funnel)
        session.flush()
        return funnel.id


@pytest.fixture
def registry(session_factory, provider, ticks, events, notifier, clock, settings):
    return MonitoringRegistry(
        session_factory,
        provider,
        ticks,
        events=events,
        notifier=notifier,
        clock=clock,
        settings=settings,
    )


@pytest.fixture
def start_conversation(session_factory, provider, funnel, events, clock):
    """Create a conversation the way a user-joined event does; returns its id."""

    def _start(user_id: str = "user_1", registry=None) -> str:
        with session_factory() as session:
            result = handle_user_joined(
                session,
                provider,
                external_user_id=user_id,
                experience_id=EXPERIENCE_ID,
                registry=registry,
                events=events,
                clock=clock,
            )
        return result.conversation_id

    return _start


# ============================================================================
# Helpers
# ============================================================================


def load_conversation(session_factory, conversation_id: str) -> Optional[Conversation]:
    """A detached copy of the conversation's current row."""
    with session_factory() as session:
        conversation = session.get(Conversation, conversation_id, populate_existing=True)
        if conversation is not None:
            session.expunge(conversation)
        return conversation


def load_messages(session_factory, conversation_id: str) -> List[dict]:
    with session_factory() as session:
        return [m.to_dict() for m in ConversationStore(session).list_messages(conversation_id)]


def load_interactions(session_factory, conversation_id: str) -> List[dict]:
    with session_factory() as session:
        return [
            {"block_id": i.block_id, "option_text": i.option_text, "next_block_id": i.next_block_id}
            for i in ConversationStore(session).list_interactions(conversation_id)
        ]


def set_fields(session_factory, conversation_id: str, **values) -> None:
    """Write columns directly, bypassing the store's checks."""
    with session_factory() as session:
        session.execute(
            update(Conversation).where(Conversation.id == conversation_id).values(**values)
        )


def add_funnel(session_factory, flow: dict, resources: Optional[dict] = None, **fields) -> int:
    with session_factory() as session:
        funnel = Funnel(
            name=fields.pop("name", "Custom"),
            version=fields.pop("version", 1),
            experience_id=fields.pop("experience_id", EXPERIENCE_ID),
            flow=flow,
            resources=resources or {},
            is_deployed=fields.pop("is_deployed", False),
        )
        session.add(funnel)
        session.flush()
        return funnel.id
