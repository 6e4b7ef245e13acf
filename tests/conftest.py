"""Pytest configuration and shared fixtures."""
from contextlib import contextmanager

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Import all models to ensure they are registered with Base.metadata
from shared.models.entities import *
from shared.models.entities import Base
from shared.models.domain import StructuredContext
from shared.services.anthropic_adapter import StreamComplete, TextDelta
from tests.helpers import make_problem


@pytest.fixture(scope="function")
def db_engine():
    """
    In-memory SQLite engine shared by every session of one test.

    StaticPool keeps a single connection so all sessions see the same
    database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    """
    Create a test database session with in-memory SQLite.

    This fixture creates a fresh database for each test function,
    ensuring test isolation.
    """
    SessionLocal = sessionmaker(bind=db_engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def session_scope(db_engine):
    """Transactional scope factory with the same contract as DatabaseManager.session_scope."""
    SessionLocal = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)

    @contextmanager
    def _scope():
        session = SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _scope


@pytest.fixture
def conversation(db_session):
    """A persisted conversation."""
    from shared.repositories import ConversationRepository

    return ConversationRepository(db_session).create(title="Linear equations", conversation_id="conv-1")


@pytest.fixture
def sample_context():
    """Progress payload for 'Solve 2x+5=13' at step 2 of 4."""
    return StructuredContext(
        current_problem="Solve 2x+5=13",
        current_step=2,
        total_steps=4,
        problem_type="linear_equation",
        steps_completed=["Identified what we know"],
        current_equation="2x = 8",
        step_roadmap=["Understand", "Isolate x", "Solve", "Check"],
    )


@pytest.fixture
def sample_problems():
    """Three valid problems whose correct option is B."""
    return [make_problem(f"Problem {i}") for i in range(1, 4)]


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------

class ScriptedChatModel:
    """Chat client stand-in that streams a fixed reply and records every request."""

    def __init__(self, deltas=("Let's ", "think ", "about it.")):
        self.deltas = list(deltas)
        self.fail_with = None
        self.completion = ""
        self.calls = []

    async def stream_chat(self, system, messages, tools=None, tool_choice=None):
        self.calls.append(list(messages))
        if self.fail_with:
            raise self.fail_with
        for delta in self.deltas:
            yield TextDelta(text=delta)
        yield StreamComplete(text="".join(self.deltas))

    async def complete(self, system, prompt):
        return self.completion


@pytest.fixture
def settings():
    from config import Settings

    return Settings(
        _env_file=None,
        anthropic_api_key="test-anthropic-key",
        openai_api_key="test-openai-key",
        whiteboard_autosave_seconds=0.01,
    )


@pytest.fixture
def chat_model():
    return ScriptedChatModel()


@pytest.fixture
def services(settings, session_scope, chat_model):
    """Real service container over the in-memory database with scripted model clients."""
    from unittest.mock import AsyncMock, MagicMock
    from tutor.api.dependencies import TutorServices

    services = TutorServices(settings, MagicMock(session_scope=session_scope))
    services._chat_client = chat_model
    services._speech = MagicMock()
    services._speech.transcribe = AsyncMock(return_value="x equals four")
    services._speech.synthesize = AsyncMock(return_value=b"ID3-audio")
    services._speech.describe_image = AsyncMock(return_value="2x + 5 = 13")
    services._storage = MagicMock()
    services._storage.upload_image.return_value = "uploads/conv-1/board.png"
    services._storage.download.return_value = (b"png-bytes", "image/png")
    services._token_issuer = MagicMock()
    services._token_issuer.issue = AsyncMock(return_value="ek_test")
    return services


@pytest.fixture
def api_client(services, db_session):
    """TestClient over every router with services and db overridden."""
    from fastapi import FastAPI
    from fastapi.testclient import TestClient

    from database import get_db
    from shared.api import health
    from tutor.api import chat, conversations, practice, transcription, tts, uploads, vision, voice, whiteboard
    from tutor.api.dependencies import get_services

    app = FastAPI()
    for module in (health, conversations, chat, practice, whiteboard, uploads, voice, transcription, tts, vision):
        app.include_router(module.router)

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_services] = lambda: services

    with TestClient(app) as client:
        yield client
