import os

# Configure the app for tests before anything imports settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTH_DISABLED"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key"

import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.deps import get_db, get_writing_dispatcher
from app.db.base import Base
from app.main import app
from app.models.chapter import Chapter
from app.models.project import Project, WritingStatus
from app.models.user import User
from app.services.auth import AuthService
from app.services.credit_ledger import CreditLedger
from app.services.llm import LLMResponse
from app.services.notifications import CompletionNotifier
from app.services.orchestrator import BookWriterOrchestrator
from app.services.outline_generator import OutlineGenerator
from app.services.retry import RetryPolicy
from app.services.scene_generator import SceneGenerator

# In-memory SQLite shared by every session in a test
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

FIXED_NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

SCENE_TEXT = (
    "The rain had not stopped for three days.\n\n"
    "Mara pressed her palm to the cold glass and waited.\n\n"
    "Somewhere below, a door slammed."
)
SCENE_WORDS = len(SCENE_TEXT.split())


class DispatchRecorder:
    """Stands in for the Celery dispatcher and remembers every call."""

    def __init__(self):
        self.calls = []

    def __call__(self, project_id, resume=False, delay=0.0):
        self.calls.append({"project_id": str(project_id), "resume": resume, "delay": delay})

    @property
    def count(self):
        return len(self.calls)


class FakeLLM:
    """
    Scripted replacement for LLMService.

    Each script item is used for one call: a string is returned as content,
    an exception is raised, a callable is invoked and its result used.
    Once the script runs out every call returns `default`.
    """

    def __init__(self, script=None, default=SCENE_TEXT):
        self.script = list(script or [])
        self.default = default
        self.calls = []

    def generate(self, prompt, system_prompt=None, model=None, max_tokens=4096, temperature=0.7):
        self.calls.append(
            {
                "prompt": prompt,
                "system_prompt": system_prompt,
                "model": model,
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        item = self.script.pop(0) if self.script else self.default
        if callable(item) and not isinstance(item, str):
            item = item()
        if isinstance(item, Exception):
            raise item
        return LLMResponse(
            content=item,
            model=model or "fake-model",
            input_tokens=100,
            output_tokens=200,
            estimated_cost=0.0,
            stop_reason="end_turn",
        )


def make_scene(index, target_words=800, status="pending"):
    return {
        "title": f"Scene {index + 1}",
        "pov": "Mara",
        "location": "The lighthouse",
        "time": "Night",
        "description": f"Something important happens in scene {index + 1}.",
        "key_events": [f"Event {index + 1}"],
        "emotional_arc": "Dread to resolve",
        "target_words": target_words,
        "status": status,
    }


@pytest.fixture(scope="function")
def db():
    """Fresh schema per test."""
    Base.metadata.create_all(bind=engine)
    db_session = TestingSessionLocal()
    try:
        yield db_session
    finally:
        db_session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def dispatcher():
    return DispatchRecorder()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def deliveries():
    return []


@pytest.fixture
def make_user(db: Session):
    def _make_user(**overrides):
        values = {
            "id": uuid.uuid4(),
            "email": f"writer-{uuid.uuid4().hex[:8]}@example.com",
            "full_name": "Test Writer",
            "monthly_word_limit": 100000,
            "extra_words_balance": 0,
            "is_active": True,
            "is_superuser": False,
        }
        values.update(overrides)
        user = User(**values)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_project(db: Session):
    """
    Build a project with chapters.

    `scenes_per_chapter` lists the outline length of each chapter; use 0 for
    a chapter that has no outline yet.
    """

    def _make_project(owner, scenes_per_chapter=(3, 3), **overrides):
        values = {
            "owner_id": owner.id,
            "title": "The Lighthouse Keeper",
            "genre": "fiction",
            "story_idea": "A keeper finds a message in the lamp.",
            "story_structure": {"acts": ["setup", "confrontation", "resolution"]},
            "target_word_count": 6000,
            "writing_status": WritingStatus.IDLE,
        }
        values.update(overrides)
        project = Project(**values)
        db.add(project)
        db.flush()

        for order, count in enumerate(scenes_per_chapter):
            db.add(
                Chapter(
                    project_id=project.id,
                    title=f"Chapter {order + 1}",
                    summary=f"Summary of chapter {order + 1}",
                    sort_order=order,
                    scene_outline=[make_scene(i) for i in range(count)],
                )
            )
        db.commit()
        db.refresh(project)
        return project

    return _make_project


@pytest.fixture
def test_user(make_user):
    return make_user(email="testuser@example.com")


@pytest.fixture
def auth_headers(test_user: User):
    """Bearer token as issued by the auth provider."""
    token = AuthService.create_access_token({"sub": str(test_user.id), "email": test_user.email})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_orchestrator(db: Session, dispatcher, fake_llm, sleeps, deliveries):
    def _make_orchestrator(llm=None, ledger=None):
        llm = llm or fake_llm
        policy = RetryPolicy(max_attempts=5, base_delay=10, max_delay=120)
        return BookWriterOrchestrator(
            db,
            dispatch=dispatcher,
            scene_generator=SceneGenerator(llm=llm, policy=policy, sleep=sleeps.append, model="fake"),
            outline_generator=OutlineGenerator(llm=llm, policy=policy, sleep=sleeps.append, model="fake"),
            ledger=ledger or CreditLedger(db, clock=lambda: FIXED_NOW),
            notifier=CompletionNotifier(db, deliver=deliveries.append),
            scene_delay=0,
        )

    return _make_orchestrator


@pytest.fixture(scope="function")
def client(db: Session, dispatcher):
    """Create a test client with the test database and a recording dispatcher."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_writing_dispatcher] = lambda: dispatcher

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
