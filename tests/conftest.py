"""
Shared fixtures: a throwaway SQLite database per test, an in-memory Redis,
and a controllable clock.
"""
from datetime import datetime, timedelta, timezone

import pytest
from fakeredis import FakeAsyncRedis

from core.database import build_engine, build_session_factory, create_tables
from repositories.survey_template import SurveyTemplateRepository
from schemas.survey import Answer, RespondentRef, TemplateCreate
from services.change_notifier import ChangeNotifier
from services.relay_store import RedisRelayStore
from services.session_lifecycle import SessionLifecycleManager
from services.submission import SubmissionService

OWNER_ID = "clinic-a"


class StepClock:
    """Moves forward a millisecond on every read; `advance` jumps ahead."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(milliseconds=1)
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def owner_id():
    return OWNER_ID


@pytest.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'survey.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
async def redis_client():
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def relay(redis_client):
    return RedisRelayStore(redis_client, prefix="test_relay", snapshot_grace_hours=1, poll_seconds=0.05)


@pytest.fixture
def notifier():
    return ChangeNotifier()


@pytest.fixture
def lifecycle(session_factory, relay, clock):
    return SessionLifecycleManager(
        session_factory,
        relay,
        owner_id=OWNER_ID,
        allow_remote=True,
        token_max_attempts=5,
        clock=clock,
    )


@pytest.fixture
def submission(lifecycle, relay, notifier):
    return SubmissionService(lifecycle=lifecycle, relay=relay, notifier=notifier)


@pytest.fixture
def remote_submission(relay, clock):
    """What the public relay process runs: no local database."""
    return SubmissionService(relay=relay, clock=clock)


@pytest.fixture
async def template(session_factory):
    async with session_factory() as db:
        created = await SurveyTemplateRepository(db).create(
            TemplateCreate(
                id="T1",
                name="Pre-visit questionnaire",
                questions=[
                    {"id": "pain", "type": "scale", "text": "Pain today (0-10)"},
                    {"id": "notes", "type": "text", "text": "Anything else?"},
                ],
            )
        )
        await db.commit()
    return created


@pytest.fixture
def answers():
    return [
        Answer(question_id="pain", value=4),
        Answer(question_id="notes", value="Left knee"),
    ]


@pytest.fixture
def kim():
    return RespondentRef(name="Kim")
