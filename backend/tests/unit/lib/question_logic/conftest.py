"""Test fixtures for question logic unit tests."""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from src.lib.question_logic.repository import InMemoryRepository
from src.lib.question_logic.settings import QuestionLogicSettings
from src.lib.question_logic.sql_repository import SqlAlchemyRepository
from src.models.question_logic import Question, TimeBasedConditions, Trigger
from src.models.sql.database import create_db_engine

BUSINESS_ID = "biz-1"
T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_question(question_id="q-1", **overrides) -> Question:
    fields = dict(
        id=question_id,
        business_id=BUSINESS_ID,
        text=f"How was your visit today? ({question_id})",
        category="service",
        topic_category="checkout",
        priority_level=3,
        frequency_target=10,
        frequency_window="daily",
        created_at=T0,
    )
    fields.update(overrides)
    return Question(**fields)


def make_trigger(trigger_id="t-1", question_id="q-1", conditions=None, **overrides) -> Trigger:
    fields = dict(
        id=trigger_id,
        question_id=question_id,
        business_id=BUSINESS_ID,
        conditions=conditions or TimeBasedConditions(),
    )
    fields.update(overrides)
    return Trigger(**fields)


def increment_concurrently(repository, question_id, threads=8, calls=25):
    """Increment from several threads at once; returns every count handed back."""
    def worker(_):
        return [repository.increment_question_frequency(question_id, T0) for _ in range(calls)]

    with ThreadPoolExecutor(max_workers=threads) as pool:
        return [count for batch in pool.map(worker, range(threads)) for count in batch]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Built-in defaults, independent of config/question_logic.yaml."""
    return QuestionLogicSettings()


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def sql_repository():
    """SQLAlchemy repository over a private in-memory SQLite database."""
    engine = create_db_engine("sqlite+pysqlite:///:memory:")
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    repo = SqlAlchemyRepository(factory)
    repo.create_schema()
    yield repo
    engine.dispose()
