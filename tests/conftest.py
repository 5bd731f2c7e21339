import pytest
from datetime import datetime, timezone
from typing import AsyncGenerator
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from replanner.db import create_db_and_tables
from replanner.main import create_app
from replanner.services.completion_client import CompletionClient
from replanner.services.proposal_store import InMemoryProposalStore
from replanner.services.reschedule_service import RescheduleService
from replanner.services.schedule_store import InMemoryScheduleStore

from fixtures import FakeOpenAI, ai_settings, noon, sample_schedule


@pytest.fixture
def today():
    return datetime.now(timezone.utc).date()


@pytest.fixture
def now(today) -> datetime:
    return noon(today)


@pytest.fixture
def schedule_store(today) -> InMemoryScheduleStore:
    store = InMemoryScheduleStore()
    store.add_schedule(*sample_schedule(today))
    return store


@pytest.fixture
def proposal_store() -> InMemoryProposalStore:
    return InMemoryProposalStore()


@pytest.fixture
def fake_openai() -> FakeOpenAI:
    return FakeOpenAI()


@pytest.fixture
def completion_client(fake_openai) -> CompletionClient:
    return CompletionClient(ai_settings(), client=fake_openai)


@pytest.fixture
def service(schedule_store, proposal_store, completion_client) -> RescheduleService:
    return RescheduleService(schedule_store, proposal_store, completion_client, config=ai_settings())


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as c:
        yield c


# file-backed sqlite per test, so SQL stores see one shared database
@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator[sessionmaker, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'replanner.db'}", echo=False)
    await create_db_and_tables(engine)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
