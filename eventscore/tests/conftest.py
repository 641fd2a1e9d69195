"""
Shared fixtures: in-memory database, a seeded event, actors per role and an
authenticated API client.
"""
from decimal import Decimal
from types import SimpleNamespace
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from eventscore.database import get_db, init_db
from eventscore.limiter import limiter
from eventscore.main import app
from eventscore.orm.competition import Event, Contest, Category, Contestant, Judge
from eventscore.orm.score import Score
from eventscore.rbac import Actor, Role, create_access_token

TENANT = "tenant-1"
OTHER_TENANT = "tenant-2"

HEAD_JUDGE_USER = "judge-user-1"
JUDGE_USER = "judge-user-2"

TEST_DATABASE_URL = "sqlite+aiosqlite://"


# =============================================================================
# Database
# =============================================================================

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


async def seed_event(session: AsyncSession, tenant_id: str = TENANT) -> SimpleNamespace:
    """
    One event with one contest holding two categories, three contestants and
    two judges. Judge 1 is head judge. Every judge has scored every
    contestant in category 1; category 2 has no scores.
    """
    event = Event(tenant_id=tenant_id, name="Spring Showcase")
    session.add(event)
    await session.flush()

    contest = Contest(tenant_id=tenant_id, event_id=event.id, name="Senior Vocal")
    session.add(contest)
    await session.flush()

    category_1 = Category(tenant_id=tenant_id, contest_id=contest.id, name="Technique", max_score=Decimal("100"))
    category_2 = Category(tenant_id=tenant_id, contest_id=contest.id, name="Stage Presence", max_score=Decimal("50"))
    session.add_all([category_1, category_2])

    contestants = [
        Contestant(tenant_id=tenant_id, event_id=event.id, name=f"Contestant {n}", contestant_number=n)
        for n in (1, 2, 3)
    ]
    session.add_all(contestants)

    head_judge = Judge(
        tenant_id=tenant_id, event_id=event.id, user_id=HEAD_JUDGE_USER,
        name="Head Judge", is_head_judge=True,
    )
    judge = Judge(tenant_id=tenant_id, event_id=event.id, user_id=JUDGE_USER, name="Panel Judge")
    session.add_all([head_judge, judge])
    await session.flush()

    # contestant 1: 90 + 80, contestant 2: 70 + 75, contestant 3: 85 + 60
    values = {
        (head_judge.id, contestants[0].id): "90",
        (judge.id, contestants[0].id): "80",
        (head_judge.id, contestants[1].id): "70",
        (judge.id, contestants[1].id): "75",
        (head_judge.id, contestants[2].id): "85",
        (judge.id, contestants[2].id): "60",
    }
    for (judge_id, contestant_id), value in values.items():
        session.add(Score(
            tenant_id=tenant_id,
            category_id=category_1.id,
            judge_id=judge_id,
            contestant_id=contestant_id,
            score=Decimal(value),
        ))
    await session.commit()

    return SimpleNamespace(
        tenant_id=tenant_id,
        event_id=event.id,
        contest_id=contest.id,
        category_id=category_1.id,
        empty_category_id=category_2.id,
        contestant_ids=[c.id for c in contestants],
        head_judge_id=head_judge.id,
        judge_id=judge.id,
    )


@pytest_asyncio.fixture
async def seeded(db) -> SimpleNamespace:
    return await seed_event(db)


async def fetch_scores(session: AsyncSession, category_id: str, judge_id: Optional[str] = None):
    """Fresh read of score rows, bypassing the identity map."""
    query = select(Score).where(Score.category_id == category_id)
    if judge_id:
        query = query.where(Score.judge_id == judge_id)
    result = await session.execute(query.execution_options(populate_existing=True))
    return list(result.scalars().all())


# =============================================================================
# Actors
# =============================================================================

def make_actor(role: Role, user_id: Optional[str] = None, tenant_id: str = TENANT) -> Actor:
    return Actor(
        user_id=user_id or f"{role.value.lower()}-user",
        role=role,
        tenant_id=tenant_id,
        name=f"{role.value.title()} Tester",
    )


@pytest.fixture
def head_judge():
    return make_actor(Role.JUDGE, HEAD_JUDGE_USER)


@pytest.fixture
def judge():
    return make_actor(Role.JUDGE, JUDGE_USER)


@pytest.fixture
def tally_master():
    return make_actor(Role.TALLY_MASTER)


@pytest.fixture
def auditor():
    return make_actor(Role.AUDITOR)


@pytest.fixture
def board():
    return make_actor(Role.BOARD)


@pytest.fixture
def organizer():
    return make_actor(Role.ORGANIZER)


@pytest.fixture
def admin():
    return make_actor(Role.ADMIN)


# =============================================================================
# API client
# =============================================================================

def auth_headers(actor: Actor) -> dict:
    token = create_access_token(actor.user_id, actor.role, actor.tenant_id, name=actor.name)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    limiter.enabled = False
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.pop(get_db, None)
        limiter.enabled = True
