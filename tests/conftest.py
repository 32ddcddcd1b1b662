import os
from datetime import datetime, time, timedelta
from typing import AsyncGenerator, Awaitable, Callable, List, Optional, Sequence, Tuple

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from coaching.core.models import Subject, SubjectScheduleSlot
from coaching.core.timeutils import utc_now
from coaching.db.session import Base, get_db
from coaching.main import app


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# (day, start, end)
Slot = Tuple[str, str, str]


@pytest.fixture()
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory SQLite database per test; StaticPool keeps the single connection alive."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
async def db_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for a test and override FastAPI dependency."""
    async_session = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:

        async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
            yield session

        app.dependency_overrides[get_db] = override_get_db
        yield session

    app.dependency_overrides.clear()


@pytest.fixture()
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def future_deadline() -> datetime:
    return utc_now() + timedelta(days=30)


@pytest.fixture()
def subject_factory(
    db_session: AsyncSession,
    future_deadline: datetime,
) -> Callable[..., Awaitable[Subject]]:
    """Insert a subject directly through the ORM and return it."""
    counter = {"n": 0}

    async def _create(
        name: str,
        *,
        schedule: Sequence[Slot] = (),
        max_capacity: int = 30,
        current_enrollment: int = 0,
        credits: int = 3,
        prerequisites: Optional[List[Subject]] = None,
        is_active: bool = True,
        add_drop_deadline: Optional[datetime] = None,
        monthly_fee_amount=None,
    ) -> Subject:
        counter["n"] += 1
        subject = Subject(
            name=name,
            code=f"{name[:4].upper()}{counter['n']:03d}",
            description=f"{name} course",
            credits=credits,
            max_capacity=max_capacity,
            current_enrollment=current_enrollment,
            prerequisites=[str(p.id) for p in (prerequisites or [])],
            faculty="Staff",
            schedule=[
                SubjectScheduleSlot(
                    position=i,
                    day=day,
                    start_time=time.fromisoformat(start),
                    end_time=time.fromisoformat(end),
                    room="R1",
                )
                for i, (day, start, end) in enumerate(schedule)
            ],
            is_active=is_active,
            add_drop_deadline=add_drop_deadline or future_deadline,
            monthly_fee_amount=monthly_fee_amount,
        )
        db_session.add(subject)
        await db_session.commit()
        await db_session.refresh(subject)
        return subject

    return _create
