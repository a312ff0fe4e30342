from datetime import datetime, timedelta, timezone

import jwt
import pytest
from sqlalchemy import create_engine, insert
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from matchchat import config, database, models  # noqa: F401
from matchchat.auth.security import ALGORITHM
from matchchat.repo import user_table
from matchchat.services import delivery

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def issue_token(user_id: int, ttl_minutes: int = 60) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=ALGORITHM)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    database.Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine, monkeypatch):
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    monkeypatch.setattr(database, "SessionLocal", factory)
    return factory


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def make_user(db):
    def _make(user_id: int, first_name: str | None = None, level2: bool = False, level3: bool = False, profile=None):
        db.execute(
            insert(user_table).values(
                id=user_id,
                first_name=first_name or f"User{user_id}",
                level2_questions_completed=level2,
                level3_questions_completed=level3,
                profile=profile or {},
            )
        )
        db.commit()
        return user_id

    return _make


@pytest.fixture
def make_conversation(db, make_user):
    def _make(user_a: int = 1, user_b: int = 2, match_created_at: datetime = T0):
        for uid in (user_a, user_b):
            if not db.execute(user_table.select().where(user_table.c.id == uid)).first():
                make_user(uid)
        return delivery.ensure_conversation(db, user_a, user_b, match_created_at=match_created_at, now=match_created_at)

    return _make
