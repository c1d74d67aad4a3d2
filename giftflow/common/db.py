"""Database bootstrap helpers shared by both services."""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from giftflow.common.config import settings


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def make_session_factory(database_url: str, **engine_kwargs) -> sessionmaker:
    """Build a session factory bound to a fresh engine."""

    engine = create_engine(database_url, pool_pre_ping=True, **engine_kwargs)
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


SessionLocal = make_session_factory(settings.database_url)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
