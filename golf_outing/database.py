"""Database models and helpers for registrations, teams, and sponsors."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Iterator
from uuid import uuid4

from sqlalchemy import JSON, Column, Index
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, create_engine

DEFAULT_SQLITE_PATH = "sqlite:///./golf_outing.db"

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"

logger = logging.getLogger(__name__)


def _build_engine_url() -> str:
    """Return the configured database URL or fall back to SQLite."""
    return os.environ.get("DATABASE_URL", DEFAULT_SQLITE_PATH)


def _build_engine() -> Engine:
    url = _build_engine_url()
    engine_kwargs = {}
    if url.startswith("sqlite"):
        # SQLite needs check_same_thread disabled for FastAPI concurrency,
        # but passing this flag to other drivers (e.g., psycopg2) raises errors.
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **engine_kwargs)


engine = _build_engine()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_spot_id() -> str:
    return uuid4().hex


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


class Registration(SQLModel, table=True):
    __table_args__ = (Index("ix_registration_user_status", "user_id", "payment_status"),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(nullable=False, max_length=255)
    payment_status: str = Field(default=PAYMENT_PENDING, nullable=False, max_length=20)
    amount_paid_cents: int = Field(default=0, nullable=False)
    spot_count: int = Field(default=0, nullable=False)
    name: str | None = Field(default=None, max_length=120)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=40)
    preferred_golfers: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    pay_for_preferred: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    is_first_year_alumni: bool = Field(default=False, nullable=False)
    stripe_session_id: str | None = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime | None = Field(default=None)


class Spot(SQLModel, table=True):
    spot_id: str = Field(default_factory=new_spot_id, primary_key=True, max_length=64)
    registration_id: int = Field(foreign_key="registration.id", nullable=False, index=True)
    name: str = Field(nullable=False, max_length=120)
    phone: str = Field(default="", nullable=False, max_length=40)
    email: str = Field(nullable=False, max_length=255)
    # Lowercased copy of ``email``; the unique index keeps spot emails distinct.
    email_key: str = Field(nullable=False, unique=True, index=True, max_length=255)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)


class Team(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(nullable=False, max_length=128)
    is_private: bool = Field(default=False, nullable=False)
    creator_id: str = Field(nullable=False, index=True, max_length=255)
    whitelist: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    member_count: int = Field(default=0, nullable=False)
    version: int = Field(default=0, nullable=False)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime | None = Field(default=None)


class TeamMember(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    team_id: int = Field(foreign_key="team.id", nullable=False, index=True)
    spot_id: str = Field(foreign_key="spot.spot_id", nullable=False, unique=True, max_length=64)
    registration_id: int = Field(foreign_key="registration.id", nullable=False)
    joined_at: datetime = Field(default_factory=utcnow, nullable=False)


class Sponsor(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(nullable=False, unique=True, index=True, max_length=255)
    name: str = Field(nullable=False, max_length=200)
    tier: str = Field(nullable=False, max_length=64)
    price: int = Field(nullable=False)
    logo: str | None = Field(default=None, max_length=1024)
    text: str | None = Field(default=None, max_length=500)
    website_link: str | None = Field(default=None, max_length=1024)
    free_golfers: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    stripe_session_id: str | None = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime | None = Field(default=None)


class ProcessedEvent(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    event_id: str = Field(nullable=False, unique=True, index=True, max_length=255)
    event_type: str = Field(nullable=False, max_length=100)
    kind: str | None = Field(default=None, max_length=40)
    session_id: str | None = Field(default=None, index=True, max_length=255)
    processed_at: datetime = Field(default_factory=utcnow, nullable=False)


def init_db() -> None:
    """Create tables if they don't already exist."""
    SQLModel.metadata.create_all(engine)
    logger.info("Database initialised at %s", engine.url.render_as_string(hide_password=True))


def get_session() -> Iterator[Session]:
    """Yield a SQLModel session for dependency injection."""
    with Session(engine) as session:
        yield session
