import hashlib
import hmac
import json
import os
import tempfile
import time
from pathlib import Path

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

TEST_DB = Path(tempfile.gettempdir()) / "golf_outing_test_app.sqlite3"
os.environ.setdefault("DATABASE_URL", f"sqlite:///{TEST_DB}")

from golf_outing import payments  # noqa: E402
from golf_outing.database import Spot  # noqa: E402
from golf_outing.reservations import apply_spot_purchase  # noqa: E402
from golf_outing.schemas import SpotDetail  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


def buy_spots(session: Session, user_id: str, *golfers: tuple[str, str]) -> list[str]:
    """Record a completed purchase of one spot per ``(name, email)``; return spot ids."""
    details = [SpotDetail(name=name, email=email, phone="555-0100") for name, email in golfers]
    registration = apply_spot_purchase(
        session,
        user_id,
        details,
        amount_cents=15000 * len(details),
        stripe_session_id=f"cs_{user_id}_{time.time_ns()}",
    )
    session.commit()
    spots = session.exec(select(Spot).where(Spot.registration_id == registration.id)).all()
    by_email = {spot.email_key: spot.spot_id for spot in spots}
    return [by_email[email.lower()] for _, email in golfers]


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    return WEBHOOK_SECRET


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def checkout_event(
    metadata: dict[str, str],
    *,
    event_id: str = "evt_1",
    session_id: str = "cs_test_1",
    amount_total: int = 15000,
    event_type: str = "checkout.session.completed",
) -> bytes:
    event = {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "amount_total": amount_total,
                "metadata": metadata,
            }
        },
    }
    return json.dumps(event).encode("utf-8")
