"""Apply Stripe checkout completions to registrations and sponsors.

Each verified ``checkout.session.completed`` event turns into exactly one
state change, chosen by the ``kind`` the session was stamped with when it was
created. The change and a ``ProcessedEvent`` row commit together, so a
redelivered event is acknowledged without being applied twice.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List

import pydantic
from pydantic import TypeAdapter
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, or_, select

from . import payments
from .database import ProcessedEvent
from .errors import Conflict, InvalidMetadataShape, MissingUserId, OutingError, StoreFailure
from .payments import KIND_REGISTRATION, KIND_REGISTRATION_UPDATE, KIND_SPONSOR_CREATE, KIND_SPONSOR_UPGRADE
from .reservations import MAX_SPOTS_PER_USER, apply_registration_update, apply_spot_purchase
from .schemas import RegistrationData, SpotDetail
from .sponsors import TIERS_BY_NAME, apply_sponsor_create, apply_sponsor_upgrade, clean_free_golfers

CHECKOUT_COMPLETED = "checkout.session.completed"
# Delivered to the endpoint but intentionally not acted on.
ACKNOWLEDGED_EVENTS = {
    "payment_intent.succeeded",
    "charge.succeeded",
    "payment_intent.payment_failed",
    "charge.refunded",
    "charge.dispute.created",
    "charge.dispute.closed",
}

logger = logging.getLogger(__name__)

_SPOT_LIST = TypeAdapter(List[SpotDetail])

Handler = Callable[[Session, str, Dict[str, str], int, "str | None"], Dict[str, Any]]


def handle_webhook(session: Session, payload: bytes, signature: str | None) -> dict[str, Any]:
    """Verify a raw webhook delivery and reconcile it."""
    event = payments.verify_webhook(payload, signature)
    event_type = event.get("type")
    if event_type != CHECKOUT_COMPLETED:
        if event_type in ACKNOWLEDGED_EVENTS:
            logger.info("Event %s received but not processed", event_type)
        else:
            logger.info("Unhandled event type: %s", event_type)
        return {"received": True}

    event_id = event.get("id")
    checkout = (event.get("data") or {}).get("object")
    if not event_id or not isinstance(checkout, dict):
        raise InvalidMetadataShape("Checkout event is missing its id or session object")
    return reconcile_checkout(session, event_id, checkout)


def _already_processed(session: Session, event_id: str, checkout_id: str | None) -> bool:
    clauses = [ProcessedEvent.event_id == event_id]
    if checkout_id:
        clauses.append(ProcessedEvent.session_id == checkout_id)
    return session.exec(select(ProcessedEvent.id).where(or_(*clauses))).first() is not None


def reconcile_checkout(session: Session, event_id: str, checkout: dict[str, Any]) -> dict[str, Any]:
    checkout_id = checkout.get("id")
    if _already_processed(session, event_id, checkout_id):
        logger.info("Skipping replayed event %s for session %s", event_id, checkout_id)
        return {"received": True, "duplicate": True}

    metadata = {key: str(value) for key, value in (checkout.get("metadata") or {}).items()}
    user_id = metadata.get("userId", "").strip()
    if not user_id:
        logger.warning("No userId found in metadata of session %s", checkout_id)
        raise MissingUserId()

    kind = metadata.get("kind")
    handler = _HANDLERS.get(kind or "")
    if handler is None:
        logger.warning("Session %s carries unsupported kind %r", checkout_id, kind)
        raise InvalidMetadataShape(f"Unsupported checkout kind: {kind!r}")

    amount_cents = int(checkout.get("amount_total") or 0)
    try:
        result = handler(session, user_id, metadata, amount_cents, checkout_id)
        session.add(
            ProcessedEvent(event_id=event_id, event_type=CHECKOUT_COMPLETED, kind=kind, session_id=checkout_id)
        )
        session.commit()
    except OutingError:
        session.rollback()
        raise
    except IntegrityError as exc:
        session.rollback()
        logger.warning("Event %s conflicted with a concurrent write: %s", event_id, exc)
        raise Conflict("Payment conflicts with existing records; nothing was applied") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Failed to apply event %s", event_id)
        raise StoreFailure("Failed to apply payment") from exc

    logger.info("Applied %s for user %s from session %s", kind, user_id, checkout_id)
    return {"received": True, "kind": kind, **result}


def _json_field(metadata: dict[str, str], key: str) -> Any:
    raw = metadata.get(key)
    if not raw:
        raise InvalidMetadataShape(f"Missing {key} in metadata")
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise InvalidMetadataShape(f"Invalid {key} format") from exc


def _apply_registration(
    session: Session,
    user_id: str,
    metadata: dict[str, str],
    amount_cents: int,
    checkout_id: str | None,
) -> dict[str, Any]:
    raw_spots = _json_field(metadata, "spotDetails")
    try:
        spots = _SPOT_LIST.validate_python(raw_spots)
    except pydantic.ValidationError as exc:
        raise InvalidMetadataShape("Invalid spotDetails format") from exc
    if not 1 <= len(spots) <= MAX_SPOTS_PER_USER:
        raise InvalidMetadataShape(f"spotDetails must list between 1 and {MAX_SPOTS_PER_USER} golfers")

    registration = apply_spot_purchase(
        session,
        user_id,
        spots,
        amount_cents=amount_cents,
        stripe_session_id=checkout_id,
    )
    return {"registration_id": registration.id}


def _apply_registration_update(
    session: Session,
    user_id: str,
    metadata: dict[str, str],
    amount_cents: int,
    checkout_id: str | None,
) -> dict[str, Any]:
    try:
        registration_id = int(metadata.get("registrationId", ""))
    except ValueError as exc:
        raise InvalidMetadataShape("Missing registrationId in metadata") from exc
    try:
        data = RegistrationData.model_validate(_json_field(metadata, "registrationData"))
    except pydantic.ValidationError as exc:
        raise InvalidMetadataShape("Invalid registrationData format") from exc

    registration = apply_registration_update(
        session,
        user_id,
        registration_id,
        data,
        amount_cents=amount_cents,
        stripe_session_id=checkout_id,
    )
    return {"registration_id": registration.id}


def _sponsor_fields(metadata: dict[str, str]) -> dict[str, Any]:
    name = metadata.get("name", "").strip()
    tier = TIERS_BY_NAME.get(metadata.get("tier", "").strip())
    if not name or not tier:
        raise InvalidMetadataShape("Sponsor metadata requires a name and a known tier")
    golfers = _json_field(metadata, "freeGolfers") if metadata.get("freeGolfers") else []
    if not isinstance(golfers, list) or not all(isinstance(golfer, str) for golfer in golfers):
        raise InvalidMetadataShape("Invalid freeGolfers format")
    return {
        "name": name,
        "tier": tier,
        "logo": metadata.get("logo"),
        "text": metadata.get("text"),
        "website_link": metadata.get("websiteLink"),
        "free_golfers": clean_free_golfers(golfers, tier),
    }


def _apply_sponsor_create(
    session: Session,
    user_id: str,
    metadata: dict[str, str],
    amount_cents: int,
    checkout_id: str | None,
) -> dict[str, Any]:
    sponsor = apply_sponsor_create(session, user_id, stripe_session_id=checkout_id, **_sponsor_fields(metadata))
    session.flush()
    return {"sponsor_id": sponsor.id}


def _apply_sponsor_upgrade(
    session: Session,
    user_id: str,
    metadata: dict[str, str],
    amount_cents: int,
    checkout_id: str | None,
) -> dict[str, Any]:
    sponsor = apply_sponsor_upgrade(session, user_id, stripe_session_id=checkout_id, **_sponsor_fields(metadata))
    return {"sponsor_id": sponsor.id}


_HANDLERS: Dict[str, Handler] = {
    KIND_REGISTRATION: _apply_registration,
    KIND_REGISTRATION_UPDATE: _apply_registration_update,
    KIND_SPONSOR_CREATE: _apply_sponsor_create,
    KIND_SPONSOR_UPGRADE: _apply_sponsor_upgrade,
}
