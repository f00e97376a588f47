"""Spots, registrations, and the checkout requests that create them."""

from __future__ import annotations

import json
import logging
from typing import Iterable, Sequence

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select

from .database import (
    PAYMENT_COMPLETED,
    Registration,
    Spot,
    TeamMember,
    new_spot_id,
    normalize_email,
    utcnow,
)
from .errors import Conflict, DuplicateEmail, NotFound, SpotLimitExceeded, ValidationError
from .payments import KIND_REGISTRATION, KIND_REGISTRATION_UPDATE, CheckoutRequest
from .schemas import RegistrationData, SpotDetail

SPOT_PRICE_CENTS = 15000
MAX_SPOTS_PER_USER = 4

logger = logging.getLogger(__name__)


def spot_payload(spot: Spot, *, user_id: str | None = None, team_id: int | None = None) -> dict[str, object]:
    payload: dict[str, object] = {
        "spot_id": spot.spot_id,
        "registration_id": spot.registration_id,
        "name": spot.name,
        "phone": spot.phone,
        "email": spot.email,
        "team_id": team_id,
    }
    if user_id is not None:
        payload["user_id"] = user_id
    return payload


def registration_payload(registration: Registration, spots: Sequence[Spot] = ()) -> dict[str, object]:
    return {
        "id": registration.id,
        "user_id": registration.user_id,
        "payment_status": registration.payment_status,
        "amount_paid_cents": registration.amount_paid_cents,
        "spot_count": registration.spot_count,
        "name": registration.name,
        "email": registration.email,
        "phone": registration.phone,
        "preferred_golfers": list(registration.preferred_golfers),
        "pay_for_preferred": list(registration.pay_for_preferred),
        "is_first_year_alumni": registration.is_first_year_alumni,
        "created_at": registration.created_at.isoformat(),
        "spots": [spot_payload(spot) for spot in spots],
    }


def find_completed_registration(session: Session, user_id: str) -> Registration | None:
    return session.exec(
        select(Registration)
        .where(Registration.user_id == user_id, Registration.payment_status == PAYMENT_COMPLETED)
        .order_by(Registration.created_at, Registration.id)
    ).first()


def has_completed_registration(session: Session, user_id: str) -> bool:
    return find_completed_registration(session, user_id) is not None


def completed_spot_count(session: Session, user_id: str) -> int:
    return session.exec(
        select(func.count())
        .select_from(Spot)
        .join(Registration, Spot.registration_id == Registration.id)
        .where(Registration.user_id == user_id, Registration.payment_status == PAYMENT_COMPLETED)
    ).one()


def _team_assignments(session: Session, spot_ids: Iterable[str]) -> dict[str, int]:
    ids = list(spot_ids)
    if not ids:
        return {}
    rows = session.exec(select(TeamMember.spot_id, TeamMember.team_id).where(TeamMember.spot_id.in_(ids))).all()
    return {spot_id: team_id for spot_id, team_id in rows}


def user_spots(session: Session, user_id: str) -> list[dict[str, object]]:
    """Spots on the user's completed registrations, with their team if seated."""
    spots = session.exec(
        select(Spot)
        .join(Registration, Spot.registration_id == Registration.id)
        .where(Registration.user_id == user_id, Registration.payment_status == PAYMENT_COMPLETED)
        .order_by(Spot.created_at, Spot.spot_id)
    ).all()
    assignments = _team_assignments(session, (spot.spot_id for spot in spots))
    return [spot_payload(spot, team_id=assignments.get(spot.spot_id)) for spot in spots]


def all_spots(session: Session) -> list[dict[str, object]]:
    rows = session.exec(
        select(Spot, Registration.user_id)
        .join(Registration, Spot.registration_id == Registration.id)
        .where(Registration.payment_status == PAYMENT_COMPLETED)
        .order_by(Spot.created_at, Spot.spot_id)
    ).all()
    assignments = _team_assignments(session, (spot.spot_id for spot, _ in rows))
    return [
        spot_payload(spot, user_id=user_id, team_id=assignments.get(spot.spot_id))
        for spot, user_id in rows
    ]


def ensure_emails_available(
    session: Session,
    emails: Iterable[str],
    *,
    exclude_spot_id: str | None = None,
) -> None:
    """Raise ``DuplicateEmail`` if any email is repeated or already held by a spot."""
    seen: set[str] = set()
    ordered: list[tuple[str, str]] = []
    for email in emails:
        key = normalize_email(email)
        if key in seen:
            raise DuplicateEmail(email)
        seen.add(key)
        ordered.append((key, email))

    if not ordered:
        return
    query = select(Spot.email_key).where(Spot.email_key.in_(list(seen)))
    if exclude_spot_id:
        query = query.where(Spot.spot_id != exclude_spot_id)
    taken = set(session.exec(query).all())
    for key, email in ordered:
        if key in taken:
            raise DuplicateEmail(email)


def _ensure_spot_allowance(session: Session, user_id: str, requested: int) -> None:
    owned = completed_spot_count(session, user_id)
    if owned + requested > MAX_SPOTS_PER_USER:
        remaining = max(MAX_SPOTS_PER_USER - owned, 0)
        raise SpotLimitExceeded(
            f"Each golfer account may hold at most {MAX_SPOTS_PER_USER} spots; {remaining} remaining"
        )


def prepare_spot_checkout(session: Session, user_id: str, spots: Sequence[SpotDetail]) -> CheckoutRequest:
    if not spots:
        raise ValidationError("Add at least one golfer")
    ensure_emails_available(session, (spot.email for spot in spots))
    _ensure_spot_allowance(session, user_id, len(spots))
    details = [spot.model_dump(mode="json") for spot in spots]
    return CheckoutRequest(
        kind=KIND_REGISTRATION,
        user_id=user_id,
        amount_cents=SPOT_PRICE_CENTS * len(spots),
        line_item_name="Golf Outing Registration",
        return_path="/register",
        payload={"spots": str(len(spots)), "spotDetails": json.dumps(details, separators=(",", ":"))},
    )


def apply_spot_purchase(
    session: Session,
    user_id: str,
    spots: Sequence[SpotDetail],
    *,
    amount_cents: int,
    stripe_session_id: str | None,
) -> Registration:
    """Stage a paid spot purchase; the caller commits.

    A payer with a completed registration gets the new spots appended to it
    rather than a second registration row.
    """
    if not spots:
        raise ValidationError("Payment carried no spot details")
    ensure_emails_available(session, (spot.email for spot in spots))
    _ensure_spot_allowance(session, user_id, len(spots))

    registration = find_completed_registration(session, user_id)
    now = utcnow()
    if registration:
        registration.spot_count += len(spots)
        registration.amount_paid_cents += amount_cents
        registration.stripe_session_id = stripe_session_id
        registration.updated_at = now
        logger.info("Appending %d spots to registration %s for user %s", len(spots), registration.id, user_id)
    else:
        registration = Registration(
            user_id=user_id,
            payment_status=PAYMENT_COMPLETED,
            amount_paid_cents=amount_cents,
            spot_count=len(spots),
            stripe_session_id=stripe_session_id,
        )
        logger.info("Creating registration with %d spots for user %s", len(spots), user_id)
    session.add(registration)
    session.flush()

    for detail in spots:
        session.add(
            Spot(
                spot_id=new_spot_id(),
                registration_id=registration.id,
                name=detail.name,
                phone=detail.phone,
                email=str(detail.email),
                email_key=normalize_email(str(detail.email)),
            )
        )
    return registration


def registration_update_amount(data: RegistrationData) -> int:
    paid_golfers = len(data.pay_for_preferred)
    base = 0 if data.is_first_year_alumni else SPOT_PRICE_CENTS
    return base + SPOT_PRICE_CENTS * paid_golfers


def _owned_registration(session: Session, user_id: str, registration_id: int) -> Registration:
    registration = session.get(Registration, registration_id)
    if not registration or registration.user_id != user_id:
        raise NotFound("Registration not found")
    return registration


def prepare_registration_update_checkout(
    session: Session,
    user_id: str,
    registration_id: int,
    data: RegistrationData,
) -> CheckoutRequest:
    _owned_registration(session, user_id, registration_id)
    amount = registration_update_amount(data)
    if amount <= 0:
        raise ValidationError("This registration does not require payment; save it directly instead")
    return CheckoutRequest(
        kind=KIND_REGISTRATION_UPDATE,
        user_id=user_id,
        amount_cents=amount,
        line_item_name="Golf Outing Registration",
        return_path="/register",
        payload={
            "registrationId": str(registration_id),
            "registrationData": data.model_dump_json(),
        },
    )


def _registrant_spot(session: Session, registration: Registration) -> Spot | None:
    if registration.id is None or not registration.email:
        return None
    return session.exec(
        select(Spot).where(
            Spot.registration_id == registration.id,
            Spot.email_key == normalize_email(registration.email),
        )
    ).first()


def _apply_registrant_fields(session: Session, registration: Registration, data: RegistrationData) -> None:
    """Copy registrant details onto the registration and the registrant's own spot."""
    spot = _registrant_spot(session, registration)
    if spot:
        ensure_emails_available(session, [str(data.email)], exclude_spot_id=spot.spot_id)
        spot.name = data.name
        spot.phone = data.phone
        spot.email = str(data.email)
        spot.email_key = normalize_email(spot.email)
        session.add(spot)

    registration.name = data.name
    registration.email = str(data.email)
    registration.phone = data.phone
    registration.preferred_golfers = list(data.preferred_golfers)
    registration.pay_for_preferred = list(data.pay_for_preferred)
    registration.is_first_year_alumni = data.is_first_year_alumni
    registration.updated_at = utcnow()


def apply_registration_update(
    session: Session,
    user_id: str,
    registration_id: int,
    data: RegistrationData,
    *,
    amount_cents: int,
    stripe_session_id: str | None,
) -> Registration:
    """Stage a paid registration edit; the caller commits."""
    registration = _owned_registration(session, user_id, registration_id)
    _apply_registrant_fields(session, registration, data)
    registration.payment_status = PAYMENT_COMPLETED
    registration.amount_paid_cents = amount_cents
    registration.stripe_session_id = stripe_session_id
    session.add(registration)
    logger.info("Registration %s for user %s upgraded to paid", registration.id, user_id)
    return registration


def register_free(session: Session, user_id: str, data: RegistrationData) -> Registration:
    """Create a no-payment registration for first-year alumni."""
    if registration_update_amount(data) > 0:
        raise ValidationError("Only first-year alumni without paid guests may register for free")
    existing = session.exec(select(Registration).where(Registration.user_id == user_id)).first()
    if existing:
        raise Conflict("User already has a registration. Only one reservation is allowed.")
    ensure_emails_available(session, [str(data.email)])

    registration = Registration(user_id=user_id, payment_status=PAYMENT_COMPLETED, spot_count=1)
    _apply_registrant_fields(session, registration, data)
    registration.updated_at = None
    session.add(registration)
    session.flush()
    session.add(
        Spot(
            spot_id=new_spot_id(),
            registration_id=registration.id,
            name=data.name,
            phone=data.phone,
            email=str(data.email),
            email_key=normalize_email(str(data.email)),
        )
    )
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise DuplicateEmail(str(data.email)) from exc
    session.refresh(registration)
    logger.info("Free registration %s created for user %s", registration.id, user_id)
    return registration


def update_registration(
    session: Session,
    user_id: str,
    registration_id: int,
    data: RegistrationData,
) -> Registration:
    registration = _owned_registration(session, user_id, registration_id)
    _apply_registrant_fields(session, registration, data)
    session.add(registration)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise DuplicateEmail(str(data.email)) from exc
    session.refresh(registration)
    return registration


def remove_preferred_golfer(session: Session, user_id: str, registration_id: int, golfer: str) -> Registration:
    registration = _owned_registration(session, user_id, registration_id)
    if golfer in registration.pay_for_preferred:
        raise Conflict("Cannot delete a preferred golfer you paid for")
    registration.preferred_golfers = [name for name in registration.preferred_golfers if name != golfer]
    registration.updated_at = utcnow()
    session.add(registration)
    session.commit()
    session.refresh(registration)
    return registration


def edit_spot(session: Session, user_id: str, spot_id: str, details: SpotDetail) -> Spot:
    spot = session.exec(
        select(Spot)
        .join(Registration, Spot.registration_id == Registration.id)
        .where(Spot.spot_id == spot_id, Registration.user_id == user_id)
    ).first()
    if not spot:
        raise NotFound("Spot not found or not updated")
    ensure_emails_available(session, [str(details.email)], exclude_spot_id=spot_id)

    spot.name = details.name
    spot.phone = details.phone
    spot.email = str(details.email)
    spot.email_key = normalize_email(spot.email)
    session.add(spot)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise DuplicateEmail(str(details.email)) from exc
    session.refresh(spot)
    return spot


def _spots_by_registration(session: Session, registration_ids: Sequence[int]) -> dict[int, list[Spot]]:
    grouped: dict[int, list[Spot]] = {registration_id: [] for registration_id in registration_ids}
    if not registration_ids:
        return grouped
    spots = session.exec(
        select(Spot).where(Spot.registration_id.in_(registration_ids)).order_by(Spot.created_at, Spot.spot_id)
    ).all()
    for spot in spots:
        grouped.setdefault(spot.registration_id, []).append(spot)
    return grouped


def user_registrations(session: Session, user_id: str) -> list[dict[str, object]]:
    registrations = session.exec(
        select(Registration).where(Registration.user_id == user_id).order_by(Registration.created_at)
    ).all()
    spots = _spots_by_registration(session, [registration.id for registration in registrations])
    return [registration_payload(registration, spots[registration.id]) for registration in registrations]


def list_registrations(session: Session) -> list[dict[str, object]]:
    registrations = session.exec(select(Registration).order_by(Registration.created_at)).all()
    spots = _spots_by_registration(session, [registration.id for registration in registrations])
    return [registration_payload(registration, spots[registration.id]) for registration in registrations]
