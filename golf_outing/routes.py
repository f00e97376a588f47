from __future__ import annotations

import hmac
import logging
import os
import secrets
import time
from collections import Counter

from fastapi import APIRouter, Depends, Form, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, func, select

from . import payments, reservations, sponsors, teams
from .database import PAYMENT_COMPLETED, Registration, Spot, Team, TeamMember, get_session
from .reconciliation import handle_webhook
from .schemas import (
    MAX_TEXT_LENGTH,
    RegistrationData,
    RegistrationUpdateCheckoutRequest,
    RemoveGolferRequest,
    SpotCheckoutRequest,
    SpotUpdate,
    SponsorCheckoutRequest,
    SponsorUpdate,
    TeamCreate,
    TeamSpotRequest,
    TeamUpdate,
    WhitelistEntry,
)

router = APIRouter()

logger = logging.getLogger(__name__)
SESSION_COOKIE_NAME = os.getenv("ADMIN_SESSION_COOKIE", "golf_admin_session")
SESSION_SECRET = os.getenv("ADMIN_SESSION_SECRET") or os.getenv("SECRET_KEY") or secrets.token_hex(32)
SESSION_MAX_AGE = int(os.getenv("ADMIN_SESSION_MAX_AGE", "43200"))  # 12 hours default
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "golf-outing")


def _sign_payload(payload: str) -> str:
    secret = SESSION_SECRET.encode("utf-8")
    return hmac.new(secret, payload.encode("utf-8"), "sha256").hexdigest()


def _encode_session() -> str:
    token = secrets.token_hex(16)
    timestamp = str(int(time.time()))
    payload = f"{token}|{timestamp}"
    signature = _sign_payload(payload)
    return f"{payload}|{signature}"


def _decode_session(raw: str) -> bool:
    try:
        token, timestamp, signature = raw.split("|")
    except ValueError:
        return False
    payload = f"{token}|{timestamp}"
    expected = _sign_payload(payload)
    if not hmac.compare_digest(expected, signature):
        return False
    try:
        issued_at = int(timestamp)
    except ValueError:
        return False
    if int(time.time()) - issued_at > SESSION_MAX_AGE:
        return False
    return True


def _is_admin(request: Request) -> bool:
    cookie_value = request.cookies.get(SESSION_COOKIE_NAME)
    return bool(cookie_value and _decode_session(cookie_value))


def require_admin(request: Request) -> None:
    if not _is_admin(request):
        raise HTTPException(status_code=401, detail="Admin login required")


def current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Identity of the caller, as forwarded by the auth provider."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()


@router.get("/health", name="health")
async def health():
    return {"status": "ok"}


# -----------------------------
# Spots & registrations
# -----------------------------


@router.get("/spots/me", name="user_spots")
async def list_user_spots(user_id: str = Depends(current_user_id), session: Session = Depends(get_session)):
    return {"spots": reservations.user_spots(session, user_id)}


@router.get("/spots", name="all_spots")
async def list_all_spots(_: str = Depends(current_user_id), session: Session = Depends(get_session)):
    return {"spots": reservations.all_spots(session)}


@router.get("/spots/check", name="check_spots")
async def check_spots(user_id: str = Depends(current_user_id), session: Session = Depends(get_session)):
    return {"has_spots": reservations.has_completed_registration(session, user_id)}


@router.put("/spots/{spot_id}", name="edit_spot")
async def edit_spot(
    spot_id: str,
    payload: SpotUpdate,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    spot = reservations.edit_spot(session, user_id, spot_id, payload)
    return {"success": True, "spot": reservations.spot_payload(spot)}


@router.post("/checkout/spots", name="checkout_spots")
async def checkout_spots(
    payload: SpotCheckoutRequest,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    request = reservations.prepare_spot_checkout(session, user_id, payload.spots)
    checkout = payments.start_checkout(request)
    return {"url": checkout["url"], "session_id": checkout["id"]}


@router.post("/checkout/registration-update", name="checkout_registration_update")
async def checkout_registration_update(
    payload: RegistrationUpdateCheckoutRequest,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    request = reservations.prepare_registration_update_checkout(
        session, user_id, payload.registration_id, payload.registration
    )
    checkout = payments.start_checkout(request)
    return {"url": checkout["url"], "session_id": checkout["id"]}


@router.get("/checkout/session/{session_id}", name="retrieve_checkout_session")
async def retrieve_checkout_session(session_id: str, user_id: str = Depends(current_user_id)):
    return payments.retrieve_checkout_session(session_id, user_id)


@router.get("/registrations/me", name="user_registrations")
async def list_user_registrations(user_id: str = Depends(current_user_id), session: Session = Depends(get_session)):
    return reservations.user_registrations(session, user_id)


@router.post("/registrations/free", name="register_free")
async def register_free(
    payload: RegistrationData,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    registration = reservations.register_free(session, user_id, payload)
    spots = session.exec(select(Spot).where(Spot.registration_id == registration.id)).all()
    return JSONResponse(reservations.registration_payload(registration, spots), status_code=201)


@router.put("/registrations/{registration_id}", name="update_registration")
async def update_registration(
    registration_id: int,
    payload: RegistrationData,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    reservations.update_registration(session, user_id, registration_id, payload)
    return {"message": "Registration updated"}


@router.post("/registrations/{registration_id}/remove-golfer", name="remove_preferred_golfer")
async def remove_preferred_golfer(
    registration_id: int,
    payload: RemoveGolferRequest,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    reservations.remove_preferred_golfer(session, user_id, registration_id, payload.golfer)
    return {"message": "Preferred golfer removed"}


# -----------------------------
# Teams
# -----------------------------


def _team_response(session: Session, team: Team) -> dict[str, object]:
    return teams.team_payload(team, teams.team_members(session, team.id))


@router.get("/teams", name="team_directory")
async def team_directory(session: Session = Depends(get_session)):
    return teams.team_directory(session)


@router.post("/teams", name="create_team")
async def create_team(
    payload: TeamCreate,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    team = teams.create_team(
        session,
        payload.name,
        payload.is_private,
        user_id,
        payload.initial_spot_ids,
        payload.whitelist,
    )
    return JSONResponse(_team_response(session, team), status_code=201)


@router.post("/teams/{team_id}/join", name="join_team")
async def join_team(
    team_id: int,
    payload: TeamSpotRequest,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    team = teams.join_team(session, team_id, payload.spot_id, user_id)
    return {"success": True, "team": _team_response(session, team)}


@router.post("/teams/{team_id}/leave", name="leave_team")
async def leave_team(
    team_id: int,
    payload: TeamSpotRequest,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    deleted = teams.leave_team(session, team_id, payload.spot_id, user_id)
    return {"success": True, "team_deleted": deleted}


@router.patch("/teams/{team_id}", name="update_team")
async def update_team(
    team_id: int,
    payload: TeamUpdate,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    team = teams.update_team_details(
        session,
        team_id,
        user_id,
        name=payload.name,
        is_private=payload.is_private,
        whitelist=payload.whitelist,
    )
    return {"success": True, "team": _team_response(session, team)}


@router.post("/teams/{team_id}/whitelist", name="add_whitelist_entry")
async def add_whitelist_entry(
    team_id: int,
    payload: WhitelistEntry,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    team = teams.add_whitelist_entry(session, team_id, user_id, payload.entry)
    return {"success": True, "whitelist": list(team.whitelist)}


@router.post("/teams/{team_id}/whitelist/remove", name="remove_whitelist_entry")
async def remove_whitelist_entry(
    team_id: int,
    payload: WhitelistEntry,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    team = teams.remove_whitelist_entry(session, team_id, user_id, payload.entry)
    return {"success": True, "whitelist": list(team.whitelist)}


# -----------------------------
# Sponsors
# -----------------------------


@router.get("/sponsors/tiers", name="sponsor_tiers")
async def sponsor_tiers():
    return [
        {"name": tier.name, "price": tier.price, "free_golfers": tier.free_golfers, "description": tier.description}
        for tier in sponsors.SPONSOR_TIERS
    ]


@router.get("/sponsors/me", name="user_sponsor")
async def user_sponsor(user_id: str = Depends(current_user_id), session: Session = Depends(get_session)):
    sponsor = sponsors.get_sponsor(session, user_id)
    return sponsors.sponsor_payload(sponsor) if sponsor else None


@router.put("/sponsors/me", name="update_sponsor")
async def update_sponsor(
    payload: SponsorUpdate,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    sponsor = sponsors.update_sponsor(session, user_id, payload)
    return {"success": True, "sponsor": sponsors.sponsor_payload(sponsor)}


@router.post("/sponsors/checkout", name="sponsor_checkout")
async def sponsor_checkout(
    payload: SponsorCheckoutRequest,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    request = sponsors.prepare_sponsor_checkout(session, user_id, payload)
    checkout = payments.start_checkout(request)
    return {"url": checkout["url"], "session_id": checkout["id"]}


@router.post("/sponsors/upgrade", name="sponsor_upgrade")
async def sponsor_upgrade(
    payload: SponsorCheckoutRequest,
    user_id: str = Depends(current_user_id),
    session: Session = Depends(get_session),
):
    request = sponsors.prepare_sponsor_upgrade_checkout(session, user_id, payload)
    checkout = payments.start_checkout(request)
    return {"url": checkout["url"], "session_id": checkout["id"]}


# -----------------------------
# Stripe webhook
# -----------------------------


@router.post("/webhook", name="stripe_webhook")
async def stripe_webhook(
    request: Request,
    session: Session = Depends(get_session),
    stripe_signature: str | None = Header(default=None, alias="stripe-signature"),
):
    payload = await request.body()
    return handle_webhook(session, payload, stripe_signature)


# -----------------------------
# Admin
# -----------------------------


@router.post("/admin/login", name="admin_login")
async def admin_login(
    username: str = Form(..., max_length=MAX_TEXT_LENGTH),
    password: str = Form(..., max_length=MAX_TEXT_LENGTH),
):
    if not (hmac.compare_digest(username, ADMIN_USERNAME) and hmac.compare_digest(password, ADMIN_PASSWORD)):
        logger.warning("Rejected admin login for %s", username)
        return JSONResponse({"error": "Invalid username or password."}, status_code=401)

    response = JSONResponse({"success": True})
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=_encode_session(),
        max_age=SESSION_MAX_AGE,
        httponly=True,
        secure=os.getenv("ADMIN_COOKIE_SECURE", "true").lower() != "false",
        samesite="lax",
        path="/",
    )
    return response


@router.post("/admin/logout", name="admin_logout")
async def admin_logout():
    response = JSONResponse({"success": True})
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return response


@router.get("/admin/registrations", name="admin_registrations", dependencies=[Depends(require_admin)])
async def admin_registrations(session: Session = Depends(get_session)):
    return reservations.list_registrations(session)


@router.get("/admin/sponsors", name="admin_sponsors", dependencies=[Depends(require_admin)])
async def admin_sponsors(session: Session = Depends(get_session)):
    return [sponsors.sponsor_payload(sponsor) for sponsor in sponsors.list_sponsors(session)]


@router.get("/admin/consistency", name="admin_consistency", dependencies=[Depends(require_admin)])
async def admin_consistency(session: Session = Depends(get_session)):
    issues = teams.find_roster_inconsistencies(session)
    return {"ok": not issues, "issues": issues}


@router.get("/admin/summary", name="admin_summary", dependencies=[Depends(require_admin)])
async def admin_summary(session: Session = Depends(get_session)):
    return _summary(session)


def _summary(session: Session) -> dict[str, object]:
    registrations = session.exec(select(Registration)).all()
    completed = [registration for registration in registrations if registration.payment_status == PAYMENT_COMPLETED]
    spot_total = session.exec(
        select(func.count())
        .select_from(Spot)
        .join(Registration, Spot.registration_id == Registration.id)
        .where(Registration.payment_status == PAYMENT_COMPLETED)
    ).one()
    seated = session.exec(select(func.count()).select_from(TeamMember)).one()
    all_teams = teams.list_teams(session)
    sponsor_rows = sponsors.list_sponsors(session)
    registration_revenue = sum(registration.amount_paid_cents for registration in completed)
    sponsor_revenue = sum(sponsor.price * 100 for sponsor in sponsor_rows)
    return {
        "registrations": {
            "total": len(registrations),
            "completed": len(completed),
            "pending": len(registrations) - len(completed),
        },
        "spots": {"total": spot_total, "assigned": seated, "unassigned": spot_total - seated},
        "teams": {
            "total": len(all_teams),
            "private": sum(1 for team in all_teams if team.is_private),
            "full": sum(1 for team in all_teams if team.member_count >= teams.TEAM_CAPACITY),
        },
        "sponsors": {"total": len(sponsor_rows), "by_tier": dict(Counter(sponsor.tier for sponsor in sponsor_rows))},
        "revenue_cents": {
            "registrations": registration_revenue,
            "sponsors": sponsor_revenue,
            "total": registration_revenue + sponsor_revenue,
        },
    }
