"""Team membership rules: four seats per team, whitelist-gated private teams."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable, List, Sequence, TypedDict

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select

from .database import PAYMENT_COMPLETED, Registration, Spot, Team, TeamMember, utcnow
from .errors import (
    Forbidden,
    InsufficientSpots,
    NotFound,
    NotWhitelisted,
    SpotAlreadyAssigned,
    SpotNotOwned,
    TeamFull,
    ValidationError,
)
from .schemas import MAX_TEXT_LENGTH

TEAM_CAPACITY = 4

logger = logging.getLogger(__name__)


class MemberRef(TypedDict):
    spot_id: str
    registration_id: int


class RosterIssue(TypedDict, total=False):
    issue: str
    team_id: int
    spot_id: str
    recorded: int
    actual: int


def normalize_whitelist(entries: Iterable[str]) -> List[str]:
    """Strip entries, drop blanks, and drop case-insensitive repeats."""
    cleaned: List[str] = []
    seen: set[str] = set()
    for entry in entries:
        value = (entry or "").strip()
        if not value or value.lower() in seen:
            continue
        seen.add(value.lower())
        cleaned.append(value)
    return cleaned


def is_whitelisted(whitelist: Iterable[str], email: str | None, name: str | None) -> bool:
    """Return True when either the email or the full name matches an entry.

    Organizers often know a golfer's name but not the email they registered
    with, so both fields are checked, case-insensitively.
    """
    candidates = {value.strip().lower() for value in (email, name) if value and value.strip()}
    return any(entry.strip().lower() in candidates for entry in whitelist)


def get_team(session: Session, team_id: int) -> Team:
    team = session.get(Team, team_id)
    if not team:
        raise NotFound("Team not found")
    return team


def list_teams(session: Session) -> list[Team]:
    return list(session.exec(select(Team).order_by(Team.created_at, Team.id)).all())


def team_members(session: Session, team_id: int) -> list[TeamMember]:
    return list(
        session.exec(
            select(TeamMember).where(TeamMember.team_id == team_id).order_by(TeamMember.joined_at, TeamMember.id)
        ).all()
    )


def team_payload(team: Team, members: Sequence[TeamMember]) -> dict[str, object]:
    refs: List[MemberRef] = [
        MemberRef(spot_id=member.spot_id, registration_id=member.registration_id) for member in members
    ]
    return {
        "id": team.id,
        "name": team.name,
        "is_private": team.is_private,
        "creator_id": team.creator_id,
        "members": refs,
        "whitelist": list(team.whitelist),
        "open_seats": max(TEAM_CAPACITY - len(refs), 0),
        "created_at": team.created_at.isoformat(),
    }


def team_directory(session: Session) -> list[dict[str, object]]:
    teams = list_teams(session)
    grouped: defaultdict[int, list[TeamMember]] = defaultdict(list)
    for member in session.exec(select(TeamMember).order_by(TeamMember.joined_at, TeamMember.id)).all():
        grouped[member.team_id].append(member)
    return [team_payload(team, grouped[team.id]) for team in teams]


def _owned_spots(session: Session, spot_ids: Sequence[str], user_id: str) -> dict[str, tuple[Spot, Registration]]:
    rows = session.exec(
        select(Spot, Registration)
        .join(Registration, Spot.registration_id == Registration.id)
        .where(
            Spot.spot_id.in_(list(spot_ids)),
            Registration.user_id == user_id,
            Registration.payment_status == PAYMENT_COMPLETED,
        )
    ).all()
    return {spot.spot_id: (spot, registration) for spot, registration in rows}


def _clean_team_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Team name is required")
    if len(cleaned) > MAX_TEXT_LENGTH:
        raise ValidationError(f"Team names must be {MAX_TEXT_LENGTH} characters or fewer.")
    return cleaned


def create_team(
    session: Session,
    name: str,
    is_private: bool,
    creator_id: str,
    initial_spot_ids: Sequence[str],
    whitelist: Sequence[str] = (),
) -> Team:
    cleaned = _clean_team_name(name)
    spot_ids = [spot_id.strip() for spot_id in initial_spot_ids if spot_id and spot_id.strip()]
    if not spot_ids:
        raise ValidationError("Select at least one spot to start a team")
    if len(set(spot_ids)) != len(spot_ids):
        raise ValidationError("The same spot was selected more than once")
    if len(spot_ids) > TEAM_CAPACITY:
        raise ValidationError(f"A team holds at most {TEAM_CAPACITY} golfers")

    entries = normalize_whitelist(whitelist) if is_private else []
    if is_private and len(spot_ids) + len(entries) != TEAM_CAPACITY:
        raise ValidationError(
            "A private team must have exactly 4 spots reserved (selected spots + whitelisted entries)."
        )

    owned = _owned_spots(session, spot_ids, creator_id)
    if len(owned) != len(spot_ids):
        raise SpotNotOwned()
    assigned = session.exec(select(TeamMember.spot_id).where(TeamMember.spot_id.in_(spot_ids))).all()
    if assigned:
        raise InsufficientSpots("Spot already assigned to a team")

    team = Team(
        name=cleaned,
        is_private=is_private,
        creator_id=creator_id,
        whitelist=entries,
        member_count=len(spot_ids),
    )
    session.add(team)
    session.flush()
    for spot_id in spot_ids:
        _, registration = owned[spot_id]
        session.add(TeamMember(team_id=team.id, spot_id=spot_id, registration_id=registration.id))
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise InsufficientSpots("Spot already assigned to a team") from exc
    session.refresh(team)
    logger.info("Team %s (%s) created by %s with %d golfers", team.id, team.name, creator_id, len(spot_ids))
    return team


def join_team(session: Session, team_id: int, spot_id: str, requesting_user_id: str) -> Team:
    """Seat ``spot_id`` on the team.

    Re-adding a spot already seated on this team is a no-op. The seat is
    claimed with a conditional UPDATE on ``member_count`` so two concurrent
    joins can never push a team past four golfers.
    """
    team = get_team(session, team_id)
    owned = _owned_spots(session, [spot_id], requesting_user_id)
    if spot_id not in owned:
        raise SpotNotOwned()
    spot, registration = owned[spot_id]

    current = session.exec(select(TeamMember).where(TeamMember.spot_id == spot_id)).first()
    if current and current.team_id == team.id:
        return team
    if team.member_count >= TEAM_CAPACITY:
        raise TeamFull()
    if current:
        raise SpotAlreadyAssigned()
    if team.is_private and not is_whitelisted(team.whitelist, spot.email, spot.name):
        logger.warning("Spot %s (%s) rejected from private team %s", spot_id, spot.email, team.id)
        raise NotWhitelisted()

    claimed = session.exec(
        update(Team)
        .where(Team.id == team.id, Team.member_count < TEAM_CAPACITY)
        .values(
            member_count=Team.member_count + 1,
            version=Team.version + 1,
            updated_at=utcnow(),
        )
    )
    if claimed.rowcount == 0:
        session.rollback()
        if session.exec(select(Team.id).where(Team.id == team_id)).first() is None:
            raise NotFound("Team not found")
        raise TeamFull()

    session.add(TeamMember(team_id=team.id, spot_id=spot_id, registration_id=registration.id))
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise SpotAlreadyAssigned() from exc
    session.refresh(team)
    logger.info("Spot %s joined team %s (%d/%d)", spot_id, team.id, team.member_count, TEAM_CAPACITY)
    return team


def leave_team(session: Session, team_id: int, spot_id: str, requesting_user_id: str) -> bool:
    """Remove a member; return True when that emptied and deleted the team."""
    team = get_team(session, team_id)
    member = session.exec(
        select(TeamMember).where(TeamMember.team_id == team.id, TeamMember.spot_id == spot_id)
    ).first()
    if not member:
        raise NotFound("Spot not found in team")

    registration = session.get(Registration, member.registration_id)
    owns_spot = bool(
        registration
        and registration.user_id == requesting_user_id
        and registration.payment_status == PAYMENT_COMPLETED
    )
    if not owns_spot and team.creator_id != requesting_user_id:
        raise Forbidden("User does not own the spot or the team")

    session.delete(member)
    session.exec(
        update(Team)
        .where(Team.id == team.id)
        .values(
            member_count=Team.member_count - 1,
            version=Team.version + 1,
            updated_at=utcnow(),
        )
    )
    remaining = session.exec(
        select(func.count()).select_from(TeamMember).where(TeamMember.team_id == team.id)
    ).one()
    deleted = remaining == 0
    if deleted:
        session.delete(team)
    session.commit()

    if deleted:
        logger.info("Deleted team %s as it has no members", team_id)
    else:
        logger.info("Spot %s left team %s", spot_id, team_id)
    return deleted


def update_team_details(
    session: Session,
    team_id: int,
    requesting_user_id: str,
    *,
    name: str | None = None,
    is_private: bool | None = None,
    whitelist: Sequence[str] | None = None,
) -> Team:
    """Rename, flip privacy, or replace the whitelist.

    Seated members are never re-checked; the whitelist only governs who may
    join from now on.
    """
    team = get_team(session, team_id)
    if team.creator_id != requesting_user_id:
        raise Forbidden("Only the creator can update team details")

    changed = False
    if name is not None and name.strip():
        team.name = _clean_team_name(name)
        changed = True
    if is_private is not None:
        team.is_private = is_private
        changed = True
    if whitelist is not None:
        team.whitelist = normalize_whitelist(whitelist)
        changed = True
    if not changed:
        raise ValidationError("No valid fields provided to update")

    team.version += 1
    team.updated_at = utcnow()
    session.add(team)
    session.commit()
    session.refresh(team)
    return team


def _require_creator(session: Session, team_id: int, requesting_user_id: str) -> Team:
    team = get_team(session, team_id)
    if team.creator_id != requesting_user_id:
        raise Forbidden("Only the creator can manage the whitelist")
    return team


def add_whitelist_entry(session: Session, team_id: int, requesting_user_id: str, entry: str) -> Team:
    team = _require_creator(session, team_id, requesting_user_id)
    value = (entry or "").strip()
    if not value:
        raise ValidationError("Whitelist entry is required")
    if any(existing.lower() == value.lower() for existing in team.whitelist):
        return team
    team.whitelist = [*team.whitelist, value]
    team.version += 1
    team.updated_at = utcnow()
    session.add(team)
    session.commit()
    session.refresh(team)
    logger.info("Whitelisted %s for team %s", value, team.id)
    return team


def remove_whitelist_entry(session: Session, team_id: int, requesting_user_id: str, entry: str) -> Team:
    team = _require_creator(session, team_id, requesting_user_id)
    value = (entry or "").strip().lower()
    remaining = [existing for existing in team.whitelist if existing.lower() != value]
    if len(remaining) == len(team.whitelist):
        raise NotFound("Whitelist entry not found")
    team.whitelist = remaining
    team.version += 1
    team.updated_at = utcnow()
    session.add(team)
    session.commit()
    session.refresh(team)
    logger.info("Removed whitelist entry %s from team %s", entry, team.id)
    return team


def find_roster_inconsistencies(session: Session) -> List[RosterIssue]:
    """Report rosters that drifted from their spots and registrations."""
    issues: List[RosterIssue] = []
    counts = dict(
        session.exec(select(TeamMember.team_id, func.count()).group_by(TeamMember.team_id)).all()
    )
    for team in list_teams(session):
        actual = counts.get(team.id, 0)
        if actual != team.member_count:
            issues.append(
                RosterIssue(issue="member_count_mismatch", team_id=team.id, recorded=team.member_count, actual=actual)
            )
        if actual == 0:
            issues.append(RosterIssue(issue="empty_team", team_id=team.id))
        elif actual > TEAM_CAPACITY:
            issues.append(RosterIssue(issue="over_capacity", team_id=team.id, actual=actual))

    rows = session.exec(
        select(TeamMember, Spot, Registration)
        .outerjoin(Spot, TeamMember.spot_id == Spot.spot_id)
        .outerjoin(Registration, TeamMember.registration_id == Registration.id)
    ).all()
    for member, spot, registration in rows:
        if spot is None:
            issues.append(RosterIssue(issue="orphaned_member", team_id=member.team_id, spot_id=member.spot_id))
        elif registration is None or registration.payment_status != PAYMENT_COMPLETED:
            issues.append(RosterIssue(issue="unpaid_member", team_id=member.team_id, spot_id=member.spot_id))
        elif spot.registration_id != member.registration_id:
            issues.append(RosterIssue(issue="registration_mismatch", team_id=member.team_id, spot_id=member.spot_id))
    if issues:
        logger.warning("Roster sweep found %d issues", len(issues))
    return issues
