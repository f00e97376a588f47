"""Sponsorship tiers and the sponsor record kept for each paying business."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Sequence

from sqlmodel import Session, select

from .database import Sponsor, utcnow
from .errors import DuplicateSponsor, SponsorNotFound, ValidationError
from .payments import KIND_SPONSOR_CREATE, KIND_SPONSOR_UPGRADE, CheckoutRequest
from .schemas import SponsorCheckoutRequest, SponsorUpdate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SponsorTier:
    name: str
    price: int
    free_golfers: int
    description: str


SPONSOR_TIERS = (
    SponsorTier("Hole Sponsor", 200, 0, "Includes tee box sign"),
    SponsorTier("Cart Sponsor", 1000, 1, "Includes one golfer, recognition on all carts, hole sponsor sign"),
    SponsorTier("Beverage Sponsor", 1000, 1, "Includes one golfer, recognition, hole sponsor sign"),
    SponsorTier("Dinner Sponsor", 3000, 4, "Includes foursome, recognition at dinner, hole sponsor sign"),
    SponsorTier(
        "Title Sponsor",
        10000,
        4,
        "Includes foursome, outing recognition, hole sponsor sign, sponsor gift",
    ),
)
TIERS_BY_NAME = {tier.name: tier for tier in SPONSOR_TIERS}


def get_tier(name: str) -> SponsorTier:
    tier = TIERS_BY_NAME.get((name or "").strip())
    if not tier:
        raise ValidationError("Invalid tier selected")
    return tier


def sponsor_payload(sponsor: Sponsor) -> dict[str, object]:
    return {
        "id": sponsor.id,
        "user_id": sponsor.user_id,
        "name": sponsor.name,
        "tier": sponsor.tier,
        "price": sponsor.price,
        "logo": sponsor.logo,
        "text": sponsor.text,
        "website_link": sponsor.website_link,
        "free_golfers": list(sponsor.free_golfers),
        "created_at": sponsor.created_at.isoformat(),
    }


def get_sponsor(session: Session, user_id: str) -> Sponsor | None:
    return session.exec(select(Sponsor).where(Sponsor.user_id == user_id)).first()


def list_sponsors(session: Session) -> list[Sponsor]:
    return list(session.exec(select(Sponsor).order_by(Sponsor.created_at, Sponsor.id)).all())


def _optional(value: str | None) -> str | None:
    cleaned = (value or "").strip()
    return cleaned or None


def _require_sign(logo: str | None, text: str | None) -> None:
    if not _optional(logo) and not _optional(text):
        raise ValidationError("At least one of logo or text must be provided")


def clean_free_golfers(golfers: Sequence[str], tier: SponsorTier) -> list[str]:
    cleaned = [golfer.strip() for golfer in golfers if golfer and golfer.strip()]
    if len(cleaned) > tier.free_golfers:
        raise ValidationError(f"{tier.name} includes at most {tier.free_golfers} golfers")
    return cleaned


def _sponsor_checkout(
    kind: str,
    user_id: str,
    request: SponsorCheckoutRequest,
    tier: SponsorTier,
    amount_dollars: int,
) -> CheckoutRequest:
    golfers = clean_free_golfers(request.free_golfers, tier)
    return CheckoutRequest(
        kind=kind,
        user_id=user_id,
        amount_cents=amount_dollars * 100,
        line_item_name="Golf Outing Sponsorship",
        return_path="/sponsor",
        payload={
            "name": request.name,
            "tier": tier.name,
            "price": str(tier.price),
            "logo": _optional(request.logo) or "",
            "text": _optional(request.text) or "",
            "websiteLink": _optional(request.website_link) or "",
            "freeGolfers": json.dumps(golfers),
        },
    )


def prepare_sponsor_checkout(session: Session, user_id: str, request: SponsorCheckoutRequest) -> CheckoutRequest:
    tier = get_tier(request.tier)
    _require_sign(request.logo, request.text)
    if get_sponsor(session, user_id):
        logger.warning("User %s already has a sponsor", user_id)
        raise DuplicateSponsor()
    return _sponsor_checkout(KIND_SPONSOR_CREATE, user_id, request, tier, tier.price)


def prepare_sponsor_upgrade_checkout(
    session: Session,
    user_id: str,
    request: SponsorCheckoutRequest,
) -> CheckoutRequest:
    """Charge the difference between the current price and the new tier."""
    tier = get_tier(request.tier)
    _require_sign(request.logo, request.text)
    sponsor = get_sponsor(session, user_id)
    if not sponsor:
        raise SponsorNotFound()
    if tier.price <= sponsor.price:
        raise ValidationError("Choose a tier priced above your current sponsorship")
    return _sponsor_checkout(KIND_SPONSOR_UPGRADE, user_id, request, tier, tier.price - sponsor.price)


def _apply_fields(
    sponsor: Sponsor,
    *,
    name: str,
    logo: str | None,
    text: str | None,
    website_link: str | None,
) -> None:
    sponsor.name = name
    sponsor.logo = _optional(logo)
    sponsor.text = _optional(text)
    sponsor.website_link = _optional(website_link)


def apply_sponsor_create(
    session: Session,
    user_id: str,
    *,
    name: str,
    tier: SponsorTier,
    logo: str | None,
    text: str | None,
    website_link: str | None,
    free_golfers: Sequence[str],
    stripe_session_id: str | None,
) -> Sponsor:
    """Stage a new sponsor row; the caller commits."""
    if get_sponsor(session, user_id):
        raise DuplicateSponsor("User already has a sponsor")
    sponsor = Sponsor(
        user_id=user_id,
        name=name,
        tier=tier.name,
        price=tier.price,
        free_golfers=list(free_golfers),
        stripe_session_id=stripe_session_id,
    )
    _apply_fields(sponsor, name=name, logo=logo, text=text, website_link=website_link)
    session.add(sponsor)
    logger.info("Sponsor %s (%s) created for user %s", name, tier.name, user_id)
    return sponsor


def apply_sponsor_upgrade(
    session: Session,
    user_id: str,
    *,
    name: str,
    tier: SponsorTier,
    logo: str | None,
    text: str | None,
    website_link: str | None,
    free_golfers: Sequence[str],
    stripe_session_id: str | None,
) -> Sponsor:
    """Stage an in-place tier upgrade; the caller commits."""
    sponsor = get_sponsor(session, user_id)
    if not sponsor:
        raise SponsorNotFound()
    _apply_fields(sponsor, name=name, logo=logo, text=text, website_link=website_link)
    sponsor.tier = tier.name
    sponsor.price = tier.price
    sponsor.free_golfers = list(free_golfers)
    sponsor.stripe_session_id = stripe_session_id
    sponsor.updated_at = utcnow()
    session.add(sponsor)
    logger.info("Sponsor %s upgraded to %s for user %s", sponsor.id, tier.name, user_id)
    return sponsor


def update_sponsor(session: Session, user_id: str, request: SponsorUpdate) -> Sponsor:
    """Edit sign details without a payment; blank fields are cleared."""
    _require_sign(request.logo, request.text)
    sponsor = get_sponsor(session, user_id)
    if not sponsor:
        raise SponsorNotFound()
    _apply_fields(sponsor, name=request.name, logo=request.logo, text=request.text, website_link=request.website_link)
    sponsor.updated_at = utcnow()
    session.add(sponsor)
    session.commit()
    session.refresh(sponsor)
    return sponsor
