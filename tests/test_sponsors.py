import json

import pytest

from golf_outing.database import Sponsor
from golf_outing.errors import DuplicateSponsor, SponsorNotFound, ValidationError
from golf_outing.payments import KIND_SPONSOR_CREATE, KIND_SPONSOR_UPGRADE
from golf_outing.schemas import SponsorCheckoutRequest, SponsorUpdate
from golf_outing.sponsors import (
    SPONSOR_TIERS,
    get_tier,
    list_sponsors,
    prepare_sponsor_checkout,
    prepare_sponsor_upgrade_checkout,
    sponsor_payload,
    update_sponsor,
)


def _existing_sponsor(session, user_id: str = "ace", tier: str = "Hole Sponsor") -> Sponsor:
    sponsor = Sponsor(user_id=user_id, name="Ace Plumbing", tier=tier, price=get_tier(tier).price, text="Ace!")
    session.add(sponsor)
    session.commit()
    session.refresh(sponsor)
    return sponsor


def test_tier_catalogue():
    assert [(tier.name, tier.price, tier.free_golfers) for tier in SPONSOR_TIERS] == [
        ("Hole Sponsor", 200, 0),
        ("Cart Sponsor", 1000, 1),
        ("Beverage Sponsor", 1000, 1),
        ("Dinner Sponsor", 3000, 4),
        ("Title Sponsor", 10000, 4),
    ]
    with pytest.raises(ValidationError):
        get_tier("Platinum Sponsor")


def test_sponsor_checkout_metadata(session):
    request = SponsorCheckoutRequest(
        name="Bay Bakery",
        tier="Dinner Sponsor",
        logo="https://example.com/logo.png",
        free_golfers=["One", " ", "Two"],
    )

    checkout = prepare_sponsor_checkout(session, "bay", request)

    assert checkout.kind == KIND_SPONSOR_CREATE
    assert checkout.amount_cents == 300000
    assert checkout.metadata["tier"] == "Dinner Sponsor"
    assert checkout.metadata["text"] == ""
    assert json.loads(checkout.metadata["freeGolfers"]) == ["One", "Two"]


def test_sponsor_checkout_rules(session):
    with pytest.raises(ValidationError):
        prepare_sponsor_checkout(session, "cy", SponsorCheckoutRequest(name="Cy", tier="Hole Sponsor"))
    with pytest.raises(ValidationError):
        prepare_sponsor_checkout(
            session,
            "cy",
            SponsorCheckoutRequest(name="Cy", tier="Hole Sponsor", text="Hi", free_golfers=["Extra"]),
        )

    _existing_sponsor(session, "cy")
    with pytest.raises(DuplicateSponsor):
        prepare_sponsor_checkout(session, "cy", SponsorCheckoutRequest(name="Cy", tier="Cart Sponsor", text="Hi"))


def test_upgrade_charges_the_difference(session):
    _existing_sponsor(session, "dee", "Cart Sponsor")

    checkout = prepare_sponsor_upgrade_checkout(
        session, "dee", SponsorCheckoutRequest(name="Dee's", tier="Title Sponsor", text="Thanks")
    )
    assert checkout.kind == KIND_SPONSOR_UPGRADE
    assert checkout.amount_cents == (10000 - 1000) * 100
    assert checkout.metadata["price"] == "10000"

    with pytest.raises(ValidationError):
        prepare_sponsor_upgrade_checkout(
            session, "dee", SponsorCheckoutRequest(name="Dee's", tier="Beverage Sponsor", text="Thanks")
        )
    with pytest.raises(SponsorNotFound):
        prepare_sponsor_upgrade_checkout(
            session, "nobody", SponsorCheckoutRequest(name="No", tier="Title Sponsor", text="Hi")
        )


def test_update_sponsor_clears_blank_fields(session):
    _existing_sponsor(session, "eve")

    sponsor = update_sponsor(
        session,
        "eve",
        SponsorUpdate(name="Eve's Garage", logo="https://example.com/eve.png", text="  ", website_link=None),
    )

    assert sponsor.name == "Eve's Garage"
    assert sponsor.text is None
    assert sponsor.logo == "https://example.com/eve.png"
    assert sponsor.updated_at is not None
    assert sponsor_payload(sponsor)["tier"] == "Hole Sponsor"

    with pytest.raises(ValidationError):
        update_sponsor(session, "eve", SponsorUpdate(name="Eve", logo="", text=""))
    with pytest.raises(SponsorNotFound):
        update_sponsor(session, "ghost", SponsorUpdate(name="Ghost", text="Boo"))


def test_list_sponsors_in_creation_order(session):
    _existing_sponsor(session, "first")
    _existing_sponsor(session, "second", "Title Sponsor")

    assert [sponsor.user_id for sponsor in list_sponsors(session)] == ["first", "second"]
