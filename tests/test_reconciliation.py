import json

import pytest
from sqlmodel import select

from conftest import buy_spots, checkout_event, sign
from golf_outing import payments
from golf_outing.database import PAYMENT_COMPLETED, ProcessedEvent, Registration, Spot, Sponsor
from golf_outing.errors import (
    Conflict,
    DuplicateEmail,
    InvalidMetadataShape,
    InvalidSignature,
    MissingUserId,
    NotFound,
    SponsorNotFound,
    SpotLimitExceeded,
)
from golf_outing.reconciliation import handle_webhook
from golf_outing.reservations import prepare_registration_update_checkout, prepare_spot_checkout, register_free
from golf_outing.schemas import RegistrationData, SpotDetail, SponsorCheckoutRequest
from golf_outing.sponsors import prepare_sponsor_checkout


def _spot_metadata(session, user_id: str, *golfers: tuple[str, str]) -> dict[str, str]:
    details = [SpotDetail(name=name, email=email, phone="555-0100") for name, email in golfers]
    return prepare_spot_checkout(session, user_id, details).metadata


def _deliver(session, metadata, **event):
    payload = checkout_event(metadata, **event)
    return handle_webhook(session, payload, sign(payload))


def _registrations(session, user_id: str) -> list[Registration]:
    return list(session.exec(select(Registration).where(Registration.user_id == user_id)).all())


def test_unverifiable_signature_changes_nothing(session, webhook_secret):
    metadata = _spot_metadata(session, "ann", ("Ann", "ann@x.com"))
    payload = checkout_event(metadata)

    with pytest.raises(InvalidSignature):
        handle_webhook(session, payload, sign(payload, secret="whsec_wrong"))
    with pytest.raises(InvalidSignature):
        handle_webhook(session, payload, None)
    with pytest.raises(InvalidSignature):
        handle_webhook(session, payload, "t=1,v1=deadbeef")

    assert session.exec(select(Registration)).all() == []
    assert session.exec(select(Sponsor)).all() == []
    assert session.exec(select(ProcessedEvent)).all() == []


def test_missing_webhook_secret_rejects(session, monkeypatch):
    monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", None)
    payload = checkout_event({"kind": "registration", "userId": "ann"})
    with pytest.raises(InvalidSignature):
        handle_webhook(session, payload, sign(payload))


def test_registration_payment_creates_spots(session, webhook_secret):
    metadata = _spot_metadata(session, "bea", ("Bea", "bea@x.com"), ("Bo", "bo@x.com"))

    result = _deliver(session, metadata, amount_total=30000)

    assert result["received"] is True
    assert result["kind"] == "registration"
    [registration] = _registrations(session, "bea")
    assert registration.payment_status == PAYMENT_COMPLETED
    assert registration.spot_count == 2
    assert registration.amount_paid_cents == 30000
    assert registration.stripe_session_id == "cs_test_1"
    spots = session.exec(select(Spot).where(Spot.registration_id == registration.id)).all()
    assert sorted(spot.email for spot in spots) == ["bea@x.com", "bo@x.com"]
    assert len({spot.spot_id for spot in spots}) == 2


def test_second_payment_merges_into_registration(session, webhook_secret):
    first = _spot_metadata(session, "cy", ("C1", "c1@x.com"), ("C2", "c2@x.com"))
    _deliver(session, first, event_id="evt_a", session_id="cs_a", amount_total=30000)
    second = _spot_metadata(session, "cy", ("C3", "c3@x.com"))
    _deliver(session, second, event_id="evt_b", session_id="cs_b", amount_total=15000)

    [registration] = _registrations(session, "cy")
    assert registration.spot_count == 3
    assert registration.amount_paid_cents == 45000
    spots = session.exec(select(Spot).where(Spot.registration_id == registration.id)).all()
    assert len(spots) == 3


def test_replayed_event_is_acknowledged_without_changes(session, webhook_secret):
    metadata = _spot_metadata(session, "dot", ("Dot", "dot@x.com"))
    _deliver(session, metadata, event_id="evt_once", session_id="cs_once")

    replay = _deliver(session, metadata, event_id="evt_once", session_id="cs_once")
    assert replay == {"received": True, "duplicate": True}
    # A new event id for an already-applied checkout session is also a replay.
    resent = _deliver(session, metadata, event_id="evt_twice", session_id="cs_once")
    assert resent["duplicate"] is True

    [registration] = _registrations(session, "dot")
    assert registration.spot_count == 1
    assert registration.amount_paid_cents == 15000
    assert len(session.exec(select(ProcessedEvent)).all()) == 1


def test_colliding_email_rejects_whole_batch(session, webhook_secret):
    metadata = _spot_metadata(session, "eli", ("Eli", "eli@x.com"), ("Ema", "ema@x.com"))
    buy_spots(session, "fin", ("Fin", "EMA@x.com"))

    with pytest.raises(DuplicateEmail):
        _deliver(session, metadata)
    assert _registrations(session, "eli") == []
    assert session.exec(select(ProcessedEvent)).all() == []


def test_missing_user_id(session, webhook_secret):
    with pytest.raises(MissingUserId):
        _deliver(session, {"kind": "registration", "spotDetails": "[]"})


def test_unknown_kind_is_rejected(session, webhook_secret):
    with pytest.raises(InvalidMetadataShape):
        _deliver(session, {"userId": "gil", "name": "Shop", "tier": "Hole Sponsor"})
    with pytest.raises(InvalidMetadataShape):
        _deliver(session, {"kind": "refund", "userId": "gil"})


def test_malformed_spot_details(session, webhook_secret):
    with pytest.raises(InvalidMetadataShape):
        _deliver(session, {"kind": "registration", "userId": "gil", "spotDetails": "not json"})
    bad = json.dumps([{"name": "", "email": "gil@x.com", "phone": "555"}])
    with pytest.raises(InvalidMetadataShape):
        _deliver(session, {"kind": "registration", "userId": "gil", "spotDetails": bad})


def test_other_event_types_are_acknowledged(session, webhook_secret):
    for event_type in ("payment_intent.succeeded", "customer.created"):
        result = _deliver(session, {"kind": "registration", "userId": "hu"}, event_type=event_type)
        assert result == {"received": True}
    assert session.exec(select(ProcessedEvent)).all() == []


def test_registration_update_payment(session, webhook_secret):
    data = RegistrationData(
        name="Ivy Alum",
        email="ivy@x.com",
        phone="555-555-0123",
        is_first_year_alumni=True,
    )
    registration = register_free(session, "ivy", data)
    upgraded = data.model_copy(update={"preferred_golfers": ["Pal"], "pay_for_preferred": ["Pal"]})
    metadata = prepare_registration_update_checkout(session, "ivy", registration.id, upgraded).metadata

    _deliver(session, metadata, amount_total=15000)

    session.refresh(registration)
    assert registration.payment_status == PAYMENT_COMPLETED
    assert registration.amount_paid_cents == 15000
    assert registration.pay_for_preferred == ["Pal"]


def test_registration_update_for_foreign_registration(session, webhook_secret):
    metadata = {
        "kind": "registration_update",
        "userId": "jay",
        "registrationId": "4242",
        "registrationData": json.dumps({"name": "Jay", "email": "jay@x.com", "phone": "555-555-0100"}),
    }
    with pytest.raises(NotFound):
        _deliver(session, metadata)


def _sponsor_metadata(session, user_id: str, tier: str, **fields) -> dict[str, str]:
    request = SponsorCheckoutRequest(name=fields.pop("name", "Acme Hardware"), tier=tier, text="Go team!", **fields)
    return prepare_sponsor_checkout(session, user_id, request).metadata


def test_sponsor_created_once_per_user(session, webhook_secret):
    metadata = _sponsor_metadata(session, "kai", "Cart Sponsor", free_golfers=["Kai Golfer"])
    _deliver(session, metadata, event_id="evt_s1", session_id="cs_s1", amount_total=100000)

    [sponsor] = session.exec(select(Sponsor)).all()
    assert sponsor.tier == "Cart Sponsor"
    assert sponsor.price == 1000
    assert sponsor.free_golfers == ["Kai Golfer"]

    with pytest.raises(Conflict):
        _deliver(session, metadata, event_id="evt_s2", session_id="cs_s2", amount_total=100000)
    assert len(session.exec(select(Sponsor).where(Sponsor.user_id == "kai")).all()) == 1


def test_sponsor_upgrade_updates_in_place(session, webhook_secret):
    metadata = _sponsor_metadata(session, "lee", "Hole Sponsor")
    _deliver(session, metadata, event_id="evt_h", session_id="cs_h", amount_total=20000)

    upgrade = dict(metadata, kind="sponsor_upgrade", tier="Title Sponsor", freeGolfers=json.dumps(["L1", "L2"]))
    _deliver(session, upgrade, event_id="evt_t", session_id="cs_t", amount_total=980000)

    [sponsor] = session.exec(select(Sponsor)).all()
    assert sponsor.tier == "Title Sponsor"
    assert sponsor.price == 10000
    assert sponsor.free_golfers == ["L1", "L2"]
    assert sponsor.stripe_session_id == "cs_t"


def test_sponsor_upgrade_without_sponsor(session, webhook_secret):
    metadata = {"kind": "sponsor_upgrade", "userId": "mo", "name": "Mo's", "tier": "Dinner Sponsor", "text": "Hi"}
    with pytest.raises(SponsorNotFound):
        _deliver(session, metadata)


def test_paid_registration_update_renames_registrant_spot(session, webhook_secret):
    data = RegistrationData(name="Old Name", email="old@x.com", phone="555-555-0123", is_first_year_alumni=True)
    registration = register_free(session, "nia", data)
    renamed = data.model_copy(
        update={"name": "New Name", "email": "new@x.com", "preferred_golfers": ["Pal"], "pay_for_preferred": ["Pal"]}
    )
    metadata = prepare_registration_update_checkout(session, "nia", registration.id, renamed).metadata

    _deliver(session, metadata, amount_total=15000)

    [spot] = session.exec(select(Spot).where(Spot.registration_id == registration.id)).all()
    assert (spot.name, spot.email_key) == ("New Name", "new@x.com")


def test_paid_registration_update_rejects_taken_email(session, webhook_secret):
    data = RegistrationData(name="Oda", email="oda@x.com", phone="555-555-0123", is_first_year_alumni=True)
    registration = register_free(session, "oda", data)
    changed = data.model_copy(update={"email": "taken@x.com", "preferred_golfers": ["Pal"], "pay_for_preferred": ["Pal"]})
    metadata = prepare_registration_update_checkout(session, "oda", registration.id, changed).metadata
    buy_spots(session, "pia", ("Pia", "taken@x.com"))

    with pytest.raises(DuplicateEmail):
        _deliver(session, metadata, amount_total=15000)

    session.expire_all()
    assert session.get(Registration, registration.id).amount_paid_cents == 0
    assert session.exec(select(ProcessedEvent)).all() == []


def test_payment_over_spot_cap_is_rejected(session, webhook_secret):
    first = _spot_metadata(session, "rex", ("R1", "r1@x.com"), ("R2", "r2@x.com"), ("R3", "r3@x.com"))
    second = _spot_metadata(session, "rex", ("R4", "r4@x.com"), ("R5", "r5@x.com"), ("R6", "r6@x.com"))

    _deliver(session, first, event_id="evt_cap_1", session_id="cs_cap_1", amount_total=45000)
    with pytest.raises(SpotLimitExceeded):
        _deliver(session, second, event_id="evt_cap_2", session_id="cs_cap_2", amount_total=45000)

    [registration] = _registrations(session, "rex")
    assert registration.spot_count == 3
    assert registration.amount_paid_cents == 45000
    assert [event.event_id for event in session.exec(select(ProcessedEvent)).all()] == ["evt_cap_1"]
