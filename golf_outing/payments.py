"""Stripe checkout sessions and webhook verification."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any

import stripe

from .errors import InvalidSignature, NotFound, UpstreamFailure, ValidationError

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_MAX_NETWORK_RETRIES = int(os.getenv("STRIPE_MAX_NETWORK_RETRIES", "2"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
CURRENCY = "usd"
METADATA_VALUE_LIMIT = 500

# Every checkout session is stamped with one of these under metadata["kind"].
KIND_REGISTRATION = "registration"
KIND_REGISTRATION_UPDATE = "registration_update"
KIND_SPONSOR_CREATE = "sponsor_create"
KIND_SPONSOR_UPGRADE = "sponsor_upgrade"

logger = logging.getLogger(__name__)


@dataclass
class CheckoutRequest:
    """A validated pending change waiting on payment."""

    kind: str
    user_id: str
    amount_cents: int
    line_item_name: str
    return_path: str
    payload: dict[str, str] = field(default_factory=dict)

    @property
    def metadata(self) -> dict[str, str]:
        return {"kind": self.kind, "userId": self.user_id, **self.payload}


def _configure_client() -> None:
    if not STRIPE_SECRET_KEY:
        raise UpstreamFailure("Stripe API key not configured")
    stripe.api_key = STRIPE_SECRET_KEY
    stripe.max_network_retries = STRIPE_MAX_NETWORK_RETRIES


def return_urls(path: str) -> tuple[str, str]:
    """Success and cancel URLs for a checkout started from ``path``."""
    base = f"{PUBLIC_BASE_URL}/{path.lstrip('/')}"
    return (
        f"{base}?success=true&session_id={{CHECKOUT_SESSION_ID}}",
        f"{base}?cancel=true",
    )


def create_checkout_session(
    *,
    amount_cents: int,
    line_item_name: str,
    success_url: str,
    cancel_url: str,
    metadata: dict[str, str],
) -> dict[str, str]:
    """Create a hosted Stripe Checkout session and return its id and URL.

    Stripe metadata is a flat string map, so callers JSON-encode anything
    structured before handing it over.
    """
    for key, value in metadata.items():
        if len(value) > METADATA_VALUE_LIMIT:
            raise ValidationError(f"Checkout details for '{key}' are too long")
    _configure_client()
    try:
        session = stripe.checkout.Session.create(
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": CURRENCY,
                        "product_data": {"name": line_item_name},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            mode="payment",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )
    except stripe.StripeError as exc:
        logger.error("Failed to create checkout session for %s: %s", line_item_name, exc)
        raise UpstreamFailure("Failed to create checkout session") from exc

    logger.info(
        "Created checkout session %s (%s, %d cents) for user %s",
        session.id,
        metadata.get("kind"),
        amount_cents,
        metadata.get("userId"),
    )
    return {"id": session.id, "url": session.url}


def start_checkout(request: CheckoutRequest) -> dict[str, str]:
    success_url, cancel_url = return_urls(request.return_path)
    return create_checkout_session(
        amount_cents=request.amount_cents,
        line_item_name=request.line_item_name,
        success_url=success_url,
        cancel_url=cancel_url,
        metadata=request.metadata,
    )


def retrieve_checkout_session(session_id: str, user_id: str) -> dict[str, Any]:
    """Return a checkout session's status, only to the user who started it."""
    _configure_client()
    try:
        session = stripe.checkout.Session.retrieve(session_id)
    except stripe.StripeError as exc:
        logger.error("Error retrieving checkout session %s: %s", session_id, exc)
        raise UpstreamFailure("Failed to retrieve session") from exc
    metadata = dict(session.metadata or {})
    if metadata.get("userId") != user_id:
        logger.warning("User %s asked for checkout session %s owned by someone else", user_id, session_id)
        raise NotFound("Checkout session not found")
    return {
        "id": session.id,
        "status": session.status,
        "payment_status": session.payment_status,
        "amount_total": session.amount_total,
        "metadata": metadata,
    }


def verify_webhook(payload: bytes, signature: str | None) -> dict[str, Any]:
    """Verify a Stripe webhook delivery and return the decoded event.

    Fails closed: a missing header, a missing secret, a bad signature or an
    unparsable body all raise ``InvalidSignature``.
    """
    if not signature:
        raise InvalidSignature("No signature")
    if not STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET is not set; rejecting webhook")
        raise InvalidSignature("Webhook secret not configured")
    try:
        stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
        event = json.loads(payload)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise InvalidSignature("Invalid signature") from exc
    except ValueError as exc:
        logger.warning("Webhook payload could not be parsed: %s", exc)
        raise InvalidSignature("Invalid payload") from exc
    if not isinstance(event, dict):
        raise InvalidSignature("Invalid payload")
    return event
