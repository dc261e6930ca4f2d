# billing.py
"""Stripe billing: checkout sessions and the payment webhook.

Both entry points run inside a Flask request; configuration comes from
``current_app.config`` (STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET,
STRIPE_PRICE_ID, STRIPE_TRIAL_PRICE_ID).
"""
from __future__ import annotations  # postpone annotation evaluation

import json
import logging

import stripe
from flask import current_app

from plans import Plan, select_price_id
from stores import profile_from_row

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


class BillingError(Exception):
    """Checkout failure with an error code and its HTTP status."""

    STATUS = {
        "unauthenticated": 401,
        "not-found": 404,
        "internal": 500,
    }

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def status(self) -> int:
        return self.STATUS.get(self.code, 500)


def _models():
    # late import avoids circular import at module import time
    from app import db, User
    return db, User


def create_checkout_session(user_id: str | None, origin: str) -> dict:
    """Create a subscription Checkout Session for ``user_id``.

    Creates the Stripe customer on first use and stores its id on the
    profile. Users who never had a trial get the trial price.

    Returns:
        ``{"id": <checkout session id>}`` for the client-side redirect.
    """
    if not user_id:
        raise BillingError("unauthenticated", "You must be logged in to subscribe.")

    db, User = _models()
    row = db.session.get(User, user_id)
    if row is None:
        raise BillingError("not-found", "User data not found.")

    cfg = current_app.config
    api_key = cfg.get("STRIPE_SECRET_KEY")
    regular_price_id = cfg.get("STRIPE_PRICE_ID")
    trial_price_id = cfg.get("STRIPE_TRIAL_PRICE_ID")
    if not api_key:
        logger.error("STRIPE_SECRET_KEY is not configured")
        raise BillingError("internal", "Stripe secret key is not configured.")
    if not regular_price_id or not trial_price_id:
        raise BillingError(
            "internal",
            "Stripe Price IDs are not configured. Please set STRIPE_PRICE_ID and STRIPE_TRIAL_PRICE_ID.",
        )

    profile = profile_from_row(row)
    try:
        customer_id = profile.billing_customer_id
        if not customer_id:
            customer = stripe.Customer.create(
                api_key=api_key,
                email=profile.email,
                metadata={"user_id": user_id},
            )
            customer_id = customer.id
            row.stripe_customer_id = customer_id
            try:
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
            logger.info("Created Stripe customer %s for user %s", customer_id, user_id)

        price_id = select_price_id(profile, regular_price_id, trial_price_id)
        session = stripe.checkout.Session.create(
            api_key=api_key,
            payment_method_types=["card"],
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            # ties the completed checkout back to the user in the webhook
            client_reference_id=user_id,
            success_url=f"{origin}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=origin,
        )
    except stripe.StripeError as e:
        logger.error("Stripe checkout failed for user %s: %s", user_id, e, exc_info=True)
        raise BillingError("internal", "Could not connect to the payment service.") from e

    return {"id": session.id}


def _grant_pro(user_id: str) -> None:
    db, User = _models()
    row = db.session.get(User, user_id)
    if row is None:
        raise LookupError(f"No profile for user {user_id}")
    row.plan = Plan.PRO.value
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def handle_webhook(payload: str, signature: str | None) -> tuple[dict | str, int]:
    """Verify and process one Stripe webhook delivery.

    Returns a ``(body, status)`` pair for the HTTP response. Only
    ``checkout.session.completed`` changes state (plan -> pro); every other
    verified event is acknowledged with 200.
    """
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        logger.error("Stripe webhook secret is not configured.")
        return "Webhook secret is not configured.", 400

    try:
        stripe.WebhookSignature.verify_header(
            payload, signature or "", secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
        )
        event = json.loads(payload)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.error("Webhook signature verification failed: %s", e)
        return f"Webhook Error: {e}", 400

    if not isinstance(event, dict):
        logger.error("Webhook payload is not an event object")
        return "Webhook Error: Payload is not an event object.", 400

    if event.get("type") == CHECKOUT_COMPLETED:
        data = event.get("data")
        session = data.get("object") if isinstance(data, dict) else None
        if not isinstance(session, dict):
            logger.error("Checkout event %s carries no session object", event.get("id"))
            return "Webhook Error: Missing checkout session object.", 400
        user_id = session.get("client_reference_id")
        if not user_id:
            logger.error("No client_reference_id in checkout session %s", session.get("id"))
            return "Webhook Error: Missing client_reference_id.", 400

        try:
            _grant_pro(user_id)
        except Exception:
            logger.error("Failed to update user %s plan to pro", user_id, exc_info=True)
            return "Internal server error.", 500
        logger.info("Granted Pro access to user %s", user_id)

    return {"received": True}, 200
