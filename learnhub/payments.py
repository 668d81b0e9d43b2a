"""
Stripe integration: Checkout sessions and webhook handling.

Checkout is reached through the PaymentsClient protocol so tests and local
runs can use the in-memory double; webhook verification and event
application are plain functions over a DbClient.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

import stripe

from learnhub.db import DbClient, SubscriptionRecord, UserRecord
from learnhub.errors import WebhookVerificationError

logger = logging.getLogger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300
CANCELED_STATUS = "canceled"


@dataclass
class CheckoutSession:
    id: str
    url: str


class PaymentsClient(Protocol):
    """Operations the API needs from the payment provider."""

    def create_checkout_session(
        self,
        *,
        user: UserRecord,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        ...


@dataclass
class InMemoryPaymentsClient:
    """Test double that records requested sessions."""

    base_url: str = "https://checkout.example.test/pay"
    sessions: list = field(default_factory=list)

    def create_checkout_session(
        self,
        *,
        user: UserRecord,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        session = CheckoutSession(
            id=f"cs_test_{uuid.uuid4().hex}",
            url=f"{self.base_url}/{price_id}",
        )
        self.sessions.append(
            {
                "id": session.id,
                "user_id": user.id,
                "price_id": price_id,
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        )
        return session


@dataclass
class StripePaymentsClient:
    """Creates subscription Checkout sessions through the Stripe API."""

    secret_key: str

    def create_checkout_session(
        self,
        *,
        user: UserRecord,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        params = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user.id,
            "metadata": {"user_id": user.id},
            "subscription_data": {"metadata": {"user_id": user.id}},
        }
        if user.stripe_customer_id:
            params["customer"] = user.stripe_customer_id
        elif user.email:
            params["customer_email"] = user.email
        session = stripe.checkout.Session.create(api_key=self.secret_key, **params)
        logger.info("Created checkout session %s for user %s", session.id, user.id)
        return CheckoutSession(id=session.id, url=session.url)


def verify_webhook(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
) -> dict:
    """
    Check the ``Stripe-Signature`` header against the raw request body and
    return the decoded event.
    """
    if not signature_header:
        raise WebhookVerificationError("Missing Stripe-Signature header")
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookVerificationError("Webhook payload is not UTF-8") from exc
    try:
        stripe.WebhookSignature.verify_header(
            body, signature_header, secret, tolerance
        )
    except stripe.SignatureVerificationError as exc:
        raise WebhookVerificationError(f"Invalid signature: {exc}") from exc
    try:
        event = json.loads(body)
    except json.JSONDecodeError as exc:
        raise WebhookVerificationError("Webhook payload is not valid JSON") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise WebhookVerificationError("Webhook payload is not a Stripe event")
    return event


def _timestamp(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _object_id(value) -> Optional[str]:
    # Stripe sends either an id string or the expanded object.
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _price_id(subscription: dict) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id") if isinstance(price, dict) else price


def _period_end(subscription: dict) -> Optional[datetime]:
    value = subscription.get("current_period_end")
    if value is None:
        # Newer API versions moved the period onto subscription items.
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            value = items[0].get("current_period_end")
    return _timestamp(value)


def _resolve_user_id(
    db: DbClient,
    *,
    subscription_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    customer_id: Optional[str] = None,
) -> Optional[str]:
    if subscription_id:
        existing = db.get_subscription(subscription_id)
        if existing:
            return existing.user_id
    user_id = (metadata or {}).get("user_id")
    if user_id and db.get_user(user_id):
        return user_id
    if customer_id:
        user = db.get_user_by_stripe_customer(customer_id)
        if user:
            return user.id
    return None


def _handle_checkout_completed(db: DbClient, session: dict) -> None:
    if session.get("mode") != "subscription":
        logger.info("Ignoring checkout session %s in mode %s", session.get("id"), session.get("mode"))
        return
    user_id = session.get("client_reference_id") or (session.get("metadata") or {}).get("user_id")
    if not user_id or not db.get_user(user_id):
        logger.warning("Checkout session %s has no known user", session.get("id"))
        return
    customer_id = _object_id(session.get("customer"))
    subscription_id = _object_id(session.get("subscription"))
    if customer_id:
        db.set_stripe_customer(user_id, customer_id)
    if not subscription_id:
        return
    existing = db.get_subscription(subscription_id)
    status = "active"
    if existing and existing.status != "incomplete":
        # A subscription event may already have arrived with a newer status.
        status = existing.status
    db.upsert_subscription(
        SubscriptionRecord(
            id=subscription_id,
            user_id=user_id,
            status=status,
            stripe_customer_id=customer_id,
            price_id=existing.price_id if existing else None,
            current_period_end=existing.current_period_end if existing else None,
        )
    )


def _is_canceled(db: DbClient, subscription_id: str) -> bool:
    # Stripe never reactivates a canceled subscription, but events can arrive
    # after the deletion.
    existing = db.get_subscription(subscription_id)
    return existing is not None and existing.status == CANCELED_STATUS


def _handle_subscription_change(db: DbClient, subscription: dict, deleted: bool) -> None:
    subscription_id = subscription.get("id")
    customer_id = _object_id(subscription.get("customer"))
    user_id = _resolve_user_id(
        db,
        subscription_id=subscription_id,
        metadata=subscription.get("metadata"),
        customer_id=customer_id,
    )
    if not subscription_id or not user_id:
        logger.warning("Subscription %s has no known user", subscription_id)
        return
    if not deleted and _is_canceled(db, subscription_id):
        logger.info("Ignoring late update for canceled subscription %s", subscription_id)
        return
    if customer_id:
        db.set_stripe_customer(user_id, customer_id)
    db.upsert_subscription(
        SubscriptionRecord(
            id=subscription_id,
            user_id=user_id,
            status=CANCELED_STATUS if deleted else subscription.get("status", "incomplete"),
            stripe_customer_id=customer_id,
            price_id=_price_id(subscription),
            current_period_end=_period_end(subscription),
        )
    )


def _handle_payment_failed(db: DbClient, invoice: dict) -> None:
    subscription_id = _object_id(invoice.get("subscription"))
    if not subscription_id:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription_id = _object_id(details.get("subscription"))
    existing = db.get_subscription(subscription_id) if subscription_id else None
    if not existing:
        logger.warning("Payment failed for unknown subscription %s", subscription_id)
        return
    if existing.status == CANCELED_STATUS:
        return
    existing.status = "past_due"
    db.upsert_subscription(existing)


_HANDLERS: dict[str, Callable[[DbClient, dict], None]] = {
    "checkout.session.completed": _handle_checkout_completed,
    "customer.subscription.created": lambda db, obj: _handle_subscription_change(db, obj, False),
    "customer.subscription.updated": lambda db, obj: _handle_subscription_change(db, obj, False),
    "customer.subscription.deleted": lambda db, obj: _handle_subscription_change(db, obj, True),
    "invoice.payment_failed": _handle_payment_failed,
}


def apply_stripe_event(db: DbClient, event: dict) -> bool:
    """
    Apply a verified Stripe event. Returns False when the event id was
    already processed, in which case nothing is changed.
    """
    event_id = event["id"]
    event_type = event["type"]
    if db.has_processed_event(event_id):
        logger.info("Skipping duplicate Stripe event %s", event_id)
        return False

    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.debug("Ignoring Stripe event %s of type %s", event_id, event_type)
    else:
        obj = (event.get("data") or {}).get("object") or {}
        handler(db, obj)
        logger.info("Applied Stripe event %s (%s)", event_id, event_type)

    # Handlers are upserts, so a crash before this line is safe to replay.
    db.mark_event_processed(event_id, event_type)
    return True
