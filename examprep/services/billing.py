"""
Billing gateway: hosted checkout, customer portal and webhook translation.
"""
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional
import json
import logging

import stripe

from examprep.core.errors import BillingFailed, InvalidWebhook
from examprep.services.subscriptions import (
    BillingEvent, CheckoutCompleted, PaymentFailed, SubscriptionCanceled, SubscriptionRenewed,
)

logger = logging.getLogger(__name__)


def translate_event(event_type: str, obj: Mapping[str, Any]) -> Optional[BillingEvent]:
    """Provider event type plus its data object to a billing event, or None to ignore."""
    customer = obj.get("customer")
    if event_type == "checkout.session.completed":
        metadata = obj.get("metadata") or {}
        user_id = metadata.get("userId") or metadata.get("user_id")
        if not customer:
            logger.warning("checkout.session.completed without a customer reference")
            return None
        return CheckoutCompleted(user_id=user_id or "", billing_ref=customer)

    if not customer:
        return None
    if event_type in ("customer.subscription.created", "customer.subscription.updated"):
        return SubscriptionRenewed(billing_ref=customer, raw_status=obj.get("status") or "")
    if event_type == "customer.subscription.deleted":
        return SubscriptionCanceled(billing_ref=customer)
    if event_type == "invoice.payment_failed":
        return PaymentFailed(billing_ref=customer)

    logger.debug(f"Unhandled billing event type: {event_type}")
    return None


class BillingGateway(ABC):

    @abstractmethod
    def start_checkout(self, user_id: str, email: str) -> str:
        """Create a hosted checkout session and return its URL."""

    @abstractmethod
    def open_billing_portal(self, billing_ref: str) -> str:
        ...

    @abstractmethod
    def parse_event(self, payload: bytes, signature: Optional[str]) -> Optional[BillingEvent]:
        """Verify and translate a webhook delivery. Raises InvalidWebhook."""


class StripeBillingGateway(BillingGateway):

    def __init__(self, api_key: str, webhook_secret: str, price_id: str, app_url: str):
        stripe.api_key = api_key
        self.webhook_secret = webhook_secret
        self.price_id = price_id
        self.app_url = app_url.rstrip("/")

    def start_checkout(self, user_id: str, email: str) -> str:
        try:
            session = stripe.checkout.Session.create(
                line_items=[{"price": self.price_id, "quantity": 1}],
                mode="subscription",
                success_url=f"{self.app_url}/dashboard?success=true",
                cancel_url=f"{self.app_url}/pricing?canceled=true",
                customer_email=email or None,
                metadata={"userId": user_id},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout failed for user {user_id}: {e}")
            raise BillingFailed(str(e)) from e
        return session.url

    def open_billing_portal(self, billing_ref: str) -> str:
        try:
            session = stripe.billing_portal.Session.create(
                customer=billing_ref,
                return_url=f"{self.app_url}/dashboard",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe portal failed for customer {billing_ref}: {e}")
            raise BillingFailed(str(e)) from e
        return session.url

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Optional[BillingEvent]:
        if not signature:
            raise InvalidWebhook("missing signature")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            raise InvalidWebhook("invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise InvalidWebhook("invalid signature") from e
        logger.info(f"Stripe webhook verified: {event['type']}")
        # translate from the verified body so we only deal in plain dicts
        raw = json.loads(payload)
        return translate_event(raw["type"], raw["data"]["object"])


class MockBillingGateway(BillingGateway):
    """Unsigned webhooks and fake URLs for development and tests."""

    def __init__(self, app_url: str = "http://localhost:3000"):
        self.app_url = app_url.rstrip("/")

    def start_checkout(self, user_id: str, email: str) -> str:
        return f"{self.app_url}/mock-checkout?user={user_id}"

    def open_billing_portal(self, billing_ref: str) -> str:
        return f"{self.app_url}/mock-portal?customer={billing_ref}"

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Optional[BillingEvent]:
        try:
            event = json.loads(payload)
            return translate_event(event["type"], event["data"]["object"])
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise InvalidWebhook("invalid payload") from e
