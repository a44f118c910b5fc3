"""
Subscription state machine.

The only writer of a user's subscription status and billing reference. Each
event is applied idempotently so at-least-once delivery from the billing
provider is safe: a replay either rewrites the same values or is a no-op.

    inactive --checkout--> active --payment failed--> past_due
    past_due --renewed--> active          active/past_due --canceled--> cancelled
    cancelled --checkout--> active
"""
from dataclasses import dataclass
from typing import Optional, Union
import enum
import logging

from examprep.models.records import SubscriptionStatus
from examprep.stores.base import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutCompleted:
    user_id: str
    billing_ref: str


@dataclass(frozen=True)
class SubscriptionRenewed:
    billing_ref: str
    raw_status: str


@dataclass(frozen=True)
class SubscriptionCanceled:
    billing_ref: str


@dataclass(frozen=True)
class PaymentFailed:
    billing_ref: str


BillingEvent = Union[CheckoutCompleted, SubscriptionRenewed, SubscriptionCanceled, PaymentFailed]


class BillingOutcome(str, enum.Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    UNMATCHED = "unmatched"
    IGNORED = "ignored"


_RAW_STATUS = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "unpaid": SubscriptionStatus.CANCELLED,
}


def map_raw_status(raw_status: Optional[str]) -> SubscriptionStatus:
    """Billing provider status string to our status; unknown values read as inactive."""
    return _RAW_STATUS.get((raw_status or "").lower(), SubscriptionStatus.INACTIVE)


class SubscriptionStateMachine:

    def __init__(self, store: Store):
        self.store = store

    def apply_billing_event(self, event: Optional[BillingEvent]) -> BillingOutcome:
        """Apply one event. Store failures propagate as StoreUnavailable."""
        if event is None:
            return BillingOutcome.IGNORED

        if isinstance(event, CheckoutCompleted):
            return self._checkout_completed(event)
        if isinstance(event, SubscriptionRenewed):
            return self._transition(event.billing_ref, map_raw_status(event.raw_status), "subscription.updated")
        if isinstance(event, SubscriptionCanceled):
            return self._transition(event.billing_ref, SubscriptionStatus.CANCELLED, "subscription.deleted")
        if isinstance(event, PaymentFailed):
            return self._transition(event.billing_ref, SubscriptionStatus.PAST_DUE, "payment_failed")

        logger.info(f"Ignoring unsupported billing event {type(event).__name__}")
        return BillingOutcome.IGNORED

    def _checkout_completed(self, event: CheckoutCompleted) -> BillingOutcome:
        if not event.user_id:
            logger.warning(f"Checkout for customer {event.billing_ref} carried no user id")
            return BillingOutcome.UNMATCHED

        user = self.store.get_user(event.user_id)
        if (user and user.subscription_status == SubscriptionStatus.ACTIVE
                and user.stripe_customer_id == event.billing_ref):
            return BillingOutcome.UNCHANGED

        self.store.set_subscription(
            event.user_id, SubscriptionStatus.ACTIVE, billing_ref=event.billing_ref, create_missing=True
        )
        logger.info(f"Subscription activated for user {event.user_id}")
        return BillingOutcome.APPLIED

    def _transition(self, billing_ref: str, status: SubscriptionStatus, source: str) -> BillingOutcome:
        user = self.store.get_user_by_billing_ref(billing_ref)
        if user is None:
            logger.warning(f"No user for billing reference {billing_ref} ({source})")
            return BillingOutcome.UNMATCHED

        if user.subscription_status == status:
            return BillingOutcome.UNCHANGED

        self.store.set_subscription(user.id, status)
        logger.info(f"Subscription for user {user.id}: {user.subscription_status.value} -> {status.value} ({source})")
        return BillingOutcome.APPLIED
