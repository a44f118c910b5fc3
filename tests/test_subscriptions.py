import pytest

from examprep.core.errors import StoreUnavailable
from examprep.models.records import SubscriptionStatus
from examprep.services.subscriptions import (
    BillingOutcome, CheckoutCompleted, PaymentFailed, SubscriptionCanceled,
    SubscriptionRenewed, SubscriptionStateMachine, map_raw_status,
)
from examprep.stores.memory import MemoryStore


@pytest.mark.parametrize("raw,expected", [
    ("active", SubscriptionStatus.ACTIVE),
    ("trialing", SubscriptionStatus.ACTIVE),
    ("past_due", SubscriptionStatus.PAST_DUE),
    ("canceled", SubscriptionStatus.CANCELLED),
    ("unpaid", SubscriptionStatus.CANCELLED),
    ("incomplete", SubscriptionStatus.INACTIVE),
    ("incomplete_expired", SubscriptionStatus.INACTIVE),
    ("", SubscriptionStatus.INACTIVE),
    (None, SubscriptionStatus.INACTIVE),
])
def test_map_raw_status(raw, expected):
    assert map_raw_status(raw) == expected


def test_checkout_sets_status_and_reference_in_one_call(store):
    store.create_user("u1")
    machine = SubscriptionStateMachine(store)

    outcome = machine.apply_billing_event(CheckoutCompleted(user_id="u1", billing_ref="c1"))

    user = store.get_user("u1")
    assert outcome == BillingOutcome.APPLIED
    assert user.subscription_status == SubscriptionStatus.ACTIVE
    assert user.stripe_customer_id == "c1"


def test_checkout_for_unknown_user_creates_row(store):
    outcome = SubscriptionStateMachine(store).apply_billing_event(CheckoutCompleted(user_id="new", billing_ref="c9"))
    assert outcome == BillingOutcome.APPLIED
    assert store.get_user("new").is_subscribed


def test_checkout_replay_is_unchanged(store):
    store.create_user("u1")
    machine = SubscriptionStateMachine(store)
    event = CheckoutCompleted(user_id="u1", billing_ref="c1")

    machine.apply_billing_event(event)
    assert machine.apply_billing_event(event) == BillingOutcome.UNCHANGED
    assert store.get_user("u1").subscription_status == SubscriptionStatus.ACTIVE


def test_renewed_past_due_is_idempotent(store):
    store.set_subscription("u1", SubscriptionStatus.ACTIVE, billing_ref="c1", create_missing=True)
    machine = SubscriptionStateMachine(store)
    event = SubscriptionRenewed(billing_ref="c1", raw_status="past_due")

    assert machine.apply_billing_event(event) == BillingOutcome.APPLIED
    assert store.get_user("u1").subscription_status == SubscriptionStatus.PAST_DUE
    assert machine.apply_billing_event(event) == BillingOutcome.UNCHANGED
    assert store.get_user("u1").subscription_status == SubscriptionStatus.PAST_DUE


def test_full_lifecycle(store):
    store.create_user("u1")
    machine = SubscriptionStateMachine(store)

    machine.apply_billing_event(CheckoutCompleted(user_id="u1", billing_ref="c1"))
    machine.apply_billing_event(PaymentFailed(billing_ref="c1"))
    assert store.get_user("u1").subscription_status == SubscriptionStatus.PAST_DUE

    machine.apply_billing_event(SubscriptionRenewed(billing_ref="c1", raw_status="active"))
    assert store.get_user("u1").subscription_status == SubscriptionStatus.ACTIVE

    machine.apply_billing_event(SubscriptionCanceled(billing_ref="c1"))
    assert store.get_user("u1").subscription_status == SubscriptionStatus.CANCELLED

    # re-subscribing from cancelled is a fresh activation
    assert machine.apply_billing_event(CheckoutCompleted(user_id="u1", billing_ref="c1")) == BillingOutcome.APPLIED
    assert store.get_user("u1").subscription_status == SubscriptionStatus.ACTIVE


def test_unknown_billing_reference_is_dropped(store):
    store.set_subscription("u1", SubscriptionStatus.ACTIVE, billing_ref="c1", create_missing=True)
    machine = SubscriptionStateMachine(store)

    assert machine.apply_billing_event(SubscriptionCanceled(billing_ref="nope")) == BillingOutcome.UNMATCHED
    assert machine.apply_billing_event(PaymentFailed(billing_ref="nope")) == BillingOutcome.UNMATCHED
    assert store.get_user("u1").subscription_status == SubscriptionStatus.ACTIVE


def test_checkout_without_user_id_is_unmatched(store):
    assert SubscriptionStateMachine(store).apply_billing_event(
        CheckoutCompleted(user_id="", billing_ref="c1")
    ) == BillingOutcome.UNMATCHED


def test_no_event_is_ignored(store):
    assert SubscriptionStateMachine(store).apply_billing_event(None) == BillingOutcome.IGNORED


class BrokenStore(MemoryStore):
    def set_subscription(self, *args, **kwargs):
        raise StoreUnavailable()


def test_store_failure_reaches_caller():
    store = BrokenStore()
    store.create_user("u1")
    with pytest.raises(StoreUnavailable):
        SubscriptionStateMachine(store).apply_billing_event(CheckoutCompleted(user_id="u1", billing_ref="c1"))
