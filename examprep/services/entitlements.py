"""
Entitlement resolution: who may create another test or upload another file.

Checks are read-only. The upload counter is advanced separately by
``record_upload`` once an upload has actually succeeded.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Union
import logging

from examprep.models.base import utcnow
from examprep.models.records import SubscriptionStatus, UploadQuotaRecord
from examprep.stores.base import Store

logger = logging.getLogger(__name__)

UNLIMITED = "unlimited"


@dataclass
class QuotaCheck:
    allowed: bool
    used: int
    limit: Union[int, str]
    is_subscribed: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "allowed": self.allowed,
            "used": self.used,
            "limit": self.limit,
            "is_subscribed": self.is_subscribed,
        }
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class EntitlementSnapshot:
    is_subscribed: bool
    status: SubscriptionStatus
    tests_used: int
    tests_limit: Union[int, str]
    uploads_used: int
    uploads_limit: Union[int, str]
    stripe_customer_id: Optional[str] = None
    plan: str = field(init=False)

    def __post_init__(self):
        self.plan = "pro" if self.is_subscribed else "free"

    def to_dict(self) -> dict:
        return {
            "is_subscribed": self.is_subscribed,
            "status": self.status.value,
            "plan": self.plan,
            "tests_used": self.tests_used,
            "tests_limit": self.tests_limit,
            "uploads_used": self.uploads_used,
            "uploads_limit": self.uploads_limit,
            "stripe_customer_id": self.stripe_customer_id,
        }


class EntitlementResolver:

    def __init__(self, store: Store, free_test_limit: int = 2, free_upload_limit: int = 5,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.free_test_limit = free_test_limit
        self.free_upload_limit = free_upload_limit
        self.clock = clock

    def _is_subscribed(self, user_id: str) -> bool:
        user = self.store.get_user(user_id)
        return bool(user and user.is_subscribed)

    def can_create_test(self, user_id: str) -> QuotaCheck:
        used = self.store.count_tests(user_id)
        if self._is_subscribed(user_id):
            return QuotaCheck(allowed=True, used=used, limit=UNLIMITED, is_subscribed=True)

        allowed = used < self.free_test_limit
        reason = None
        if not allowed:
            reason = (
                f"Free tier limit reached. You've used {used}/{self.free_test_limit} tests. "
                f"Upgrade to Pro for unlimited tests."
            )
        return QuotaCheck(allowed=allowed, used=used, limit=self.free_test_limit, is_subscribed=False, reason=reason)

    def _uploads_used(self, user_id: str) -> int:
        quota: Optional[UploadQuotaRecord] = self.store.get_upload_quota(user_id)
        return quota.free_uploads_used if quota else 0

    def can_upload_file(self, user_id: str) -> QuotaCheck:
        if self._is_subscribed(user_id):
            return QuotaCheck(allowed=True, used=self._uploads_used(user_id), limit=UNLIMITED, is_subscribed=True)

        used = self._uploads_used(user_id)
        allowed = used < self.free_upload_limit
        reason = None
        if not allowed:
            reason = (
                f"Free tier upload limit reached. You've used {used}/{self.free_upload_limit} uploads. "
                f"Upgrade to Pro for unlimited uploads."
            )
        return QuotaCheck(allowed=allowed, used=used, limit=self.free_upload_limit, is_subscribed=False, reason=reason)

    def record_upload(self, user_id: str) -> None:
        """Count one successful upload against the free allotment of a non-subscriber."""
        if self._is_subscribed(user_id):
            return
        quota = self.store.increment_free_uploads(user_id, self.clock().date())
        logger.info(f"User {user_id} has used {quota.free_uploads_used}/{self.free_upload_limit} free uploads")

    def snapshot(self, user_id: str) -> EntitlementSnapshot:
        user = self.store.get_user(user_id)
        subscribed = bool(user and user.is_subscribed)
        return EntitlementSnapshot(
            is_subscribed=subscribed,
            status=user.subscription_status if user else SubscriptionStatus.INACTIVE,
            tests_used=self.store.count_tests(user_id),
            tests_limit=UNLIMITED if subscribed else self.free_test_limit,
            uploads_used=self._uploads_used(user_id),
            uploads_limit=UNLIMITED if subscribed else self.free_upload_limit,
            stripe_customer_id=user.stripe_customer_id if user else None,
        )
