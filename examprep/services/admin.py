"""
Operator views: platform totals, the user list and the subscriber list.

Access is limited to callers whose stored email is in ADMIN_EMAILS.
"""
from dataclasses import asdict, dataclass
from typing import Iterable, List, Optional, Tuple
import logging

from examprep.core.errors import Forbidden
from examprep.models.records import SubscriptionStatus, UserRecord
from examprep.services.scoring import round_half_up
from examprep.stores.base import Store

logger = logging.getLogger(__name__)


@dataclass
class PlatformStats:
    total_users: int
    active_subscribers: int
    free_users: int
    total_tests: int
    monthly_revenue: int
    conversion_rate: int  # percent of users on an active subscription

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class UserOverview:
    user: UserRecord
    test_count: int


@dataclass
class SubscriberOverview:
    subscribers: List[UserRecord]
    total: int
    cancelled: int
    monthly_revenue: int


class AdminService:

    def __init__(self, store: Store, admin_emails: Iterable[str] = (), monthly_price: int = 35):
        self.store = store
        self.admin_emails = {e.strip().lower() for e in admin_emails if e and e.strip()}
        self.monthly_price = monthly_price

    def is_admin(self, email: Optional[str]) -> bool:
        return bool(email) and email.strip().lower() in self.admin_emails

    def require_admin(self, user_id: str) -> UserRecord:
        user = self.store.get_user(user_id)
        if user is None or not self.is_admin(user.email):
            logger.warning(f"Admin access refused for user {user_id}")
            raise Forbidden("Admin access required")
        return user

    def stats(self) -> PlatformStats:
        total = self.store.count_users()
        active = self.store.count_users(SubscriptionStatus.ACTIVE)
        conversion = int(round_half_up(active / total * 100)) if total else 0
        return PlatformStats(
            total_users=total,
            active_subscribers=active,
            free_users=total - active,
            total_tests=self.store.count_all_tests(),
            monthly_revenue=active * self.monthly_price,
            conversion_rate=conversion,
        )

    def list_users(self, limit: int = 50, offset: int = 0) -> Tuple[List[UserOverview], int]:
        users, total = self.store.list_users(limit=limit, offset=offset)
        return [UserOverview(user=u, test_count=self.store.count_tests(u.id)) for u in users], total

    def list_subscribers(self, limit: int = 50, offset: int = 0) -> SubscriberOverview:
        subscribers, total = self.store.list_users(limit=limit, offset=offset, status=SubscriptionStatus.ACTIVE)
        return SubscriberOverview(
            subscribers=subscribers,
            total=total,
            cancelled=self.store.count_users(SubscriptionStatus.CANCELLED),
            monthly_revenue=total * self.monthly_price,
        )
