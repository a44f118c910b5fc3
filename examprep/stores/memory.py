"""
Dictionary-backed store for local runs and tests.
"""
from copy import deepcopy
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Tuple
import threading

from examprep.models.base import utcnow
from examprep.models.records import (
    PerformanceRecord, Preferences, SubscriptionStatus, TestRecord,
    UploadQuotaRecord, UploadRecord, UserRecord,
)
from examprep.stores.base import Store, merge_answers


class MemoryStore(Store):
    """Same contract as the SQL store; every method holds one lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._users: Dict[str, UserRecord] = {}
        self._tests: Dict[str, TestRecord] = {}
        self._performance: List[PerformanceRecord] = []
        self._uploads: Dict[str, UploadRecord] = {}
        self._quotas: Dict[str, UploadQuotaRecord] = {}
        self._next_performance_id = 1

    # ---- users ----

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            user = self._users.get(user_id)
            return deepcopy(user) if user else None

    def get_user_by_billing_ref(self, billing_ref: str) -> Optional[UserRecord]:
        with self._lock:
            for user in self._users.values():
                if user.stripe_customer_id == billing_ref:
                    return deepcopy(user)
            return None

    def create_user(self, user_id: str, email: str = "", name: str = "") -> Tuple[UserRecord, bool]:
        with self._lock:
            existing = self._users.get(user_id)
            if existing:
                return deepcopy(existing), False
            now = utcnow()
            user = UserRecord(id=user_id, email=email, name=name, created_at=now, updated_at=now)
            self._users[user_id] = user
            return deepcopy(user), True

    def set_subscription(
        self,
        user_id: str,
        status: SubscriptionStatus,
        billing_ref: Optional[str] = None,
        create_missing: bool = False,
    ) -> Optional[UserRecord]:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                if not create_missing:
                    return None
                user = UserRecord(id=user_id, created_at=utcnow())
                self._users[user_id] = user
            user.subscription_status = status
            if billing_ref is not None:
                user.stripe_customer_id = billing_ref
            user.updated_at = utcnow()
            return deepcopy(user)

    def update_profile(
        self,
        user_id: str,
        name: Optional[str] = None,
        preferences: Optional[Preferences] = None,
    ) -> Optional[UserRecord]:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            if name is not None:
                user.name = name
            if preferences is not None:
                user.preferences = preferences.model_copy()
            user.updated_at = utcnow()
            return deepcopy(user)

    # ---- tests ----

    def count_tests(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for t in self._tests.values() if t.user_id == user_id)

    def insert_test(self, test: TestRecord) -> TestRecord:
        with self._lock:
            stored = deepcopy(test)
            if stored.created_at is None:
                stored.created_at = utcnow()
            self._tests[stored.id] = stored
            return deepcopy(stored)

    def get_test(self, test_id: str, user_id: Optional[str] = None) -> Optional[TestRecord]:
        with self._lock:
            test = self._tests.get(test_id)
            if test is None or (user_id is not None and test.user_id != user_id):
                return None
            return deepcopy(test)

    def list_tests(
        self,
        user_id: str,
        limit: int = 10,
        offset: int = 0,
        completed_only: bool = False,
    ) -> List[TestRecord]:
        with self._lock:
            tests = [
                t for t in self._tests.values()
                if t.user_id == user_id and (not completed_only or t.is_completed)
            ]
            tests.sort(key=lambda t: (t.created_at, t.id), reverse=True)
            return [deepcopy(t) for t in tests[offset:offset + limit]]

    def set_answer(self, test_id: str, question_id: str, choice: str) -> Optional[TestRecord]:
        with self._lock:
            test = self._tests.get(test_id)
            if test is None or test.is_completed:
                return None
            test.answers = merge_answers(test.answers, question_id, choice)
            return deepcopy(test)

    def finalize_test(
        self,
        test_id: str,
        score: int,
        completed_at: datetime,
        records: Iterable[PerformanceRecord] = (),
    ) -> bool:
        with self._lock:
            test = self._tests.get(test_id)
            if test is None or test.is_completed:
                return False
            test.score = score
            test.completed_at = completed_at
            self._append_performance(records)
            return True

    # ---- performance ----

    def add_performance(self, records: Iterable[PerformanceRecord]) -> None:
        with self._lock:
            self._append_performance(records)

    def _append_performance(self, records: Iterable[PerformanceRecord]) -> None:
        for record in records:
            stored = deepcopy(record)
            stored.id = self._next_performance_id
            self._next_performance_id += 1
            self._performance.append(stored)

    def list_performance(self, user_id: str) -> List[PerformanceRecord]:
        with self._lock:
            return [deepcopy(r) for r in self._performance if r.user_id == user_id]

    # ---- uploads ----

    def insert_upload(self, upload: UploadRecord) -> UploadRecord:
        with self._lock:
            stored = deepcopy(upload)
            if stored.created_at is None:
                stored.created_at = utcnow()
            self._uploads[stored.id] = stored
            return deepcopy(stored)

    def get_upload(self, upload_id: str, user_id: str) -> Optional[UploadRecord]:
        with self._lock:
            upload = self._uploads.get(upload_id)
            if upload is None or upload.user_id != user_id:
                return None
            return deepcopy(upload)

    def list_uploads(self, user_id: str, limit: int = 50, offset: int = 0) -> Tuple[List[UploadRecord], int]:
        with self._lock:
            uploads = [u for u in self._uploads.values() if u.user_id == user_id]
            uploads.sort(key=lambda u: (u.created_at, u.id), reverse=True)
            return [deepcopy(u) for u in uploads[offset:offset + limit]], len(uploads)

    def delete_upload(self, upload_id: str, user_id: str) -> bool:
        with self._lock:
            upload = self._uploads.get(upload_id)
            if upload is None or upload.user_id != user_id:
                return False
            del self._uploads[upload_id]
            for test in self._tests.values():
                if test.upload_id == upload_id:
                    test.upload_id = None
            return True

    def list_expired_uploads(self, before: datetime, limit: int = 500) -> List[UploadRecord]:
        with self._lock:
            expired = [
                u for u in self._uploads.values()
                if u.expires_at is not None and u.expires_at < before
                and not (u.user_id in self._users and self._users[u.user_id].is_subscribed)
            ]
            expired.sort(key=lambda u: u.expires_at)
            return [deepcopy(u) for u in expired[:limit]]

    def get_upload_quota(self, user_id: str) -> Optional[UploadQuotaRecord]:
        with self._lock:
            quota = self._quotas.get(user_id)
            return deepcopy(quota) if quota else None

    def increment_free_uploads(self, user_id: str, today: date) -> UploadQuotaRecord:
        with self._lock:
            quota = self._quotas.get(user_id)
            if quota is None:
                quota = UploadQuotaRecord(user_id=user_id, free_uploads_used=0, last_reset_date=today)
                self._quotas[user_id] = quota
            quota.free_uploads_used += 1
            return deepcopy(quota)

    # ---- admin ----

    def count_users(self, status: Optional[SubscriptionStatus] = None) -> int:
        with self._lock:
            return sum(1 for u in self._users.values() if status is None or u.subscription_status == status)

    def count_all_tests(self) -> int:
        with self._lock:
            return len(self._tests)

    def list_users(
        self,
        limit: int = 50,
        offset: int = 0,
        status: Optional[SubscriptionStatus] = None,
    ) -> Tuple[List[UserRecord], int]:
        with self._lock:
            users = [u for u in self._users.values() if status is None or u.subscription_status == status]
            users.sort(key=lambda u: (u.created_at, u.id), reverse=True)
            return [deepcopy(u) for u in users[offset:offset + limit]], len(users)
