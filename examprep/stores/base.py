"""
Durable store collaborator.

Row-level reads and writes over users, tests, performance records, uploads and
upload quotas. Implementations must make each method atomic. The only
multi-row write is finalize_test, which stores the score and the performance
records together.
"""
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Tuple

from examprep.models.records import (
    PerformanceRecord, Preferences, SubscriptionStatus, TestRecord,
    UploadQuotaRecord, UploadRecord, UserRecord,
)


class Store(ABC):

    # ---- users ----

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    @abstractmethod
    def get_user_by_billing_ref(self, billing_ref: str) -> Optional[UserRecord]:
        ...

    @abstractmethod
    def create_user(self, user_id: str, email: str = "", name: str = "") -> Tuple[UserRecord, bool]:
        """Insert a user unless one exists. Returns (user, created)."""

    @abstractmethod
    def set_subscription(
        self,
        user_id: str,
        status: SubscriptionStatus,
        billing_ref: Optional[str] = None,
        create_missing: bool = False,
    ) -> Optional[UserRecord]:
        """Write status (and billing reference when given) in one statement.

        Returns None when the user does not exist and ``create_missing`` is off.
        """

    @abstractmethod
    def update_profile(
        self,
        user_id: str,
        name: Optional[str] = None,
        preferences: Optional[Preferences] = None,
    ) -> Optional[UserRecord]:
        ...

    # ---- tests ----

    @abstractmethod
    def count_tests(self, user_id: str) -> int:
        ...

    @abstractmethod
    def insert_test(self, test: TestRecord) -> TestRecord:
        ...

    @abstractmethod
    def get_test(self, test_id: str, user_id: Optional[str] = None) -> Optional[TestRecord]:
        """Fetch a test, filtered by owner when ``user_id`` is given."""

    @abstractmethod
    def list_tests(
        self,
        user_id: str,
        limit: int = 10,
        offset: int = 0,
        completed_only: bool = False,
    ) -> List[TestRecord]:
        """Newest first."""

    @abstractmethod
    def set_answer(self, test_id: str, question_id: str, choice: str) -> Optional[TestRecord]:
        """Merge one answer into an unfinished test.

        Returns the updated test, or None if the test was completed meanwhile.
        """

    @abstractmethod
    def finalize_test(
        self,
        test_id: str,
        score: int,
        completed_at: datetime,
        records: Iterable[PerformanceRecord] = (),
    ) -> bool:
        """Set score and completed_at together, only if the test is not completed.

        The performance records are written in the same transaction, and only
        when this call wins. Returns False when another call already finalized it.
        """

    # ---- performance ----

    @abstractmethod
    def add_performance(self, records: Iterable[PerformanceRecord]) -> None:
        ...

    @abstractmethod
    def list_performance(self, user_id: str) -> List[PerformanceRecord]:
        ...

    # ---- uploads ----

    @abstractmethod
    def insert_upload(self, upload: UploadRecord) -> UploadRecord:
        ...

    @abstractmethod
    def get_upload(self, upload_id: str, user_id: str) -> Optional[UploadRecord]:
        ...

    @abstractmethod
    def list_uploads(self, user_id: str, limit: int = 50, offset: int = 0) -> Tuple[List[UploadRecord], int]:
        """Newest first, with the total count."""

    @abstractmethod
    def delete_upload(self, upload_id: str, user_id: str) -> bool:
        ...

    @abstractmethod
    def list_expired_uploads(self, before: datetime, limit: int = 500) -> List[UploadRecord]:
        """Uploads past their expiry whose owner has no active subscription."""

    @abstractmethod
    def get_upload_quota(self, user_id: str) -> Optional[UploadQuotaRecord]:
        ...

    @abstractmethod
    def increment_free_uploads(self, user_id: str, today: date) -> UploadQuotaRecord:
        """Create the quota row if missing, then add one to free_uploads_used."""

    # ---- admin ----

    @abstractmethod
    def count_users(self, status: Optional[SubscriptionStatus] = None) -> int:
        ...

    @abstractmethod
    def count_all_tests(self) -> int:
        ...

    @abstractmethod
    def list_users(
        self,
        limit: int = 50,
        offset: int = 0,
        status: Optional[SubscriptionStatus] = None,
    ) -> Tuple[List[UserRecord], int]:
        """Newest first, optionally filtered by subscription status, with the total count."""

    # ---- lifecycle ----

    def close(self) -> None:
        pass


def merge_answers(answers: Dict[str, str], question_id: str, choice: str) -> Dict[str, str]:
    merged = dict(answers or {})
    merged[question_id] = choice
    return merged
