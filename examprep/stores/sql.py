"""
SQLAlchemy-backed store.

Each public method runs in its own session/transaction. Driver errors surface
as StoreUnavailable; callers never see SQLAlchemy exceptions.
"""
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Iterable, Iterator, List, Optional, Tuple
import logging

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from examprep.core.errors import StoreUnavailable
from examprep.models.base import utcnow
from examprep.models.orm import Performance, Test, Upload, User, UserUploadQuota
from examprep.models.records import (
    Category, PerformanceRecord, Preferences, Question, SubscriptionStatus,
    TestRecord, UploadQuotaRecord, UploadRecord, UploadStatus, UserRecord,
)
from examprep.stores.base import Store, merge_answers

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we write is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _user(row: User) -> UserRecord:
    return UserRecord(
        id=row.id,
        email=row.email or "",
        name=row.name or "",
        subscription_status=SubscriptionStatus(row.subscription_status),
        stripe_customer_id=row.stripe_customer_id,
        preferences=Preferences.model_validate(row.preferences or {}),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _test(row: Test) -> TestRecord:
    return TestRecord(
        id=row.id,
        user_id=row.user_id,
        questions=[Question.model_validate(q) for q in row.questions or []],
        answers=dict(row.answers or {}),
        score=row.score,
        completed_at=_aware(row.completed_at),
        created_at=_aware(row.created_at),
        upload_id=row.upload_id,
    )


def _upload(row: Upload) -> UploadRecord:
    return UploadRecord(
        id=row.id,
        user_id=row.user_id,
        filename=row.filename,
        file_path=row.file_path,
        file_size=row.file_size,
        extracted_content=row.extracted_content,
        status=UploadStatus(row.status),
        error_message=row.error_message,
        created_at=_aware(row.created_at),
        expires_at=_aware(row.expires_at),
    )


def _performance_rows(records: Iterable[PerformanceRecord]) -> List[Performance]:
    return [
        Performance(
            user_id=r.user_id,
            category=Category(r.category).value,
            correct_answers=r.correct_answers,
            total_questions=r.total_questions,
            date=r.date,
        )
        for r in records
    ]


def _quota(row: UserUploadQuota) -> UploadQuotaRecord:
    return UploadQuotaRecord(
        user_id=row.user_id,
        free_uploads_used=row.free_uploads_used,
        last_reset_date=row.last_reset_date,
    )


class SqlStore(Store):

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(f"Store operation failed: {exc}")
            raise StoreUnavailable() from exc
        finally:
            session.close()

    # ---- users ----

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._session() as session:
            row = session.get(User, user_id)
            return _user(row) if row else None

    def get_user_by_billing_ref(self, billing_ref: str) -> Optional[UserRecord]:
        with self._session() as session:
            row = session.scalar(select(User).where(User.stripe_customer_id == billing_ref).limit(1))
            return _user(row) if row else None

    def create_user(self, user_id: str, email: str = "", name: str = "") -> Tuple[UserRecord, bool]:
        with self._session() as session:
            row = session.get(User, user_id)
            if row:
                return _user(row), False
            row = User(id=user_id, email=email, name=name, subscription_status=SubscriptionStatus.INACTIVE.value,
                       preferences=Preferences().model_dump())
            session.add(row)
            try:
                session.flush()
            except IntegrityError:
                # concurrent insert of the same id
                session.rollback()
                row = session.get(User, user_id)
                if row is None:
                    raise
                return _user(row), False
            return _user(row), True

    def set_subscription(
        self,
        user_id: str,
        status: SubscriptionStatus,
        billing_ref: Optional[str] = None,
        create_missing: bool = False,
    ) -> Optional[UserRecord]:
        with self._session() as session:
            row = session.get(User, user_id, with_for_update=True)
            if row is None:
                if not create_missing:
                    return None
                row = User(id=user_id, email="", name="", preferences=Preferences().model_dump())
                session.add(row)
            row.subscription_status = status.value
            if billing_ref is not None:
                row.stripe_customer_id = billing_ref
            row.updated_at = utcnow()
            session.flush()
            return _user(row)

    def update_profile(
        self,
        user_id: str,
        name: Optional[str] = None,
        preferences: Optional[Preferences] = None,
    ) -> Optional[UserRecord]:
        with self._session() as session:
            row = session.get(User, user_id, with_for_update=True)
            if row is None:
                return None
            if name is not None:
                row.name = name
            if preferences is not None:
                row.preferences = preferences.model_dump()
            row.updated_at = utcnow()
            session.flush()
            return _user(row)

    # ---- tests ----

    def count_tests(self, user_id: str) -> int:
        with self._session() as session:
            return session.scalar(select(func.count()).select_from(Test).where(Test.user_id == user_id)) or 0

    def insert_test(self, test: TestRecord) -> TestRecord:
        with self._session() as session:
            row = Test(
                id=test.id,
                user_id=test.user_id,
                upload_id=test.upload_id,
                questions=[q.model_dump(mode="json") for q in test.questions],
                answers=dict(test.answers),
                score=test.score,
                completed_at=test.completed_at,
                created_at=test.created_at or utcnow(),
            )
            session.add(row)
            session.flush()
            return _test(row)

    def get_test(self, test_id: str, user_id: Optional[str] = None) -> Optional[TestRecord]:
        with self._session() as session:
            stmt = select(Test).where(Test.id == test_id)
            if user_id is not None:
                stmt = stmt.where(Test.user_id == user_id)
            row = session.scalar(stmt)
            return _test(row) if row else None

    def list_tests(
        self,
        user_id: str,
        limit: int = 10,
        offset: int = 0,
        completed_only: bool = False,
    ) -> List[TestRecord]:
        with self._session() as session:
            stmt = select(Test).where(Test.user_id == user_id)
            if completed_only:
                stmt = stmt.where(Test.completed_at.is_not(None))
            stmt = stmt.order_by(Test.created_at.desc(), Test.id.desc()).limit(limit).offset(offset)
            return [_test(row) for row in session.scalars(stmt)]

    def set_answer(self, test_id: str, question_id: str, choice: str) -> Optional[TestRecord]:
        with self._session() as session:
            row = session.scalar(select(Test).where(Test.id == test_id).with_for_update())
            if row is None or row.completed_at is not None:
                return None
            # reassign so the JSON column is flagged dirty
            row.answers = merge_answers(row.answers, question_id, choice)
            session.flush()
            return _test(row)

    def finalize_test(
        self,
        test_id: str,
        score: int,
        completed_at: datetime,
        records: Iterable[PerformanceRecord] = (),
    ) -> bool:
        with self._session() as session:
            result = session.execute(
                update(Test)
                .where(Test.id == test_id, Test.completed_at.is_(None))
                .values(score=score, completed_at=completed_at)
            )
            if result.rowcount != 1:
                return False
            session.add_all(_performance_rows(records))
            return True

    # ---- performance ----

    def add_performance(self, records: Iterable[PerformanceRecord]) -> None:
        with self._session() as session:
            session.add_all(_performance_rows(records))

    def list_performance(self, user_id: str) -> List[PerformanceRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(Performance).where(Performance.user_id == user_id).order_by(Performance.id)
            )
            return [
                PerformanceRecord(
                    id=row.id,
                    user_id=row.user_id,
                    category=Category(row.category),
                    correct_answers=row.correct_answers,
                    total_questions=row.total_questions,
                    date=row.date,
                )
                for row in rows
            ]

    # ---- uploads ----

    def insert_upload(self, upload: UploadRecord) -> UploadRecord:
        with self._session() as session:
            row = Upload(
                id=upload.id,
                user_id=upload.user_id,
                filename=upload.filename,
                file_path=upload.file_path,
                file_size=upload.file_size,
                extracted_content=upload.extracted_content,
                status=upload.status.value,
                error_message=upload.error_message,
                created_at=upload.created_at or utcnow(),
                expires_at=upload.expires_at,
            )
            session.add(row)
            session.flush()
            return _upload(row)

    def get_upload(self, upload_id: str, user_id: str) -> Optional[UploadRecord]:
        with self._session() as session:
            row = session.scalar(select(Upload).where(Upload.id == upload_id, Upload.user_id == user_id))
            return _upload(row) if row else None

    def list_uploads(self, user_id: str, limit: int = 50, offset: int = 0) -> Tuple[List[UploadRecord], int]:
        with self._session() as session:
            total = session.scalar(select(func.count()).select_from(Upload).where(Upload.user_id == user_id)) or 0
            rows = session.scalars(
                select(Upload)
                .where(Upload.user_id == user_id)
                .order_by(Upload.created_at.desc(), Upload.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return [_upload(row) for row in rows], total

    def delete_upload(self, upload_id: str, user_id: str) -> bool:
        with self._session() as session:
            row = session.scalar(select(Upload).where(Upload.id == upload_id, Upload.user_id == user_id))
            if row is None:
                return False
            session.execute(update(Test).where(Test.upload_id == upload_id).values(upload_id=None))
            session.delete(row)
            return True

    def list_expired_uploads(self, before: datetime, limit: int = 500) -> List[UploadRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(Upload)
                .outerjoin(User, User.id == Upload.user_id)
                .where(
                    Upload.expires_at < before,
                    or_(User.id.is_(None), User.subscription_status != SubscriptionStatus.ACTIVE.value),
                )
                .order_by(Upload.expires_at)
                .limit(limit)
            )
            return [_upload(row) for row in rows]

    def get_upload_quota(self, user_id: str) -> Optional[UploadQuotaRecord]:
        with self._session() as session:
            row = session.get(UserUploadQuota, user_id)
            return _quota(row) if row else None

    def increment_free_uploads(self, user_id: str, today: date) -> UploadQuotaRecord:
        with self._session() as session:
            row = session.get(UserUploadQuota, user_id, with_for_update=True)
            if row is None:
                row = UserUploadQuota(user_id=user_id, free_uploads_used=1, last_reset_date=today)
                session.add(row)
                try:
                    session.flush()
                except IntegrityError:
                    # another first upload created the row; count on top of it
                    session.rollback()
                    row = session.get(UserUploadQuota, user_id, with_for_update=True)
                    if row is None:
                        raise
                    row.free_uploads_used = UserUploadQuota.free_uploads_used + 1
            else:
                row.free_uploads_used = UserUploadQuota.free_uploads_used + 1
            session.flush()
            session.refresh(row)
            return _quota(row)

    # ---- admin ----

    def count_users(self, status: Optional[SubscriptionStatus] = None) -> int:
        with self._session() as session:
            stmt = select(func.count()).select_from(User)
            if status is not None:
                stmt = stmt.where(User.subscription_status == SubscriptionStatus(status).value)
            return session.scalar(stmt) or 0

    def count_all_tests(self) -> int:
        with self._session() as session:
            return session.scalar(select(func.count()).select_from(Test)) or 0

    def list_users(
        self,
        limit: int = 50,
        offset: int = 0,
        status: Optional[SubscriptionStatus] = None,
    ) -> Tuple[List[UserRecord], int]:
        with self._session() as session:
            stmt = select(User)
            count = select(func.count()).select_from(User)
            if status is not None:
                stmt = stmt.where(User.subscription_status == SubscriptionStatus(status).value)
                count = count.where(User.subscription_status == SubscriptionStatus(status).value)
            rows = session.scalars(
                stmt.order_by(User.created_at.desc(), User.id.desc()).limit(limit).offset(offset)
            ).all()
            return [_user(r) for r in rows], session.scalar(count) or 0

    def close(self) -> None:
        bind = self._session_factory.kw.get("bind")
        if bind is not None:
            bind.dispose()
