import datetime as dt
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger, Integer, String, Text, Date, DateTime, ForeignKey, JSON,
    CheckConstraint, Index, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from examprep.models.base import Base, TimestampMixin, ReprMixin, utcnow


class User(Base, TimestampMixin, ReprMixin):
    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_stripe_customer", "stripe_customer_id"),
        CheckConstraint(
            "subscription_status IN ('inactive', 'active', 'past_due', 'cancelled')",
            name="ck_users_subscription_status",
        ),
    )

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    subscription_status: Mapped[str] = mapped_column(String(20), default="inactive", nullable=False)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    preferences: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)


class Test(Base, ReprMixin):
    __tablename__ = "tests"
    __test__ = False
    __table_args__ = (
        Index("idx_tests_user", "user_id"),
        Index("idx_tests_user_completed", "user_id", "completed_at"),
        CheckConstraint(
            "(score IS NULL AND completed_at IS NULL) OR (score IS NOT NULL AND completed_at IS NOT NULL)",
            name="ck_tests_score_completed_together",
        ),
        CheckConstraint("score IS NULL OR (score >= 0 AND score <= 100)", name="ck_tests_score_range"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), ForeignKey("users.id"), nullable=False)
    upload_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("uploads.id", ondelete="SET NULL"), nullable=True
    )
    questions: Mapped[list] = mapped_column(JSON, nullable=False)
    answers: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Performance(Base, ReprMixin):
    __tablename__ = "performance"
    __table_args__ = (
        Index("idx_performance_user", "user_id"),
        Index("idx_performance_user_category", "user_id", "category"),
        CheckConstraint("correct_answers >= 0 AND correct_answers <= total_questions", name="ck_performance_counts"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), ForeignKey("users.id"), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    correct_answers: Mapped[int] = mapped_column(Integer, nullable=False)
    total_questions: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)


class Upload(Base, ReprMixin):
    __tablename__ = "uploads"
    __table_args__ = (
        Index("idx_uploads_user", "user_id"),
        Index("idx_uploads_expires", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), ForeignKey("users.id"), nullable=False)
    filename: Mapped[str] = mapped_column(String(500), nullable=False)
    file_path: Mapped[str] = mapped_column(String(1000), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    extracted_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="processing", nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class UserUploadQuota(Base, ReprMixin):
    __tablename__ = "user_uploads"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_user_uploads_user"),
    )

    user_id: Mapped[str] = mapped_column(String(255), ForeignKey("users.id"), primary_key=True)
    free_uploads_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_reset_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
