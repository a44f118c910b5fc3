"""
Domain records exchanged between the stores and the services.

Stores hand these out instead of ORM rows so the in-memory store and the SQL
store are interchangeable behind the same interface.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional
import enum

from pydantic import BaseModel, Field, field_validator

CHOICE_LETTERS = ("A", "B", "C", "D")


class SubscriptionStatus(str, enum.Enum):
    """Subscription status."""
    INACTIVE = "inactive"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class Category(str, enum.Enum):
    """Closed set of subject-matter tags carried by every question."""
    SAFE_AND_EFFECTIVE_CARE = "Safe and Effective Care Environment"
    HEALTH_PROMOTION = "Health Promotion and Maintenance"
    PSYCHOSOCIAL_INTEGRITY = "Psychosocial Integrity"
    PHYSIOLOGICAL_INTEGRITY = "Physiological Integrity"


# Target share of generated questions per category. Generators aim for it,
# the engine does not enforce it.
CATEGORY_DISTRIBUTION: Dict[Category, float] = {
    Category.SAFE_AND_EFFECTIVE_CARE: 0.25,
    Category.HEALTH_PROMOTION: 0.15,
    Category.PSYCHOSOCIAL_INTEGRITY: 0.10,
    Category.PHYSIOLOGICAL_INTEGRITY: 0.50,
}


class TestStatus(str, enum.Enum):
    __test__ = False

    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class UploadStatus(str, enum.Enum):
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class Question(BaseModel):
    """A generated multiple-choice question. Opaque beyond id/category/correct_answer."""

    id: str
    category: Category
    scenario: str = ""
    question: str
    choices: Dict[str, str]
    correct_answer: str = Field(pattern=r"^[ABCD]$")
    rationale: Dict[str, str] = Field(default_factory=dict)

    @field_validator("correct_answer", mode="before")
    @classmethod
    def upper_letter(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class Preferences(BaseModel):
    timer_enabled: bool = True
    show_rationales_immediately: bool = True


@dataclass
class UserRecord:
    id: str
    email: str = ""
    name: str = ""
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    stripe_customer_id: Optional[str] = None
    preferences: Preferences = field(default_factory=Preferences)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_subscribed(self) -> bool:
        return self.subscription_status == SubscriptionStatus.ACTIVE


@dataclass
class TestRecord:
    __test__ = False

    id: str
    user_id: str
    questions: List[Question]
    answers: Dict[str, str] = field(default_factory=dict)
    score: Optional[int] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    upload_id: Optional[str] = None

    @property
    def status(self) -> TestStatus:
        if self.completed_at is not None:
            return TestStatus.COMPLETED
        if self.answers:
            return TestStatus.IN_PROGRESS
        return TestStatus.CREATED

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def question(self, question_id: str) -> Optional[Question]:
        for q in self.questions:
            if q.id == question_id:
                return q
        return None


@dataclass
class PerformanceRecord:
    user_id: str
    category: Category
    correct_answers: int
    total_questions: int
    date: date
    id: Optional[int] = None


@dataclass
class UploadRecord:
    id: str
    user_id: str
    filename: str
    file_path: str
    file_size: int
    extracted_content: Optional[str] = None
    status: UploadStatus = UploadStatus.PROCESSING
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


@dataclass
class UploadQuotaRecord:
    user_id: str
    free_uploads_used: int = 0
    last_reset_date: Optional[date] = None
