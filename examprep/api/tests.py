from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from examprep.api.deps import ai_rate_limit, get_container, get_current_user_id
from examprep.core.container import Container
from examprep.models.records import Question, TestRecord
from examprep.services.lifecycle import AnswerResult, FinalizeResult, GenericSource

router = APIRouter()


class StartTest(BaseModel):
    count: Optional[int] = Field(default=None, ge=1, le=200)


class TestOut(BaseModel):
    __test__ = False

    id: str
    status: str
    questions: List[Question]
    answers: Dict[str, str]
    score: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    upload_id: Optional[str] = None


class TestSummary(BaseModel):
    id: str
    status: str
    question_count: int
    answered_count: int
    score: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    upload_id: Optional[str] = None


class AnswerSubmit(BaseModel):
    question_id: str
    choice: str


class AnswerOut(BaseModel):
    question_id: str
    choice: str
    correct: bool
    correct_answer: str
    explanation: Optional[str] = None
    answered: int
    total: int


class CompleteTest(BaseModel):
    score: int


class FinalizeOut(BaseModel):
    test_id: str
    score: int
    completed_at: datetime
    already_completed: bool
    answered: int
    correct: int


def to_test_out(test: TestRecord) -> TestOut:
    return TestOut(
        id=test.id,
        status=test.status.value,
        questions=test.questions,
        answers=test.answers,
        score=test.score,
        created_at=test.created_at,
        completed_at=test.completed_at,
        upload_id=test.upload_id,
    )


def to_finalize_out(result: FinalizeResult) -> FinalizeOut:
    return FinalizeOut(**result.__dict__)


@router.get("/entitlement")
def test_entitlement(user_id: str = Depends(get_current_user_id), container: Container = Depends(get_container)):
    return container.entitlements.can_create_test(user_id).to_dict()


@router.post("", response_model=TestOut, status_code=201)
async def start_test(
    payload: Optional[StartTest] = None,
    user_id: str = Depends(ai_rate_limit),
    container: Container = Depends(get_container),
):
    count = (payload.count if payload else None) or container.settings.GENERIC_TEST_QUESTION_COUNT
    test = await container.lifecycle.start_test(user_id, GenericSource(count=count))
    return to_test_out(test)


@router.get("", response_model=List[TestSummary])
def list_tests(
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    return [
        TestSummary(
            id=t.id,
            status=t.status.value,
            question_count=len(t.questions),
            answered_count=len(t.answers),
            score=t.score,
            created_at=t.created_at,
            completed_at=t.completed_at,
            upload_id=t.upload_id,
        )
        for t in container.lifecycle.list_tests(user_id, limit=limit, offset=offset)
    ]


@router.get("/{test_id}", response_model=TestOut)
def get_test(test_id: str, user_id: str = Depends(get_current_user_id), container: Container = Depends(get_container)):
    return to_test_out(container.lifecycle.get_test(test_id, user_id))


@router.post("/{test_id}/answers", response_model=AnswerOut)
async def submit_answer(
    test_id: str,
    payload: AnswerSubmit,
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    result: AnswerResult = await container.lifecycle.record_answer(
        test_id, user_id, payload.question_id, payload.choice
    )
    return AnswerOut(**result.__dict__)


@router.post("/{test_id}/complete", response_model=FinalizeOut)
def complete_test(
    test_id: str,
    payload: CompleteTest,
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    return to_finalize_out(container.lifecycle.complete_test(test_id, user_id, payload.score))


@router.post("/{test_id}/abandon", response_model=FinalizeOut)
def abandon_test(test_id: str, user_id: str = Depends(get_current_user_id), container: Container = Depends(get_container)):
    return to_finalize_out(container.lifecycle.abandon_test(test_id, user_id))
