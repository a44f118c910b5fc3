"""
Test lifecycle: start, answer, complete or abandon.

    created --answer--> in_progress --complete/abandon--> completed

Completion and abandonment share one finalize routine. The store's finalize
write only succeeds while ``completed_at`` is still null, so a test is scored
exactly once even under concurrent or repeated calls. The performance records
are written by that same store call.

The async entry points run store calls in worker threads via
``asyncio.to_thread`` so a blocking database never stalls the event loop.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Union
from uuid import uuid4
import asyncio
import logging

from examprep.core.errors import (
    AlreadyCompleted, GenerationFailed, NotFound, QuotaExceeded, TestNotFound, ValidationFailed,
)
from examprep.models.base import utcnow
from examprep.models.records import (
    CHOICE_LETTERS, PerformanceRecord, Question, TestRecord, UploadStatus,
)
from examprep.services.content import ContentGenerator
from examprep.services.entitlements import EntitlementResolver
from examprep.services.scoring import category_breakdown, is_correct, percent_correct
from examprep.stores.base import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenericSource:
    count: int = 100


@dataclass(frozen=True)
class UploadSource:
    upload_id: str
    count: int = 20


QuestionSource = Union[GenericSource, UploadSource]


@dataclass
class AnswerResult:
    question_id: str
    choice: str
    correct: bool
    correct_answer: str
    explanation: Optional[str]
    answered: int
    total: int


@dataclass
class FinalizeResult:
    test_id: str
    score: int
    completed_at: datetime
    already_completed: bool = False
    answered: int = 0
    correct: int = 0


class TestLifecycleManager:
    __test__ = False

    def __init__(
        self,
        store: Store,
        entitlements: EntitlementResolver,
        generator: ContentGenerator,
        generation_timeout: float = 120.0,
        explanation_timeout: float = 30.0,
        max_upload_questions: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.entitlements = entitlements
        self.generator = generator
        self.generation_timeout = generation_timeout
        self.explanation_timeout = explanation_timeout
        self.max_upload_questions = max_upload_questions
        self.clock = clock

    # ---- start ----

    async def start_test(self, user_id: str, source: QuestionSource) -> TestRecord:
        check = await asyncio.to_thread(self.entitlements.can_create_test, user_id)
        if not check.allowed:
            raise QuotaExceeded("tests", check.used, check.limit, check.reason)

        source_text, upload_id = await asyncio.to_thread(self._resolve_source, user_id, source)
        questions = await self._generate(source_text, source.count)

        test = await asyncio.to_thread(self._insert_test, user_id, questions, upload_id)
        logger.info(f"Started test {test.id} for user {user_id} with {len(questions)} questions")
        return test

    def _insert_test(self, user_id: str, questions: List[Question], upload_id: Optional[str]) -> TestRecord:
        self.store.create_user(user_id)
        return self.store.insert_test(TestRecord(
            id=str(uuid4()),
            user_id=user_id,
            questions=questions,
            answers={},
            created_at=self.clock(),
            upload_id=upload_id,
        ))

    def _resolve_source(self, user_id: str, source: QuestionSource):
        if isinstance(source, GenericSource):
            if source.count < 1:
                raise ValidationFailed("Question count must be positive", field="count")
            return None, None

        if not 1 <= source.count <= self.max_upload_questions:
            raise ValidationFailed(
                f"Question count must be between 1 and {self.max_upload_questions}", field="count"
            )
        upload = self.store.get_upload(source.upload_id, user_id)
        if upload is None:
            raise NotFound("upload", source.upload_id)
        if upload.status != UploadStatus.READY:
            raise ValidationFailed("Upload is not ready for question generation", field="upload_id")
        if not (upload.extracted_content or "").strip():
            raise ValidationFailed("No content extracted from this file", field="upload_id")
        return upload.extracted_content, upload.id

    async def _generate(self, source_text: Optional[str], count: int) -> List[Question]:
        try:
            questions = await asyncio.wait_for(
                self.generator.generate_questions(source_text, count),
                timeout=self.generation_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Question generation timed out after {self.generation_timeout}s")
            raise GenerationFailed("timeout") from e
        except Exception as e:
            logger.error(f"Question generation failed: {e}", exc_info=True)
            raise GenerationFailed(str(e) or type(e).__name__) from e
        if not questions:
            raise GenerationFailed("no questions returned")
        return questions

    # ---- answers ----

    def _owned_test(self, test_id: str, user_id: str) -> TestRecord:
        test = self.store.get_test(test_id, user_id)
        if test is None:
            raise TestNotFound(test_id)
        return test

    async def record_answer(self, test_id: str, user_id: str, question_id: str, choice: str) -> AnswerResult:
        question, letter, updated = await asyncio.to_thread(
            self._store_answer, test_id, user_id, question_id, choice
        )
        return AnswerResult(
            question_id=question_id,
            choice=letter,
            correct=is_correct(question, letter),
            correct_answer=question.correct_answer,
            explanation=await self._explain(question, letter),
            answered=len(updated.answers),
            total=len(updated.questions),
        )

    def _store_answer(self, test_id: str, user_id: str, question_id: str, choice: str):
        test = self._owned_test(test_id, user_id)
        if test.is_completed:
            raise AlreadyCompleted(test_id, test.score)

        question = test.question(question_id)
        if question is None:
            raise NotFound("question", question_id)
        letter = (choice or "").strip().upper()
        if letter not in CHOICE_LETTERS:
            raise ValidationFailed("Choice must be one of A, B, C, D", field="choice")

        updated = self.store.set_answer(test_id, question_id, letter)
        if updated is None:
            # finalized between our read and the write
            current = self.store.get_test(test_id, user_id)
            raise AlreadyCompleted(test_id, current.score if current else None)
        return question, letter, updated

    async def _explain(self, question: Question, letter: str) -> Optional[str]:
        try:
            return await asyncio.wait_for(
                self.generator.explain_answer(question, letter),
                timeout=self.explanation_timeout,
            )
        except Exception as e:
            logger.warning(f"Explanation for question {question.id} unavailable, using stored rationale: {e!r}")
            return question.rationale.get(letter)

    # ---- finalize ----

    def complete_test(self, test_id: str, user_id: str, final_score: int) -> FinalizeResult:
        if isinstance(final_score, bool) or not isinstance(final_score, int) or not 0 <= final_score <= 100:
            raise ValidationFailed("Score must be an integer between 0 and 100", field="score")
        return self._finalize(test_id, user_id, final_score)

    def abandon_test(self, test_id: str, user_id: str) -> FinalizeResult:
        return self._finalize(test_id, user_id, None)

    def _finalize(self, test_id: str, user_id: str, supplied_score: Optional[int]) -> FinalizeResult:
        test = self._owned_test(test_id, user_id)
        if test.is_completed:
            return self._existing(test)

        answered = {qid: c for qid, c in test.answers.items() if test.question(qid) is not None}
        score = supplied_score if supplied_score is not None else percent_correct(test.questions, answered)
        tallies = category_breakdown(test.questions, answered)
        completed_at = self.clock()

        today = completed_at.date()
        records = [
            PerformanceRecord(
                user_id=user_id,
                category=t.category,
                correct_answers=t.correct,
                total_questions=t.total,
                date=today,
            )
            for t in tallies
        ]

        if not self.store.finalize_test(test_id, score, completed_at, records):
            winner = self.store.get_test(test_id, user_id)
            logger.info(f"Test {test_id} was finalized concurrently; returning stored score")
            return self._existing(winner)

        logger.info(
            f"Test {test_id} {'completed' if supplied_score is not None else 'abandoned'} "
            f"with score {score} ({len(answered)}/{len(test.questions)} answered)"
        )
        return FinalizeResult(
            test_id=test_id,
            score=score,
            completed_at=completed_at,
            answered=len(answered),
            correct=sum(t.correct for t in tallies),
        )

    def _existing(self, test: TestRecord) -> FinalizeResult:
        answered = {qid: c for qid, c in test.answers.items() if test.question(qid) is not None}
        return FinalizeResult(
            test_id=test.id,
            score=test.score,
            completed_at=test.completed_at,
            already_completed=True,
            answered=len(answered),
            correct=sum(1 for qid, c in answered.items() if is_correct(test.question(qid), c)),
        )

    # ---- reads ----

    def get_test(self, test_id: str, user_id: str) -> TestRecord:
        return self._owned_test(test_id, user_id)

    def list_tests(self, user_id: str, limit: int = 10, offset: int = 0) -> List[TestRecord]:
        return self.store.list_tests(user_id, limit=limit, offset=offset)
