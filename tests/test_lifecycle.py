import asyncio
import threading
from collections import Counter

import pytest

from conftest import make_settings
from examprep.core.container import build_container
from examprep.core.errors import (
    AlreadyCompleted, GenerationFailed, NotFound, QuotaExceeded, StoreUnavailable, TestNotFound,
    ValidationFailed,
)
from examprep.models.records import Category, SubscriptionStatus, TestStatus, UploadRecord, UploadStatus
from examprep.services.content import StaticContentGenerator
from examprep.services.lifecycle import GenericSource, UploadSource
from examprep.stores.memory import MemoryStore


class FailingGenerator(StaticContentGenerator):
    async def generate_questions(self, source_text, count):
        raise RuntimeError("provider down")


class SlowGenerator(StaticContentGenerator):
    async def generate_questions(self, source_text, count):
        await asyncio.sleep(5)
        return []

    async def explain_answer(self, question, selected):
        await asyncio.sleep(5)
        return "too late"


class RecordingGenerator(StaticContentGenerator):
    def __init__(self):
        self.sources = []

    async def generate_questions(self, source_text, count):
        self.sources.append((source_text, count))
        return await super().generate_questions(source_text, count)


def build(clock, store=None, generator=None, **overrides):
    settings = make_settings(**overrides)
    return build_container(settings, store=store or MemoryStore(), generator=generator, clock=clock)


def answer_key(test):
    return {q.id: q.correct_answer for q in test.questions}


def wrong(letter):
    return "A" if letter != "A" else "B"


@pytest.mark.asyncio
async def test_start_generic_test(clock):
    c = build(clock)
    test = await c.lifecycle.start_test("u1", GenericSource(count=100))

    assert len(test.questions) == 100
    assert test.answers == {}
    assert test.score is None and test.completed_at is None
    assert test.status == TestStatus.CREATED
    assert test.created_at == clock()
    counts = Counter(q.category for q in test.questions)
    assert counts == {
        Category.SAFE_AND_EFFECTIVE_CARE: 25,
        Category.HEALTH_PROMOTION: 15,
        Category.PSYCHOSOCIAL_INTEGRITY: 10,
        Category.PHYSIOLOGICAL_INTEGRITY: 50,
    }
    assert c.store.get_user("u1") is not None


@pytest.mark.asyncio
async def test_third_free_test_is_refused(clock):
    c = build(clock)
    await c.lifecycle.start_test("u1", GenericSource(count=4))
    await c.lifecycle.start_test("u1", GenericSource(count=4))

    with pytest.raises(QuotaExceeded) as exc:
        await c.lifecycle.start_test("u1", GenericSource(count=4))

    assert exc.value.details == {"resource": "tests", "used": 2, "limit": 2, "is_subscribed": False}
    assert c.store.count_tests("u1") == 2


@pytest.mark.asyncio
async def test_subscriber_is_not_limited(clock):
    c = build(clock)
    c.store.set_subscription("u1", SubscriptionStatus.ACTIVE, billing_ref="c1", create_missing=True)
    for _ in range(4):
        await c.lifecycle.start_test("u1", GenericSource(count=2))
    assert c.store.count_tests("u1") == 4


@pytest.mark.asyncio
async def test_generation_error_becomes_generation_failed(clock):
    c = build(clock, generator=FailingGenerator())
    with pytest.raises(GenerationFailed) as exc:
        await c.lifecycle.start_test("u1", GenericSource(count=4))
    assert "provider down" in exc.value.reason
    assert c.store.count_tests("u1") == 0


@pytest.mark.asyncio
async def test_generation_timeout(clock):
    c = build(clock, generator=SlowGenerator(), GENERATION_TIMEOUT_SECONDS=0.05)
    with pytest.raises(GenerationFailed) as exc:
        await c.lifecycle.start_test("u1", GenericSource(count=4))
    assert exc.value.reason == "timeout"


@pytest.mark.asyncio
async def test_upload_source(clock):
    generator = RecordingGenerator()
    c = build(clock, generator=generator)
    c.store.create_user("u1")
    c.store.insert_upload(UploadRecord(
        id="up1", user_id="u1", filename="notes.txt", file_path="u1/notes.txt", file_size=10,
        extracted_content="Cardiac output basics", status=UploadStatus.READY, created_at=clock(),
    ))

    test = await c.lifecycle.start_test("u1", UploadSource(upload_id="up1", count=12))

    assert test.upload_id == "up1"
    assert len(test.questions) == 12
    assert generator.sources == [("Cardiac output basics", 12)]


@pytest.mark.asyncio
async def test_upload_source_checks(clock):
    c = build(clock)
    c.store.create_user("u1")
    c.store.insert_upload(UploadRecord(
        id="busy", user_id="u1", filename="a.pdf", file_path="p", file_size=1,
        status=UploadStatus.PROCESSING, created_at=clock(),
    ))

    with pytest.raises(NotFound):
        await c.lifecycle.start_test("u1", UploadSource(upload_id="missing", count=5))
    with pytest.raises(NotFound):
        await c.lifecycle.start_test("u2", UploadSource(upload_id="busy", count=5))
    with pytest.raises(ValidationFailed):
        await c.lifecycle.start_test("u1", UploadSource(upload_id="busy", count=5))
    with pytest.raises(ValidationFailed):
        await c.lifecycle.start_test("u1", UploadSource(upload_id="busy", count=101))


@pytest.mark.asyncio
async def test_record_answer_overwrites_and_explains(clock):
    c = build(clock)
    test = await c.lifecycle.start_test("u1", GenericSource(count=4))
    q = test.questions[0]

    first = await c.lifecycle.record_answer(test.id, "u1", q.id, wrong(q.correct_answer).lower())
    assert first.choice == wrong(q.correct_answer)
    assert not first.correct
    assert first.correct_answer == q.correct_answer
    assert "correct answer is" in first.explanation

    second = await c.lifecycle.record_answer(test.id, "u1", q.id, q.correct_answer)
    assert second.correct
    assert second.answered == 1 and second.total == 4

    stored = c.store.get_test(test.id)
    assert stored.answers == {q.id: q.correct_answer}
    assert stored.status == TestStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_record_answer_validation(clock):
    c = build(clock)
    test = await c.lifecycle.start_test("u1", GenericSource(count=4))
    q = test.questions[0]

    with pytest.raises(TestNotFound):
        await c.lifecycle.record_answer(test.id, "someone-else", q.id, "A")
    with pytest.raises(NotFound):
        await c.lifecycle.record_answer(test.id, "u1", "no-such-question", "A")
    with pytest.raises(ValidationFailed):
        await c.lifecycle.record_answer(test.id, "u1", q.id, "E")


@pytest.mark.asyncio
async def test_explanation_timeout_keeps_answer(clock):
    generator = SlowGenerator()
    c = build(clock, generator=StaticContentGenerator(), EXPLANATION_TIMEOUT_SECONDS=0.05)
    test = await c.lifecycle.start_test("u1", GenericSource(count=4))
    c.lifecycle.generator = generator
    q = test.questions[0]

    result = await c.lifecycle.record_answer(test.id, "u1", q.id, "C")

    assert result.explanation == q.rationale["C"]
    assert c.store.get_test(test.id).answers == {q.id: "C"}


@pytest.mark.asyncio
async def test_answer_after_completion_is_rejected(clock):
    c = build(clock)
    test = await c.lifecycle.start_test("u1", GenericSource(count=4))
    c.lifecycle.complete_test(test.id, "u1", 75)

    with pytest.raises(AlreadyCompleted) as exc:
        await c.lifecycle.record_answer(test.id, "u1", test.questions[0].id, "A")

    assert exc.value.status_code == 409
    assert exc.value.details == {"test_id": test.id, "score": 75}


@pytest.mark.asyncio
async def test_abandon_scores_answered_subset(clock):
    c = build(clock)
    test = await c.lifecycle.start_test("u1", GenericSource(count=100))
    key = answer_key(test)
    answered = test.questions[:10]
    for i, q in enumerate(answered):
        choice = key[q.id] if i < 7 else wrong(key[q.id])
        await c.lifecycle.record_answer(test.id, "u1", q.id, choice)

    clock.advance(minutes=20)
    result = c.lifecycle.abandon_test(test.id, "u1")

    assert result.score == 70
    assert result.answered == 10 and result.correct == 7
    assert not result.already_completed
    stored = c.store.get_test(test.id)
    assert stored.score == 70 and stored.completed_at == clock()

    records = c.store.list_performance("u1")
    assert sum(r.total_questions for r in records) == 10
    assert sum(r.correct_answers for r in records) == 7
    assert all(r.date == clock().date() for r in records)
    assert len({r.category for r in records}) == len(records)


@pytest.mark.asyncio
async def test_abandon_without_answers_scores_zero(clock):
    c = build(clock)
    test = await c.lifecycle.start_test("u1", GenericSource(count=4))

    result = c.lifecycle.abandon_test(test.id, "u1")

    assert result.score == 0
    assert c.store.list_performance("u1") == []


@pytest.mark.asyncio
async def test_second_finalize_returns_original_score(clock):
    c = build(clock)
    test = await c.lifecycle.start_test("u1", GenericSource(count=4))
    q = test.questions[0]
    await c.lifecycle.record_answer(test.id, "u1", q.id, q.correct_answer)

    first = c.lifecycle.complete_test(test.id, "u1", 80)
    clock.advance(hours=1)
    again = c.lifecycle.complete_test(test.id, "u1", 10)
    abandoned = c.lifecycle.abandon_test(test.id, "u1")

    assert first.score == again.score == abandoned.score == 80
    assert again.already_completed and abandoned.already_completed
    assert again.completed_at == first.completed_at
    assert len(c.store.list_performance("u1")) == 1


@pytest.mark.asyncio
async def test_finalize_requires_owner(clock):
    c = build(clock)
    test = await c.lifecycle.start_test("u1", GenericSource(count=4))
    with pytest.raises(TestNotFound):
        c.lifecycle.abandon_test(test.id, "u2")
    with pytest.raises(TestNotFound):
        c.lifecycle.complete_test("missing", "u1", 50)


@pytest.mark.asyncio
@pytest.mark.parametrize("score", [-1, 101, 50.5, True])
async def test_complete_rejects_bad_score(clock, score):
    c = build(clock)
    test = await c.lifecycle.start_test("u1", GenericSource(count=4))
    with pytest.raises(ValidationFailed):
        c.lifecycle.complete_test(test.id, "u1", score)
    assert c.store.get_test(test.id).completed_at is None


class RacingStore(MemoryStore):
    """Another request finalizes the test between our read and our write."""

    def finalize_test(self, test_id, score, completed_at, records=()):
        super().finalize_test(test_id, 55, completed_at)
        return False


@pytest.mark.asyncio
async def test_losing_finalize_race_returns_winner_score(clock):
    c = build(clock, store=RacingStore())
    test = await c.lifecycle.start_test("u1", GenericSource(count=4))
    q = test.questions[0]
    await c.lifecycle.record_answer(test.id, "u1", q.id, q.correct_answer)

    result = c.lifecycle.complete_test(test.id, "u1", 100)

    assert result.score == 55
    assert result.already_completed
    assert c.store.list_performance("u1") == []


@pytest.mark.asyncio
async def test_list_tests_newest_first(clock):
    c = build(clock)
    first = await c.lifecycle.start_test("u1", GenericSource(count=2))
    clock.advance(minutes=5)
    second = await c.lifecycle.start_test("u1", GenericSource(count=2))

    assert [t.id for t in c.lifecycle.list_tests("u1")] == [second.id, first.id]
    assert c.lifecycle.get_test(first.id, "u1").id == first.id


class FlakyFinalizeStore(MemoryStore):
    """The finalize transaction fails once and is rolled back."""

    def __init__(self):
        super().__init__()
        self.failures = 1

    def finalize_test(self, test_id, score, completed_at, records=()):
        if self.failures:
            self.failures -= 1
            raise StoreUnavailable()
        return super().finalize_test(test_id, score, completed_at, records)


@pytest.mark.asyncio
async def test_retry_after_failed_finalize_writes_performance(clock):
    c = build(clock, store=FlakyFinalizeStore())
    test = await c.lifecycle.start_test("u1", GenericSource(count=4))
    q = test.questions[0]
    await c.lifecycle.record_answer(test.id, "u1", q.id, q.correct_answer)

    with pytest.raises(StoreUnavailable):
        c.lifecycle.abandon_test(test.id, "u1")
    assert c.store.get_test(test.id).completed_at is None
    assert c.store.list_performance("u1") == []

    result = c.lifecycle.abandon_test(test.id, "u1")

    assert not result.already_completed
    assert result.score == 100
    records = c.store.list_performance("u1")
    assert [(r.correct_answers, r.total_questions) for r in records] == [(1, 1)]


class ThreadRecordingStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.threads = set()

    def get_test(self, test_id, user_id=None):
        self.threads.add(threading.get_ident())
        return super().get_test(test_id, user_id)

    def insert_test(self, test):
        self.threads.add(threading.get_ident())
        return super().insert_test(test)

    def set_answer(self, test_id, question_id, choice):
        self.threads.add(threading.get_ident())
        return super().set_answer(test_id, question_id, choice)

    def count_tests(self, user_id):
        self.threads.add(threading.get_ident())
        return super().count_tests(user_id)


@pytest.mark.asyncio
async def test_async_entry_points_keep_store_calls_off_the_event_loop(clock):
    store = ThreadRecordingStore()
    c = build(clock, store=store)
    loop_thread = threading.get_ident()

    test = await c.lifecycle.start_test("u1", GenericSource(count=4))
    await c.lifecycle.record_answer(test.id, "u1", test.questions[0].id, "A")

    assert store.threads
    assert loop_thread not in store.threads
