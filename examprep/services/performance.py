"""
Performance aggregation over completed tests and per-category records.
"""
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List

from examprep.models.base import utcnow
from examprep.models.records import Category, TestRecord
from examprep.services.scoring import round_half_up
from examprep.stores.base import Store

# elapsed time outside (MIN, MAX) is not trusted as study time
MIN_PLAUSIBLE_DURATION = timedelta(minutes=1)
MAX_PLAUSIBLE_DURATION = timedelta(hours=6)
SECONDS_PER_QUESTION = 72

# completed tests are read in pages of this size
_PAGE = 500


@dataclass
class CategoryPerformance:
    category: Category
    correct: int
    total: int
    percentage: float

    def to_dict(self) -> dict:
        data = asdict(self)
        data["category"] = self.category.value
        return data


@dataclass
class UserStats:
    total_tests: int
    average_score: float
    study_streak_days: int
    total_study_hours: float
    total_questions_answered: int

    def to_dict(self) -> dict:
        return asdict(self)


def study_streak(dates: Iterable[date], today: date) -> int:
    days = sorted(set(dates), reverse=True)
    if not days or days[0] < today - timedelta(days=1):
        return 0
    streak = 1
    for prev, cur in zip(days, days[1:]):
        if prev - cur != timedelta(days=1):
            break
        streak += 1
    return streak


def study_seconds(test: TestRecord) -> float:
    elapsed = test.completed_at - test.created_at
    if MIN_PLAUSIBLE_DURATION < elapsed < MAX_PLAUSIBLE_DURATION:
        return elapsed.total_seconds()
    return SECONDS_PER_QUESTION * len(test.questions)


def _utc_date(value: datetime) -> date:
    return value.astimezone(timezone.utc).date()


class PerformanceAggregator:

    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def get_category_performance(self, user_id: str) -> List[CategoryPerformance]:
        sums: Dict[Category, List[int]] = {}
        for record in self.store.list_performance(user_id):
            entry = sums.setdefault(Category(record.category), [0, 0])
            entry[0] += record.correct_answers
            entry[1] += record.total_questions

        results = []
        for category in Category:
            correct, total = sums.get(category, (0, 0))
            if total == 0:
                continue
            results.append(CategoryPerformance(
                category=category,
                correct=correct,
                total=total,
                percentage=round_half_up(correct / total * 100, 2),
            ))
        return results

    def _completed_tests(self, user_id: str) -> List[TestRecord]:
        tests, offset = [], 0
        while True:
            page = self.store.list_tests(user_id, limit=_PAGE, offset=offset, completed_only=True)
            tests.extend(page)
            if len(page) < _PAGE:
                return tests
            offset += _PAGE

    def get_user_stats(self, user_id: str) -> UserStats:
        tests = self._completed_tests(user_id)
        if not tests:
            return UserStats(0, 0.0, 0, 0.0, 0)

        average = sum(t.score for t in tests) / len(tests)
        seconds = sum(study_seconds(t) for t in tests)
        return UserStats(
            total_tests=len(tests),
            average_score=round_half_up(average, 2),
            study_streak_days=study_streak((_utc_date(t.completed_at) for t in tests), _utc_date(self.clock())),
            total_study_hours=round_half_up(seconds / 3600, 1),
            total_questions_answered=sum(len(t.answers) for t in tests),
        )
