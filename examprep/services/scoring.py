"""
Scoring and per-category correctness over a test's answered questions.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Mapping

from examprep.models.records import Category, Question


def round_half_up(value: float, digits: int = 0) -> float:
    """Round halves away from zero (0.5 -> 1, 2.25 -> 2.3) rather than to even."""
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


@dataclass
class CategoryTally:
    category: Category
    correct: int = 0
    total: int = 0


def is_correct(question: Question, choice: str) -> bool:
    return choice == question.correct_answer


def answered_questions(questions: List[Question], answers: Mapping[str, str]) -> List[Question]:
    return [q for q in questions if q.id in answers]


def percent_correct(questions: List[Question], answers: Mapping[str, str]) -> int:
    """Integer 0..100 over answered questions only; 0 when nothing was answered."""
    answered = answered_questions(questions, answers)
    if not answered:
        return 0
    correct = sum(1 for q in answered if is_correct(q, answers[q.id]))
    return int(round_half_up(correct / len(answered) * 100))


def category_breakdown(questions: List[Question], answers: Mapping[str, str]) -> List[CategoryTally]:
    """Correct/total per category, for categories with at least one answered question."""
    tallies: Dict[Category, CategoryTally] = {}
    for q in answered_questions(questions, answers):
        tally = tallies.setdefault(q.category, CategoryTally(category=q.category))
        tally.total += 1
        if is_correct(q, answers[q.id]):
            tally.correct += 1
    return [tallies[c] for c in Category if c in tallies]
