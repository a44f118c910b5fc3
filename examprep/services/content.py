"""
Content generation collaborator and the static question bank used offline.
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import logging
import math

from examprep.models.records import CATEGORY_DISTRIBUTION, Category, Question

logger = logging.getLogger(__name__)


def distribute(count: int) -> Dict[Category, int]:
    """Split ``count`` across categories by target share (largest remainder)."""
    raw = {c: count * share for c, share in CATEGORY_DISTRIBUTION.items()}
    counts = {c: math.floor(v) for c, v in raw.items()}
    leftover = count - sum(counts.values())
    for c in sorted(raw, key=lambda c: raw[c] - counts[c], reverse=True)[:leftover]:
        counts[c] += 1
    return counts


class ContentGenerator(ABC):
    """Produces questions and answer explanations. Calls may be slow or fail."""

    @abstractmethod
    async def generate_questions(self, source_text: Optional[str], count: int) -> List[Question]:
        ...

    @abstractmethod
    async def explain_answer(self, question: Question, selected: str) -> str:
        ...


_BANK: Dict[Category, dict] = {
    Category.SAFE_AND_EFFECTIVE_CARE: {
        "scenario": "A nurse is caring for a client who is scheduled for surgery. The client asks about the consent form.",
        "question": "Which statement by the nurse is most appropriate?",
        "choices": {
            "A": "You can sign the form now and ask questions later.",
            "B": "The surgeon will explain the procedure before you sign.",
            "C": "Your family can sign the form if you're not sure.",
            "D": "The consent form is just a formality.",
        },
        "correct_answer": "B",
        "rationale": {
            "A": "Incorrect. Informed consent requires understanding before signing.",
            "B": "Correct. The surgeon must explain the procedure, risks, and alternatives before obtaining consent.",
            "C": "Incorrect. The client must provide their own consent unless legally unable.",
            "D": "Incorrect. Informed consent is a legal and ethical requirement.",
        },
    },
    Category.HEALTH_PROMOTION: {
        "scenario": "A nurse is teaching a prenatal class about nutrition during pregnancy.",
        "question": "Which food should the nurse recommend to increase folic acid intake?",
        "choices": {"A": "Lean red meat", "B": "Leafy green vegetables", "C": "Whole milk", "D": "White bread"},
        "correct_answer": "B",
        "rationale": {
            "A": "Incorrect. Red meat is high in iron but not folic acid.",
            "B": "Correct. Leafy greens are rich in folic acid, which helps prevent neural tube defects.",
            "C": "Incorrect. Milk provides calcium and vitamin D.",
            "D": "Incorrect. White bread is not a good source unless fortified.",
        },
    },
    Category.PSYCHOSOCIAL_INTEGRITY: {
        "scenario": "A client with depression tells the nurse, 'I don't see any point in continuing therapy.'",
        "question": "Which response by the nurse is most therapeutic?",
        "choices": {
            "A": "You should continue therapy because your doctor ordered it.",
            "B": "Tell me more about how you're feeling right now.",
            "C": "Many people feel this way, but it gets better.",
            "D": "You're making progress even if you don't see it.",
        },
        "correct_answer": "B",
        "rationale": {
            "A": "Incorrect. This dismisses the client's feelings.",
            "B": "Correct. An open-ended prompt explores the client's feelings.",
            "C": "Incorrect. This minimizes the client's experience.",
            "D": "Incorrect. This offers false reassurance.",
        },
    },
    Category.PHYSIOLOGICAL_INTEGRITY: {
        "scenario": "A nurse is caring for a client with diabetic ketoacidosis (DKA).",
        "question": "Which finding should the nurse expect during assessment?",
        "choices": {
            "A": "Rapid, shallow respirations",
            "B": "Fruity-smelling breath",
            "C": "Increased skin turgor",
            "D": "Bradycardia",
        },
        "correct_answer": "B",
        "rationale": {
            "A": "Incorrect. DKA causes deep, rapid Kussmaul respirations.",
            "B": "Correct. Acetone from fat metabolism gives the breath a fruity odor.",
            "C": "Incorrect. Dehydration decreases skin turgor.",
            "D": "Incorrect. Dehydration causes tachycardia.",
        },
    },
}


class StaticContentGenerator(ContentGenerator):
    """Deterministic generator over a fixed bank, one template per category."""

    async def generate_questions(self, source_text: Optional[str], count: int) -> List[Question]:
        questions = []
        for category, n in distribute(count).items():
            template = _BANK[category]
            for _ in range(n):
                questions.append(Question(id=f"q{len(questions) + 1:03d}", category=category, **template))
        return questions

    async def explain_answer(self, question: Question, selected: str) -> str:
        if selected == question.correct_answer:
            return (
                f"Correct! You selected {selected}. "
                f"{question.rationale.get(selected, '')}".strip()
            )
        return (
            f"You selected {selected}, but the correct answer is {question.correct_answer}. "
            f"{question.rationale.get(question.correct_answer, '')}".strip()
        )
