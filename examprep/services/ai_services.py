"""
AI-powered question generation and answer explanation.
"""
from typing import Any, Dict, List, Optional
from uuid import uuid4
import asyncio
import json
import logging

from openai import AsyncOpenAI
from pydantic import ValidationError

from examprep.models.records import Category, Question
from examprep.services.content import ContentGenerator, distribute

logger = logging.getLogger(__name__)

GENERATION_SYSTEM_PROMPT = (
    "You are an expert nursing educator writing NCLEX-style multiple-choice questions. "
    "Respond with JSON only."
)
EXPLANATION_SYSTEM_PROMPT = "You are an expert nursing educator specializing in nursing exam preparation."

# upload text beyond this is cut before it reaches the prompt
MAX_SOURCE_CHARS = 12000


class OpenAIContentGenerator(ContentGenerator):
    """Question generator backed by the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        temperature: float = 0.4,
        max_tokens: int = 4096,
        batch_size: int = 20,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.batch_size = batch_size

    async def generate_questions(self, source_text: Optional[str], count: int) -> List[Question]:
        """
        Generate ``count`` questions spread across categories.

        Args:
            source_text: Extracted course material to base questions on, or None
            count: Number of questions to generate

        Returns:
            Questions with freshly assigned ids
        """
        batches = []
        for category, n in distribute(count).items():
            while n > 0:
                size = min(n, self.batch_size)
                batches.append(self._generate_batch(category, size, source_text))
                n -= size

        results = await asyncio.gather(*batches)
        questions = [q for batch in results for q in batch]
        if not questions:
            raise ValueError("Model returned no usable questions")
        if len(questions) < count:
            logger.warning(f"Generated {len(questions)} of {count} requested questions")
        return questions

    async def _generate_batch(self, category: Category, count: int, source_text: Optional[str]) -> List[Question]:
        prompt = self._create_generation_prompt(category, count, source_text)
        content = await self._complete(prompt, GENERATION_SYSTEM_PROMPT, json_mode=True)
        return self._parse_generated_questions(content, category)

    def _create_generation_prompt(self, category: Category, count: int, source_text: Optional[str]) -> str:
        """Create prompt for question generation."""
        material = ""
        if source_text:
            material = (
                "Base every question on the following course material:\n"
                f"---\n{source_text[:MAX_SOURCE_CHARS]}\n---\n\n"
            )
        return (
            f"{material}"
            f"Generate {count} multiple-choice NCLEX-style questions about \"{category.value}\".\n"
            "Each question needs a 2-3 sentence clinical scenario, one question, four choices A-D, "
            "the correct letter and a rationale for every choice. Target application/analysis level.\n\n"
            'Return {"questions": [{"scenario": "...", "question": "...", '
            '"choices": {"A": "...", "B": "...", "C": "...", "D": "..."}, '
            '"correct_answer": "A|B|C|D", '
            '"rationale": {"A": "...", "B": "...", "C": "...", "D": "..."}}]}'
        )

    def _parse_generated_questions(self, content: str, category: Category) -> List[Question]:
        data = json.loads(content)
        items: List[Dict[str, Any]] = data.get("questions", []) if isinstance(data, dict) else data

        questions = []
        for item in items:
            try:
                questions.append(Question(
                    id=f"q_{uuid4().hex[:12]}",
                    category=category,
                    scenario=item.get("scenario", ""),
                    question=item["question"],
                    choices=item["choices"],
                    correct_answer=item.get("correct_answer") or item.get("correctAnswer"),
                    rationale=item.get("rationale") or {},
                ))
            except (KeyError, TypeError, ValidationError) as e:
                logger.warning(f"Dropping malformed generated question: {e}")
        return questions

    async def explain_answer(self, question: Question, selected: str) -> str:
        verdict = "correct" if selected == question.correct_answer else "incorrect"
        choices = "\n".join(f"{k}: {v}" for k, v in sorted(question.choices.items()))
        prompt = (
            f"As a nursing educator, explain why the selected answer is {verdict}.\n\n"
            f"Scenario: {question.scenario}\n"
            f"Question: {question.question}\n"
            f"Answer choices:\n{choices}\n\n"
            f"Selected Answer: {selected}\n"
            f"Correct Answer: {question.correct_answer}\n\n"
            "Cover why the selection is right or wrong, the key nursing concepts and the clinical "
            "reasoning. Keep it to 200-300 words."
        )
        return await self._complete(prompt, EXPLANATION_SYSTEM_PROMPT, max_tokens=500, temperature=0.7)

    async def _complete(
        self,
        prompt: str,
        system: str,
        json_mode: bool = False,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            temperature=self.temperature if temperature is None else temperature,
            max_tokens=max_tokens or self.max_tokens,
            **kwargs,
        )
        return response.choices[0].message.content or ""
