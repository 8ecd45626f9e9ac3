"""Comprehension questions for quizzes and interactive media.

The text model returns JSON; everything it returns is validated with pydantic
before it is stored, so malformed model output fails the stage with a
readable message instead of leaking into the Output row.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from ..errors import PermanentProviderError
from ..providers.base import TextGenerator, WordTiming

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


class Question(BaseModel):
    """Multiple-choice question; ``appears_at`` anchors it in timed media."""

    question: str = Field(..., min_length=1)
    options: List[str] = Field(..., min_length=2)
    correct_index: int = Field(..., ge=0)
    explanation: Optional[str] = None
    appears_at: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_answer(self):
        if self.correct_index >= len(self.options):
            raise ValueError(
                f"correct_index {self.correct_index} out of range for {len(self.options)} options"
            )
        return self


QUESTION_LIST = TypeAdapter(List[Question])


def extract_json(text: str) -> Any:
    """Parse JSON from model output, tolerating code fences and leading prose."""
    cleaned = _FENCE_RE.sub("", text.strip()).strip()
    try:
        return json.loads(cleaned)
    except ValueError:
        pass
    starts = [i for i in (cleaned.find("["), cleaned.find("{")) if i >= 0]
    if not starts:
        raise PermanentProviderError("Model output contained no JSON")
    start = min(starts)
    end = max(cleaned.rfind("]"), cleaned.rfind("}"))
    try:
        return json.loads(cleaned[start:end + 1])
    except ValueError as e:
        raise PermanentProviderError(f"Model output is not valid JSON: {e}") from e


def parse_questions(data: Any) -> List[Dict[str, Any]]:
    """Validate a question list (raw JSON text or parsed) into plain dicts."""
    if isinstance(data, str):
        data = extract_json(data)
    if isinstance(data, dict) and "questions" in data:
        data = data["questions"]
    try:
        questions = QUESTION_LIST.validate_python(data)
    except ValidationError as e:
        raise PermanentProviderError(f"Invalid question list: {e.error_count()} validation errors") from e
    return [q.model_dump() for q in questions]


def anchor_questions(
    questions: List[Dict[str, Any]], words: List[WordTiming], duration: Optional[float]
) -> List[Dict[str, Any]]:
    """Spread questions evenly over the media, snapped to the end of a word."""
    if not questions or not words:
        return questions
    total = duration or words[-1].end
    anchored = []
    for i, question in enumerate(questions):
        target = total * (i + 1) / (len(questions) + 1)
        word = min(words, key=lambda w: abs(w.end - target))
        anchored.append({**question, "appears_at": round(word.end, 2)})
    return anchored


class QuestionGenerator:
    """Generate validated multiple-choice questions from a script or transcript."""

    def __init__(self, text: TextGenerator, count: int = 3):
        self.text = text
        self.count = count

    def guidance(self, count: Optional[int] = None) -> str:
        return (
            f"Write {count or self.count} multiple-choice comprehension questions about the text. "
            'Respond with only a JSON array of objects with keys "question", "options" '
            '(2-4 strings), "correct_index" (0-based) and "explanation".'
        )

    def generate(
        self,
        content: str,
        language: str,
        words: Optional[List[WordTiming]] = None,
        duration: Optional[float] = None,
        count: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raw = self.text.generate(content, language, guidance=self.guidance(count))
        questions = parse_questions(raw)
        logger.debug("Generated %d questions", len(questions))
        return anchor_questions(questions, words or [], duration)
