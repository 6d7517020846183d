from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


logger = logging.getLogger(__name__)

PLACEHOLDER_OPTIONS = ["Option A", "Option B", "Option C", "Option D"]
OPTION_LETTERS = "ABCD"


class BloomLevel(str, Enum):
    REMEMBER = "Remember"
    UNDERSTAND = "Understand"
    APPLY = "Apply"
    ANALYZE = "Analyze"
    EVALUATE = "Evaluate"
    CREATE = "Create"

    @classmethod
    def parse(cls, value: str) -> "BloomLevel":
        v = (value or "").strip().lower()
        for level in cls:
            if level.value.lower() == v:
                return level
        raise ValueError(f"Unknown Bloom's taxonomy level: {value!r}")


class GeneratedQuestion(BaseModel):
    """
    One multiple-choice question as returned by the model.

    JSON shape (camelCase on the wire):
        {"question": str, "options": [A, B, C, D], "correctAnswer": 0..3,
         "explanation": str}
    """

    model_config = ConfigDict(populate_by_name=True)

    question: str = Field(..., min_length=1)
    options: List[str] = Field(..., min_length=4, max_length=4)
    correct_answer: int = Field(..., alias="correctAnswer", ge=0, le=3)
    explanation: str = ""
    raw: bool = Field(default=False, description="True when built from unparseable model output")

    @field_validator("correct_answer", mode="before")
    @classmethod
    def _letter_to_index(cls, v: Any) -> Any:
        # Models sometimes answer "B" instead of 1
        if isinstance(v, str) and v.strip().upper() in tuple(OPTION_LETTERS):
            return OPTION_LETTERS.index(v.strip().upper())
        return v

    @property
    def correct_option(self) -> str:
        return self.options[self.correct_answer]

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"raw"})


def build_question_prompt(objective: str, bloom_level: BloomLevel | str, content: str = "") -> str:
    level = bloom_level.value if isinstance(bloom_level, BloomLevel) else str(bloom_level)
    prompt = f"""You are an expert educational content creator. Generate a high-quality multiple-choice question based on the provided content.

OBJECTIVE: {objective}
BLOOM'S TAXONOMY LEVEL: {level}

INSTRUCTIONS:
1. Create a specific, detailed question that tests understanding of the objective
2. Use actual content from the materials - don't be generic
3. Include 4 answer options (A, B, C, D)
4. Make the correct answer clearly correct based on the content
5. Make incorrect answers plausible but clearly wrong
6. Focus on the specific concepts, examples, or details mentioned in the content
7. Format your response as JSON with this structure:
{{
  "question": "Your specific question here",
  "options": ["Option A", "Option B", "Option C", "Option D"],
  "correctAnswer": 0,
  "explanation": "Why this answer is correct based on the content"
}}

IMPORTANT: Base your question on the specific details, examples, formulas, or concepts mentioned in the provided content. Don't create generic questions - make them specific to what's actually in the materials."""
    if content:
        prompt += f"\n\nCONTENT: {content}"
    return prompt


_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def _json_candidates(text: str) -> List[str]:
    out = [text.strip()]
    out.extend(m.group(1) for m in _FENCE_RE.finditer(text))
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        out.append(text[start : end + 1])
    return out


def parse_question_response(text: str) -> GeneratedQuestion:
    """
    Parse model output into a question.

    Accepts bare JSON, a ```json fenced block, or a JSON object embedded in
    prose. Anything else becomes a raw question whose text is the response
    itself, with placeholder options.
    """
    for candidate in _json_candidates(text):
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if not isinstance(data, dict):
            continue
        try:
            return GeneratedQuestion.model_validate(data)
        except ValidationError as ve:
            logger.warning("Model JSON did not match question schema: %s", ve.errors()[:3])
            break

    return GeneratedQuestion(
        question=text.strip() or "(empty response)",
        options=list(PLACEHOLDER_OPTIONS),
        correct_answer=0,
        explanation="Generated from an unstructured model response",
        raw=True,
    )


class TextGenerator(Protocol):
    def generate(self, prompt: str) -> str: ...


@dataclass
class QuestionResult:
    question: GeneratedQuestion
    method: str


def generate_question(
    llm: TextGenerator,
    objective: str,
    bloom_level: BloomLevel | str,
    content: str = "",
    *,
    context: Optional[str] = None,
) -> QuestionResult:
    """Prompt `llm` for one question; `context` (retrieved passages) is prepended."""
    prompt = build_question_prompt(objective, bloom_level, content)
    if context:
        prompt = f"{context}\n\n{prompt}"
    text = llm.generate(prompt)
    question = parse_question_response(text)
    method = "Direct Ollama API (Raw Response)" if question.raw else "Direct Ollama API"
    return QuestionResult(question=question, method=method)


__all__ = [
    "BloomLevel",
    "GeneratedQuestion",
    "QuestionResult",
    "build_question_prompt",
    "parse_question_response",
    "generate_question",
]
