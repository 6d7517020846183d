from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from common.config import LLMSettings, configure_logging
from common.ollama import OllamaClient, OllamaError
from common.questions import BloomLevel, generate_question


logger = logging.getLogger(__name__)


def _error(message: str, details: str) -> Dict[str, Any]:
    return {
        "success": False,
        "error": message,
        "details": details,
        "fallback": "Use template system",
    }


def run_once(event: Dict[str, Any], *, client: Optional[OllamaClient] = None) -> Dict[str, Any]:
    """
    Generate one multiple-choice question.

    Event fields: objective (required), bloomLevel (required), content,
    context (retrieved passages prepended to the prompt).
    """
    objective = str(event.get("objective") or "").strip()
    if not objective:
        return _error("Invalid request", "objective is required")
    try:
        bloom = BloomLevel.parse(str(event.get("bloomLevel") or ""))
    except ValueError as ex:
        return _error("Invalid request", str(ex))
    content = str(event.get("content") or "")

    logger.info("Generating question: bloom=%s content=%d chars", bloom.value, len(content))
    llm = client or OllamaClient.from_settings(LLMSettings.from_env())
    try:
        result = generate_question(llm, objective, bloom, content, context=event.get("context"))
    except OllamaError as ex:
        logger.error("Question generation failed: %s", ex)
        return _error("Question generation failed", str(ex))
    finally:
        if client is None:
            llm.close()

    return {
        "success": True,
        "question": result.question.to_wire(),
        "method": result.method,
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    configure_logging()
    return run_once(event or {})
