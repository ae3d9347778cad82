"""Inbound validation and outbound shaping for the essay endpoint."""

from dataclasses import dataclass

from essay_gateway.engine import GenerationResult
from essay_gateway.errors import ValidationError
from essay_gateway.prompts import STRUCTURES

MISSING_FIELDS = "Missing required parameters (topic, wordCount, structure)"


@dataclass(frozen=True)
class GenerationRequest:
    topic: str
    word_count: int
    structure: str
    guidelines: str | None = None


def _word_count(value) -> int | None:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and value > 0:
        return value
    return None


def parse_request(body) -> GenerationRequest:
    """Validate a decoded JSON body. Raises ValidationError."""
    if not isinstance(body, dict):
        raise ValidationError(f"Request body must be a JSON object. {MISSING_FIELDS}")

    topic = body.get("topic")
    structure = body.get("structure")
    raw_count = body.get("wordCount")
    if not topic or raw_count in (None, "") or not structure:
        raise ValidationError(MISSING_FIELDS)

    if not isinstance(topic, str) or not topic.strip():
        raise ValidationError("topic must be a non-empty string")
    word_count = _word_count(raw_count)
    if word_count is None:
        raise ValidationError("wordCount must be a positive whole number")
    if structure not in STRUCTURES:
        raise ValidationError(f"structure must be one of: {', '.join(STRUCTURES)}")

    guidelines = body.get("guidelines")
    if guidelines is not None and not isinstance(guidelines, str):
        raise ValidationError("guidelines must be a string")

    return GenerationRequest(
        topic=topic.strip(),
        word_count=word_count,
        structure=structure,
        guidelines=guidelines.strip() if guidelines and guidelines.strip() else None,
    )


def error_body(message: str) -> dict:
    return {"error": message}


def response_body(result: GenerationResult) -> tuple[int, dict]:
    """(status, JSON body) for a finished engine run."""
    if result.ok:
        return 200, {"essay": result.text}
    return result.status_code, error_body(result.message)
