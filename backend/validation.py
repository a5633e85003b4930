import re
from typing import Any, Iterable

from fastapi import HTTPException

# Control characters except tab, newline and carriage return.
CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
INTEGER_RE = re.compile(r"^[+-]?\d+$")

MAX_SUBJECT_LENGTH = 100
MAX_TOPIC_LENGTH = 200
MAX_TOPICS_LENGTH = 500
MIN_TEXT_LENGTH = 10
MAX_TEXT_LENGTH = 10000
MIN_QUESTION_COUNT = 1
MAX_QUESTION_COUNT = 10
VALID_DIFFICULTIES = ("easy", "medium", "hard")


def sanitize_input(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return CONTROL_CHARS_RE.sub("", value).strip()


def _reject(reason: str) -> HTTPException:
    return HTTPException(status_code=400, detail=reason)


def validate_string_input(value: Any, field_name: str, max_length: int) -> str:
    if not isinstance(value, str) or not value.strip():
        raise _reject(f"{field_name} is required and must be a non-empty string")
    sanitized = sanitize_input(value)
    if len(sanitized) > max_length:
        raise _reject(f"{field_name} must be {max_length} characters or less")
    if not sanitized:
        raise _reject(f"{field_name} cannot be empty after sanitization")
    return sanitized


def validate_text_input(
    value: Any,
    min_length: int = MIN_TEXT_LENGTH,
    max_length: int = MAX_TEXT_LENGTH,
) -> str:
    if not isinstance(value, str) or not value.strip():
        raise _reject("Text content is required and must be a non-empty string")
    sanitized = sanitize_input(value)
    if len(sanitized) < min_length:
        raise _reject(f"Text must be at least {min_length} characters")
    if len(sanitized) > max_length:
        raise _reject(f"Text must be {max_length} characters or less")
    return sanitized


def validate_choice(value: Any, field_name: str, choices: Iterable[str]) -> str:
    allowed = [c.lower() for c in choices]
    normalized = value.strip().lower() if isinstance(value, str) else ""
    if normalized not in allowed:
        raise _reject(f"{field_name} must be one of: {', '.join(allowed)}")
    return normalized


def validate_int_range(value: Any, field_name: str, minimum: int, maximum: int) -> int:
    parsed = None
    if isinstance(value, bool):
        parsed = None
    elif isinstance(value, int):
        parsed = value
    elif isinstance(value, float) and value.is_integer():
        parsed = int(value)
    elif isinstance(value, str) and INTEGER_RE.match(value.strip()):
        parsed = int(value.strip())

    if parsed is None or parsed < minimum or parsed > maximum:
        raise _reject(f"{field_name} must be between {minimum} and {maximum}")
    return parsed


def validate_mcq_fields(body: dict) -> dict:
    return {
        "subject": validate_string_input(body.get("subject"), "Subject", MAX_SUBJECT_LENGTH),
        "topic": validate_string_input(body.get("topic"), "Topic", MAX_TOPIC_LENGTH),
        "difficulty": validate_choice(body.get("difficulty"), "Difficulty", VALID_DIFFICULTIES),
        "count": validate_int_range(
            body.get("count"),
            "Count",
            MIN_QUESTION_COUNT,
            MAX_QUESTION_COUNT,
        ),
    }


def validate_paper_fields(body: dict) -> dict:
    return {
        "subject": validate_string_input(body.get("subject"), "Subject", MAX_SUBJECT_LENGTH),
        "topics": validate_string_input(body.get("topics"), "Topics", MAX_TOPICS_LENGTH),
    }


def validate_voice_notes_fields(body: dict) -> dict:
    return {"text": validate_text_input(body.get("text"))}
