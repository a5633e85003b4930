import json
import logging
import re
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

ARRAY_SPAN_RE = re.compile(r"\[[\s\S]*\]")
OBJECT_SPAN_RE = re.compile(r"\{[\s\S]*\}")
FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)

# Keys some models use to wrap a requested bare array in an object.
ARRAY_WRAPPER_KEYS = ("mcqs", "questions")


class InvalidModelResponse(ValueError):
    pass


def _matches_shape(parsed: Any, shape: str) -> bool:
    if shape == "array":
        return isinstance(parsed, list)
    return isinstance(parsed, dict)


def _coerce_shape(parsed: Any, shape: str) -> Any:
    if _matches_shape(parsed, shape):
        return parsed
    if shape == "array" and isinstance(parsed, dict):
        for key in ARRAY_WRAPPER_KEYS:
            if isinstance(parsed.get(key), list):
                return parsed[key]
    return None


def _try_parse(candidate: str) -> Optional[Any]:
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        return None


def extract_json_payload(text: str, shape: str) -> Any:
    """Pull the JSON ``array`` or ``object`` out of a free-text model reply.

    Tries the whole reply, then a fenced block, then the greedy span from the
    first opening bracket to the last closing one. The greedy span can cover
    more than one bracketed region; when that fails to parse a light repair
    pass is attempted before giving up.
    """
    if shape not in {"array", "object"}:
        raise ValueError(f"Unsupported JSON shape: {shape}")
    cleaned = (text or "").strip()
    if not cleaned:
        raise InvalidModelResponse("Empty model output")

    candidates: List[str] = [cleaned]
    fenced = FENCED_BLOCK_RE.search(cleaned)
    if fenced:
        candidates.append(fenced.group(1).strip())
    span_re = ARRAY_SPAN_RE if shape == "array" else OBJECT_SPAN_RE
    span = span_re.search(cleaned)
    if span:
        candidates.append(span.group(0))

    for candidate in candidates:
        parsed = _try_parse(candidate)
        if parsed is None:
            continue
        coerced = _coerce_shape(parsed, shape)
        if coerced is not None:
            return coerced

    if span:
        repaired = _repair_llm_json(span.group(0))
        coerced = _coerce_shape(repaired, shape) if repaired is not None else None
        if coerced is not None:
            return coerced

    raise InvalidModelResponse(f"Model returned no parseable JSON {shape}")


def _repair_llm_json(candidate: str) -> Optional[Any]:
    """Best-effort repair for common LLM JSON mistakes before failing hard."""
    working = candidate.strip()
    # Remove dangling commas before closing brackets/braces.
    working = re.sub(r",(\s*[}\]])", r"\1", working)
    # Insert missing comma when two containers are adjacent.
    working = re.sub(r"([}\]])(\s*[{[])", r"\1,\2", working)
    working = _append_missing_json_closers(working)
    parsed = _try_parse(working)
    if isinstance(parsed, (dict, list)):
        logger.warning("llm_json_auto_repaired chars=%s", len(candidate))
        return parsed
    return None


def _append_missing_json_closers(text: str) -> str:
    stack: List[str] = []
    in_string = False
    escape = False
    for ch in text:
        if in_string:
            if escape:
                escape = False
                continue
            if ch == "\\":
                escape = True
                continue
            if ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            stack.append("}")
        elif ch == "[":
            stack.append("]")
        elif ch in {"}", "]"} and stack and ch == stack[-1]:
            stack.pop()

    if not stack:
        return text
    return text + "".join(reversed(stack))
