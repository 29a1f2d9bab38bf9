"""
pipelines/extraction.py

Turn free-form model text into a validated stage result.

The model is asked for JSON but is not trusted to return *only* JSON:
responses arrive wrapped in prose, markdown fences or citation markers.
parse_stage_payload() locates the first balanced {...} object that decodes,
validates it against the stage schema and raises ExtractionError otherwise,
so every failure mode feeds the same fallback path as a transport error.
"""

from __future__ import annotations

import json
import re
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from pipelines.errors import ExtractionError

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?", flags=re.IGNORECASE)


def _balanced_object_at(text: str, start: int) -> Optional[str]:
    """
    Brace-matching scan from text[start] == '{'.

    Braces inside JSON string literals are ignored, so a value such as
    ``"pain {left side}"`` does not end the object early.
    """
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        c = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif c == "\\":
                escaped = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def extract_first_json_object(text: str) -> Optional[dict]:
    """
    Return the first {...} in *text* that decodes to a JSON object, or None.

    Candidates are tried left to right; an unterminated '{' or a balanced
    but undecodable span (e.g. ``{see below}`` in prose) is skipped in
    favour of the next '{'.
    """
    if not text:
        return None

    text = _FENCE_RE.sub("", text).replace("```", "")

    pos = text.find("{")
    while pos != -1:
        candidate = _balanced_object_at(text, pos)
        if candidate is not None:
            try:
                data = json.loads(candidate)
            except json.JSONDecodeError:
                data = None
            if isinstance(data, dict):
                return data
        pos = text.find("{", pos + 1)
    return None


def parse_stage_payload(text: str, model_cls: Type[ModelT]) -> ModelT:
    """
    Parse model output into *model_cls*.

    Raises:
        ExtractionError: No JSON object found, or the object failed schema
            validation (missing required field, wrong shape).
    """
    data = extract_first_json_object(text)
    if data is None:
        raise ExtractionError("No JSON object found in model output.")

    try:
        return model_cls.model_validate(data)
    except ValidationError as exc:
        raise ExtractionError(
            f"Schema validation failed for {model_cls.__name__}: {exc.error_count()} error(s)"
        ) from exc
