"""
pipelines/agents/base.py

Shared machinery for the five stage agents.

Every agent's ``run`` returns a StageOutcome: either ``ok`` (the live
reasoning call produced a valid result) or ``degraded`` (the deterministic
fallback was used, with the reason).  Reasoning and extraction failures
are absorbed here; anything else is a programming or infrastructure error
and propagates to the orchestrator.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Callable, Generic, Literal, Optional, Sequence, TypeVar

from models.reasoning_client import Message, ReasoningClient
from pipelines.errors import ExtractionError, ReasoningError
from pipelines.extraction import parse_stage_payload
from pipelines.settings import DEFAULT_MODEL
from storage.models import Stage

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StageOutcome(Generic[T]):
    kind: Literal["ok", "degraded"]
    value: T
    model: Optional[str] = None
    reason: Optional[str] = None
    response_ms: Optional[int] = None

    @property
    def is_degraded(self) -> bool:
        return self.kind == "degraded"

    @classmethod
    def ok(cls, value: T, model: Optional[str] = None, response_ms: Optional[int] = None) -> "StageOutcome[T]":
        return cls(kind="ok", value=value, model=model, response_ms=response_ms)

    @classmethod
    def degraded(cls, value: T, reason: str, model: Optional[str] = None) -> "StageOutcome[T]":
        return cls(kind="degraded", value=value, model=model, reason=reason)


def json_instruction(schema: dict) -> str:
    return "Return ONLY valid JSON matching this shape:\n" + json.dumps(schema, indent=2, ensure_ascii=False)


class StageAgent:
    """Base class: holds the client and model id, runs the live-or-fallback attempt."""

    stage: Stage

    def __init__(self, client: ReasoningClient, model: str = DEFAULT_MODEL) -> None:
        self.client = client
        self.model = model

    def _attempt(
        self,
        messages: Sequence[Message],
        parse: Callable[[str], T],
        fallback: Callable[[], T],
    ) -> StageOutcome[T]:
        try:
            response = self.client.call(messages, self.model)
            value = parse(response.text)
        except (ReasoningError, ExtractionError) as exc:
            reason = f"{type(exc).__name__}: {exc}"
            logger.warning("Stage %s falling back (%s)", self.stage.value, type(exc).__name__)
            return StageOutcome.degraded(fallback(), reason=reason, model=self.model)
        return StageOutcome.ok(value, model=self.model, response_ms=response.elapsed_ms)

    @staticmethod
    def _parser(model_cls: type[T]) -> Callable[[str], T]:
        return lambda text: parse_stage_payload(text, model_cls)
