"""
models/reasoning_client.py

Thin client for an OpenAI-compatible chat-completions service (Perplexity
Sonar by default) used by every stage agent.

Contract:
- call(messages, model) -> ReasoningResponse(text, elapsed_ms, ...)
- ConfigError     no credential configured (checked before any network I/O)
- TransportError  network failure or the per-call timeout expired
- UpstreamError   the service answered with a non-2xx status or an unusable body

No retries here; a failed call degrades the calling stage to its fallback.
Prompt and response content is never logged.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

import requests

from pipelines.errors import ConfigError, TransportError, UpstreamError
from pipelines.settings import (
    DEFAULT_BASE_URL,
    DEFAULT_MODEL,
    PLACEHOLDER_API_KEY,
    Settings,
)

logger = logging.getLogger(__name__)

Message = Mapping[str, str]


@dataclass(frozen=True)
class ReasoningResponse:
    text: str
    elapsed_ms: int
    model: str
    tokens_used: Optional[int] = None


def _upstream_message(resp: requests.Response) -> str:
    """Best-effort extraction of the error message from a failed response body."""
    try:
        body = resp.json()
    except ValueError:
        return resp.reason or "Unknown error"
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
    return resp.reason or "Unknown error"


class ReasoningClient:
    """Stateless HTTP client; safe to share between threads and sessions."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = 30.0,
        temperature: float = 0.2,
        max_tokens: int = 4000,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self.base_url = base_url
        self.timeout_s = timeout_s
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReasoningClient":
        return cls(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout_s=settings.request_timeout_s,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key) and self._api_key != PLACEHOLDER_API_KEY

    def call(self, messages: Sequence[Message], model: str = DEFAULT_MODEL) -> ReasoningResponse:
        """
        Send *messages* (ordered role/content dicts) to the service.

        Raises:
            ValueError:      If *messages* is empty or malformed.
            ConfigError:     If no API key is configured.
            TransportError:  On connection failure or timeout.
            UpstreamError:   On a non-success status or a body without choices.
        """
        if not messages:
            raise ValueError("messages must contain at least one entry")
        for msg in messages:
            if "role" not in msg or "content" not in msg:
                raise ValueError("every message needs 'role' and 'content'")

        if not self.is_configured:
            raise ConfigError(
                "Reasoning API key not configured. Set PERPLEXITY_API_KEY in the environment."
            )

        payload = {
            "model": model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": False,
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        start = time.perf_counter()
        try:
            resp = requests.post(self.base_url, json=payload, headers=headers, timeout=self.timeout_s)
        except requests.Timeout as exc:
            raise TransportError(f"Reasoning call timed out after {self.timeout_s}s") from exc
        except requests.RequestException as exc:
            raise TransportError(f"Reasoning call failed: {exc}") from exc
        elapsed_ms = int((time.perf_counter() - start) * 1000)

        logger.debug("Reasoning call model=%s status=%d elapsed_ms=%d", model, resp.status_code, elapsed_ms)

        if not resp.ok:
            raise UpstreamError(resp.status_code, _upstream_message(resp))

        try:
            data = resp.json()
            choice = data["choices"][0]
            text = (choice.get("message") or {}).get("content") or ""
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            raise UpstreamError(resp.status_code, "Malformed response body") from exc

        usage = data.get("usage") if isinstance(data, dict) else None
        tokens = usage.get("total_tokens") if isinstance(usage, dict) else None

        return ReasoningResponse(text=text, elapsed_ms=elapsed_ms, model=model, tokens_used=tokens)
