"""
pipelines/errors.py

Exception hierarchy for the diagnosis pipeline.

    DiagnosisError
    ├── ReasoningError        anything raised by the reasoning client
    │   ├── ConfigError       credential / configuration missing
    │   ├── TransportError    network failure or per-call timeout
    │   └── UpstreamError     reasoning service answered with a failure status
    ├── ExtractionError       response text held no valid, schema-conforming result
    └── InfrastructureError   session / metrics persistence failure

Stage agents absorb ReasoningError and ExtractionError through their
deterministic fallbacks.  InfrastructureError is the only class expected to
reach the coordinator, which turns it into an "error" session.
"""

from __future__ import annotations


class DiagnosisError(Exception):
    """Base class for every error raised by this package."""


class ReasoningError(DiagnosisError):
    """A call to the reasoning service did not produce text."""


class ConfigError(ReasoningError):
    """Required credential or configuration value is missing."""


class TransportError(ReasoningError):
    """Network failure or timeout while talking to the reasoning service."""


class UpstreamError(ReasoningError):
    """The reasoning service responded with a non-success status."""

    def __init__(self, status_code: int, message: str = "Unknown error") -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Reasoning service error: {status_code} - {message}")


class ExtractionError(DiagnosisError):
    """Model output did not contain a valid result for the stage schema."""


class InfrastructureError(DiagnosisError):
    """Persistence layer failure (SQLite, filesystem)."""
