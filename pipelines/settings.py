"""
pipelines/settings.py

Runtime configuration, read once from environment variables.

Variables
---------
PERPLEXITY_API_KEY          reasoning-service credential (unset => every stage falls back)
REASONING_BASE_URL          chat-completions endpoint
REASONING_TIMEOUT_S         per-call deadline in seconds
REASONING_MODEL             default model identifier
REASONING_MODEL_<STAGE>     per-stage override, e.g. REASONING_MODEL_AGGREGATOR
DIAGNOSIS_DB_PATH           SQLite database file
LOG_LEVEL                   root log level used by configure_logging()

APP_DATA_KEY (payload encryption) is read directly by storage.crypto.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_BASE_URL = "https://api.perplexity.ai/chat/completions"
DEFAULT_MODEL = "sonar"
DEFAULT_DB_PATH = Path("data") / "diagnosis.db"

# Shipped in the original .env template; never a real key.
PLACEHOLDER_API_KEY = "your_perplexity_api_key_here"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_STAGE_MODEL_PREFIX = "REASONING_MODEL_"


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    request_timeout_s: float = Field(default=30.0, gt=0)
    default_model: str = DEFAULT_MODEL
    stage_models: dict[str, str] = Field(default_factory=dict)
    db_path: Path = DEFAULT_DB_PATH
    log_level: str = "INFO"

    @property
    def api_key_configured(self) -> bool:
        key = (self.api_key or "").strip()
        return bool(key) and key != PLACEHOLDER_API_KEY

    def model_for(self, stage: str) -> str:
        """Model identifier for *stage* (a Stage value), falling back to the default."""
        return self.stage_models.get(stage, self.default_model)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        stage_models = {
            key[len(_STAGE_MODEL_PREFIX):].lower(): value
            for key, value in env.items()
            if key.startswith(_STAGE_MODEL_PREFIX) and value
        }

        values: dict = {"stage_models": stage_models}
        if env.get("PERPLEXITY_API_KEY"):
            values["api_key"] = env["PERPLEXITY_API_KEY"]
        if env.get("REASONING_BASE_URL"):
            values["base_url"] = env["REASONING_BASE_URL"]
        if env.get("REASONING_TIMEOUT_S"):
            values["request_timeout_s"] = env["REASONING_TIMEOUT_S"]
        if env.get("REASONING_MODEL"):
            values["default_model"] = env["REASONING_MODEL"]
        if env.get("DIAGNOSIS_DB_PATH"):
            values["db_path"] = env["DIAGNOSIS_DB_PATH"]
        if env.get("LOG_LEVEL"):
            values["log_level"] = env["LOG_LEVEL"].upper()
        return cls(**values)


def configure_logging(level: str | int = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
