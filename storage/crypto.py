"""
storage/crypto.py

Fernet encryption for PHI blobs (patient input, stage results, final
diagnoses, patient profiles).

Key lifecycle
-------------
The key is read from APP_DATA_KEY, a URL-safe base64-encoded 32-byte key as
produced by ``Fernet.generate_key()``.  If it is unset an in-memory key is
generated once per process and a warning is logged: data written in that
mode cannot be read after a restart.

Public API
----------
encrypt_json(data: dict) -> str
decrypt_json(token: str) -> dict
"""

import json
import logging
import os
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from pipelines.errors import InfrastructureError

logger = logging.getLogger(__name__)

_ENV_KEY_NAME = "APP_DATA_KEY"


@lru_cache(maxsize=1)
def _get_fernet() -> Fernet:
    raw_key = os.environ.get(_ENV_KEY_NAME)
    if raw_key:
        logger.debug("Fernet key loaded from '%s'.", _ENV_KEY_NAME)
        return Fernet(raw_key.encode())

    logger.warning(
        "%s is not set; using a temporary in-memory key. "
        "Stored sessions will NOT be readable after a restart.",
        _ENV_KEY_NAME,
    )
    return Fernet(Fernet.generate_key())


def encrypt_json(data: dict) -> str:
    """Serialise *data* to JSON and return it as a Fernet token string."""
    plaintext = json.dumps(data, ensure_ascii=False, default=str).encode("utf-8")
    return _get_fernet().encrypt(plaintext).decode("utf-8")


def decrypt_json(token: str) -> dict:
    """
    Inverse of :func:`encrypt_json`.

    Raises:
        InfrastructureError: wrong key or corrupted token.
    """
    try:
        plaintext = _get_fernet().decrypt(token.encode("utf-8"))
    except InvalidToken as exc:
        logger.error("Fernet decryption failed: wrong key or corrupted token.")
        raise InfrastructureError("Stored payload could not be decrypted") from exc
    return json.loads(plaintext.decode("utf-8"))
