from __future__ import annotations

import base64
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from loguru import logger

AUDIT_ENCRYPTION_KEY = os.getenv(
    "AUDIT_ENCRYPTION_KEY",
    "6465762d61756469742d6b65792d6368616e67652d6d652d3030303030303030",
)
SEALED_ALGORITHM = "AES-256-GCM"
NONCE_BYTES = 12


def _cipher() -> AESGCM:
    key = bytes.fromhex(AUDIT_ENCRYPTION_KEY)
    if len(key) != 32:
        raise ValueError("AUDIT_ENCRYPTION_KEY must be 32 bytes, hex encoded")
    return AESGCM(key)


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def is_sealed(data: Any) -> bool:
    return isinstance(data, dict) and data.get("alg") == SEALED_ALGORITHM and "ciphertext" in data


def seal_metadata(data: dict[str, Any], associated: str) -> dict[str, Any]:
    """Encrypt a metadata dict, bound to ``associated`` (the audit entry id)."""
    nonce = os.urandom(NONCE_BYTES)
    plaintext = json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")
    ciphertext = _cipher().encrypt(nonce, plaintext, associated.encode("utf-8"))
    return {"alg": SEALED_ALGORITHM, "nonce": _b64(nonce), "ciphertext": _b64(ciphertext)}


def open_metadata(data: dict[str, Any], associated: str) -> dict[str, Any]:
    # Rows written before encryption was enabled are returned unchanged.
    if not is_sealed(data):
        return dict(data)
    try:
        plaintext = _cipher().decrypt(
            base64.b64decode(data["nonce"]),
            base64.b64decode(data["ciphertext"]),
            associated.encode("utf-8"),
        )
    except (InvalidTag, ValueError) as exc:
        logger.bind(event="audit_decrypt_failed", entry_id=associated).error(
            "audit metadata for {} could not be decrypted: {}", associated, type(exc).__name__
        )
        return {"error": "metadata could not be decrypted"}
    return json.loads(plaintext)
