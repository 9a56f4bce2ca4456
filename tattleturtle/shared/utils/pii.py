"""Identifier hashing for logs.

Student ids are pseudonymous but stable per device, and conversation ids
embed the student id, so neither is written to logs in clear text.
"""
import hashlib
import logging
import secrets
from typing import Optional

logger = logging.getLogger(__name__)


MIN_SALT_LENGTH = 32

_PII_SALT: Optional[str] = None


def configure_pii_salt(salt: str) -> None:
    """Configure the salt used for identifier hashing.

    Should be called during application startup, before any session starts.

    Args:
        salt: Secret salt value (e.g. from PII_HASH_SALT)

    Raises:
        ValueError: If salt is empty or too short
    """
    global _PII_SALT
    if not salt or len(salt) < MIN_SALT_LENGTH:
        logger.critical(
            "PII_SALT_CONFIGURATION_FAILED",
            extra={"reason": "Salt too short or empty", "min_length": MIN_SALT_LENGTH}
        )
        raise ValueError(f"PII salt must be at least {MIN_SALT_LENGTH} characters")

    _PII_SALT = salt
    logger.info("PII_SALT_CONFIGURED", extra={"salt_length": len(salt)})


def _current_salt() -> str:
    # The fail-safe path logs identifiers, so hashing must never raise.
    global _PII_SALT
    if _PII_SALT is None:
        _PII_SALT = secrets.token_hex(MIN_SALT_LENGTH)
        logger.warning(
            "PII_SALT_GENERATED",
            extra={"reason": "Salt not configured", "scope": "process"}
        )
    return _PII_SALT


def hash_pii(value: str) -> str:
    """Hash an identifier for safe logging.

    Uses SHA-256 with a secret salt so the same student or conversation
    correlates across log lines without being reversible.

    Args:
        value: Identifier to hash (student id, conversation id)

    Returns:
        64-char hex digest
    """
    salted = f"{_current_salt()}{value}"
    return hashlib.sha256(salted.encode()).hexdigest()


def hash_text_for_audit(text: str) -> str:
    """Fingerprint utterance text without exposing its content.

    Args:
        text: Raw utterance text

    Returns:
        SHA-256 hash of the text
    """
    return hashlib.sha256(text.encode()).hexdigest()
