"""PII handling utilities: no raw volunteer or admin emails in logs.

Emails are the only personal identifiers the coordination engine touches.
They are stored as-is in the shared store (the admin UI needs them) but
every log line carries the salted hash instead.
"""
import hashlib
import logging
from typing import Optional

logger = logging.getLogger(__name__)


# Loaded from the environment or AWS Secrets Manager at process start
_PII_SALT: Optional[str] = None


def configure_pii_salt(salt: str) -> None:
    """Configure the PII hashing salt.

    Must be called during process startup before any PII hashing.

    Args:
        salt: Secret salt value

    Raises:
        ValueError: If salt is empty or too short
    """
    global _PII_SALT
    if not salt or len(salt) < 32:
        logger.critical(
            "PII_SALT_CONFIGURATION_FAILED",
            extra={"reason": "Salt too short or empty", "min_length": 32}
        )
        raise ValueError("PII salt must be at least 32 characters")

    _PII_SALT = salt
    logger.info("PII_SALT_CONFIGURED", extra={"salt_length": len(salt)})


def hash_pii(value: Optional[str]) -> Optional[str]:
    """Hash an identifier (volunteer or admin email) for safe logging.

    Args:
        value: The email to hash; ``None`` passes through

    Returns:
        64-char hex digest, or None

    Raises:
        RuntimeError: If PII salt has not been configured
    """
    if value is None:
        return None

    if _PII_SALT is None:
        logger.critical(
            "PII_HASH_FAILED",
            extra={"reason": "Salt not configured", "action": "call configure_pii_salt()"}
        )
        raise RuntimeError("PII salt not configured. Call configure_pii_salt() first.")

    salted = f"{_PII_SALT}{value.strip().lower()}"
    return hashlib.sha256(salted.encode()).hexdigest()
