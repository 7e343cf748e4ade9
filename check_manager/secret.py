"""
Check Manager - Secret Generator.

Shared secrets authorize metric submission to a newly
created check. The secret ends up embedded in the trap URL,
so it is restricted to lowercase hex.
"""

import hashlib
import logging
import secrets

from .exceptions import RandomSourceError


logger = logging.getLogger(__name__)


SECRET_LENGTH = 16
_ENTROPY_BYTES = 2048


def make_secret(length: int = SECRET_LENGTH) -> str:
    """
    Generate a random URL-safe secret.

    Args:
        length: Number of hex characters (max 64)

    Returns:
        Hex string of the requested length

    Raises:
        RandomSourceError: If the entropy source is unavailable
    """
    if not 0 < length <= 64:
        raise ValueError("secret length must be between 1 and 64")

    try:
        raw = secrets.token_bytes(_ENTROPY_BYTES)
    except (OSError, NotImplementedError) as e:
        logger.error(f"[secret] Entropy source failed: {e}")
        raise RandomSourceError(e) from e

    return hashlib.sha256(raw).hexdigest()[:length]
