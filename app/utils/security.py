"""
Security utilities: access token hashing, content hashes, webhook signatures.
"""
import hashlib
import hmac
import logging
import secrets
from typing import Tuple

from app.config import get_settings
from app.utils.logging import fingerprint

logger = logging.getLogger(__name__)


def hash_access_token(token: str) -> str:
    """
    Hash an access token using SHA-256 with salt.
    Used to store tokens securely in the access_tokens table.

    Note: Never log raw token or salt - use fingerprints only.
    """
    settings = get_settings()
    salt = settings.signing_token_salt

    salted = f"{salt}{token}"
    result = hashlib.sha256(salted.encode()).hexdigest()

    logger.debug(
        f"hash_access_token: salt_fp={fingerprint(salt)}, "
        f"token_fp={fingerprint(token)}, hash_fp={result[:8]}"
    )
    return result


def generate_access_token() -> Tuple[str, str]:
    """
    Generate a new access token and its hash.

    Returns:
        Tuple of (plain_token, hashed_token)
    """
    token = secrets.token_urlsafe(32)
    return token, hash_access_token(token)


def compute_bytes_hash(data: bytes) -> str:
    """Compute SHA-256 hash of bytes."""
    return hashlib.sha256(data).hexdigest()


def sign_webhook_payload(body: bytes, secret: str) -> str:
    """
    Value for the X-Signature-256 header: "sha256=" + HMAC-SHA256 hex digest of
    the exact request body.
    """
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"
