"""
API key hashing utilities.

Security notes:
  • SHA-256 is used for key hashing — acceptable for API keys because
    they are high-entropy random strings (not low-entropy passwords).
    bcrypt/argon2 would add latency to every request.
  • generate_api_key() returns the raw key exactly once — the caller
    must hand it to the user immediately. It is never stored or logged.
"""

import hashlib
import secrets

MAX_KEY_LENGTH = 256
PREFIX_LENGTH = 8


def hash_api_key(raw_key: str) -> str:
    """
    Hash a raw API key using SHA-256.

    Returns the hex digest string for storage/lookup.
    """
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def is_well_formed(raw_key: str | None) -> bool:
    """Cheap shape check before hashing: non-empty, bounded, printable, no spaces."""
    if not raw_key or len(raw_key) > MAX_KEY_LENGTH:
        return False
    return raw_key.isprintable() and not any(ch.isspace() for ch in raw_key)


def generate_api_key() -> tuple[str, str]:
    """
    Generate a new API key.

    Returns:
        (raw_key, key_hash) — raw_key is shown once, key_hash is stored.
    """
    raw_key = secrets.token_hex(32)  # 64 hex chars = 256 bits
    return raw_key, hash_api_key(raw_key)
