"""
auth/tokens.py -- Random identifiers, display masking and at-rest hashing.

Security design decisions:
  Generation: secrets.token_hex() over os.urandom. Session ids and ephemeral
       API tokens use 32 bytes (256 bits) of entropy; brute force is
       computationally infeasible, and collisions are negligible.

  At-rest hashing: SHA-256, unsalted. Every token that reaches the database
       (session ids, invite/setup tokens, admin API tokens) is high-entropy
       random data, so Argon2's deliberate slowness buys nothing here and
       would turn every lookup into a full table scan. The deterministic digest
       allows an indexed equality lookup.

  Masking: tokens longer than 12 characters show the first 8 and last 4; short
       tokens collapse to a fixed 8-character placeholder so the display never
       leaks the real length.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

MASK_PLACEHOLDER = "********"
_MASK_THRESHOLD = 12


def random_token(byte_length: int = 32) -> str:
    """Return `byte_length` cryptographically random bytes as lowercase hex."""
    if byte_length <= 0:
        raise ValueError("byte_length must be positive")
    return secrets.token_hex(byte_length)


def mask_token(token: str) -> str:
    """Mask a token for display: "abcd1234...wxyz", or "********" if short."""
    if len(token) <= _MASK_THRESHOLD:
        return MASK_PLACEHOLDER
    return f"{token[:8]}...{token[-4:]}"


def hash_token(token: str) -> str:
    """Return the SHA-256 hex digest of a token for at-rest storage."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_state_token() -> str:
    """Return a 32-hex-character anti-CSRF value for the OAuth round trip."""
    return secrets.token_hex(16)


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two strings without leaking the position of the first difference."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
