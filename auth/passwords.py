"""
auth/passwords.py -- Argon2id password hashing and verification.

Security design decisions:
  Algorithm: Argon2id via argon2-cffi's PasswordHasher, which emits the
       standard PHC string:

           $argon2id$v=19$m=65536,t=3,p=4$<b64 salt>$<b64 hash>

       Fixed cost parameters: 3 iterations, 64 MiB memory, 4 lanes, 32-byte
       key, 16-byte random salt. Verification reads the parameters back out
       of the encoding, so hashes produced under older parameters keep
       verifying; needs_rehash() tells callers when to upgrade one.

  Fail closed: verify_password() returns False -- it never raises -- for an
       empty password, an empty hash, a wrong field count, a tag other than
       argon2id, a version other than 19, unparsable parameters, or a salt or
       digest that is not valid base64. The encoding is parsed BEFORE any
       Argon2 work runs, so a bcrypt or argon2i string costs nothing to reject.

  Timing equalization: DUMMY_HASH lets callers burn the same Argon2 cost when
       the account does not exist, so response time does not reveal whether a
       username is valid [C1].

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import base64
import binascii
import logging

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from auth.errors import MalformedCredentialError

logger = logging.getLogger("admingate.auth.passwords")

ARGON2_TAG = "argon2id"
ARGON2_VERSION = 19
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 64 * 1024  # KiB
ARGON2_PARALLELISM = 4
ARGON2_HASH_LEN = 32
ARGON2_SALT_LEN = 16

_hasher = PasswordHasher(
    time_cost=ARGON2_TIME_COST,
    memory_cost=ARGON2_MEMORY_COST,
    parallelism=ARGON2_PARALLELISM,
    hash_len=ARGON2_HASH_LEN,
    salt_len=ARGON2_SALT_LEN,
    type=Type.ID,
)


def hash_password(password: str) -> str:
    """Return the Argon2id PHC encoding of `password` with a fresh random salt."""
    return _hasher.hash(password)


def verify_password(password: str, encoded: str) -> bool:
    """Return True if `password` matches the Argon2id `encoded` hash.

    Never raises. Any malformed or foreign encoding is a plain False.
    """
    if not password or not encoded:
        return False
    try:
        _parse_encoding(encoded)
    except MalformedCredentialError:
        return False
    try:
        return _hasher.verify(encoded, password)
    except (VerificationError, InvalidHashError):
        return False


def is_argon2_hash(value: str) -> bool:
    """Return True if `value` parses as an Argon2id PHC encoding."""
    try:
        _parse_encoding(value)
    except MalformedCredentialError:
        return False
    return True


def needs_rehash(encoded: str) -> bool:
    """Return True if `encoded` was produced with different cost parameters.

    Malformed encodings always need a rehash.
    """
    if not is_argon2_hash(encoded):
        return True
    return _hasher.check_needs_rehash(encoded)


def _parse_encoding(encoded: str) -> tuple[int, int, int, int, bytes, bytes]:
    """Split a PHC string into (version, memory, time, parallelism, salt, digest).

    Raises MalformedCredentialError on any deviation from the argon2id format.
    """
    if not encoded:
        raise MalformedCredentialError("empty hash")
    parts = encoded.split("$")
    # Leading "$" yields an empty first field: ["", tag, v, params, salt, hash]
    if len(parts) != 6 or parts[0] != "":
        raise MalformedCredentialError("wrong field count")
    if parts[1] != ARGON2_TAG:
        raise MalformedCredentialError(f"unsupported algorithm {parts[1]!r}")

    version = _parse_int_field(parts[2], "v")
    if version != ARGON2_VERSION:
        raise MalformedCredentialError(f"unsupported version {version}")

    params: dict[str, int] = {}
    for item in parts[3].split(","):
        key, sep, _ = item.partition("=")
        if not sep:
            raise MalformedCredentialError("bad parameter list")
        params[key] = _parse_int_field(item, key)
    if set(params) != {"m", "t", "p"}:
        raise MalformedCredentialError("bad parameter list")
    if min(params.values()) <= 0:
        raise MalformedCredentialError("non-positive parameter")

    salt = _b64decode(parts[4])
    digest = _b64decode(parts[5])
    return version, params["m"], params["t"], params["p"], salt, digest


def _parse_int_field(item: str, key: str) -> int:
    prefix = f"{key}="
    if not item.startswith(prefix):
        raise MalformedCredentialError(f"missing {key}=")
    raw = item[len(prefix) :]
    if not raw.isdigit():
        raise MalformedCredentialError(f"non-numeric {key}")
    return int(raw)


def _b64decode(value: str) -> bytes:
    # PHC strings use unpadded standard base64
    if not value:
        raise MalformedCredentialError("empty base64 field")
    try:
        return base64.b64decode(value + "=" * (-len(value) % 4), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedCredentialError("invalid base64") from exc


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
DUMMY_HASH: str = hash_password("admingate_timing_dummy")
