"""Identifier and ARN generation.

Two families of tokens are produced:

- random tokens for identifiers minted once per call (instance ids, change
  ids, secret ARN suffixes, version ids);
- deterministic tokens for identifiers a client sees repeatedly over an
  entity's life but that are not persisted, re-derived from the entity's
  stable identifier on every read.
"""

from __future__ import annotations

import hashlib
import secrets

ARN_PARTITION = "aws"


def random_token(length: int) -> str:
    """Cryptographically random lowercase hex string of exactly ``length`` chars."""
    if length < 0:
        raise ValueError(f"length must be >= 0: {length}")
    return secrets.token_hex((length + 1) // 2)[:length]


def deterministic_token(seed: str, length: int) -> str:
    """Lowercase hex digest of ``seed`` truncated to ``length`` chars.

    Uses an extendable-output hash, so any length is available and the
    shorter token is always a prefix of the longer one for the same seed.
    """
    if length < 0:
        raise ValueError(f"length must be >= 0: {length}")
    if length == 0:
        return ""
    return hashlib.shake_256(seed.encode("utf-8")).hexdigest((length + 1) // 2)[:length]


def random_uuid() -> str:
    """Random identifier in the 8-4-4-4-12 UUID layout."""
    token = random_token(32)
    return f"{token[0:8]}-{token[8:12]}-{token[12:16]}-{token[16:20]}-{token[20:32]}"


def build_arn(
    service: str,
    resource: str,
    region: str,
    account_id: str,
    partition: str = ARN_PARTITION,
) -> str:
    """Build ``arn:<partition>:<service>:<region>:<account>:<resource>``.

    Global services pass an empty region (and, for some, an empty account).
    """
    return f"arn:{partition}:{service}:{region}:{account_id}:{resource}"


def prefixed_id(prefix: str, length: int = 17) -> str:
    """Provider style id such as ``i-0abc...`` or ``vol-0abc...``."""
    return f"{prefix}-{random_token(length)}"


def deterministic_uuid(seed: str) -> str:
    """UUID-layout identifier derived from ``seed``."""
    token = deterministic_token(seed, 32)
    return f"{token[0:8]}-{token[8:12]}-{token[12:16]}-{token[16:20]}-{token[20:32]}"
