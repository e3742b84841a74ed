from __future__ import annotations

import hmac
import hashlib


def hash_identifier(salt: str, value: str) -> str:
    """Keyed SHA-256 of a normalized identifier, hex encoded."""
    return hmac.new(salt.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()
