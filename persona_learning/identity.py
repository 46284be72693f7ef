from __future__ import annotations

import hashlib
import json
import re
import secrets
import time
from typing import Mapping

_USER_ID_RE = re.compile(r"^user_[a-z0-9_]+$")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_user_id(fingerprint: Mapping[str, str]) -> str:
    """Deterministic opaque id from client traits. Not an authentication mechanism."""
    data = json.dumps(dict(fingerprint), sort_keys=True, ensure_ascii=False)
    digest = hashlib.sha256(data.encode("utf-8")).digest()
    return f"user_{_base36(int.from_bytes(digest[:8], 'big'))}"


def anonymous_user_id() -> str:
    return f"user_anon_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def is_valid_user_id(user_id: str) -> bool:
    return bool(_USER_ID_RE.match(str(user_id or "")))
