"""Common utility helpers: base64, timestamps, SHA-256."""

import base64
import hashlib
import time
from typing import Union


def now_ms() -> int:
    """Return current time in Unix milliseconds."""
    return int(time.time() * 1000)


def sha256_hex(data: Union[bytes, str]) -> str:
    """SHA-256 hex digest; str input is UTF-8 encoded."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode("ascii"))
