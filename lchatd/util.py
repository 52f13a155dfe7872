from __future__ import annotations

import os
import time
import uuid


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


def has_control_chars(s: str) -> bool:
    return any(ch in s for ch in ("\n", "\r", "\x00", "\t"))


def normalize_display_name(value, *, max_chars: int = 20) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        s = s[: int(max_chars)]

    # Keep this conservative: avoid embedded newlines or NUL, which frequently
    # cause UI/log formatting issues.
    if has_control_chars(s):
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def preview(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
