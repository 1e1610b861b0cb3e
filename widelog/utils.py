# FILE: widelog/utils.py
from __future__ import annotations

import datetime as _dt
import functools
import json
import math
import os
import re
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional

# ---------------------------------------------------------------------------
# Deep merge over nested mappings
# ---------------------------------------------------------------------------


def clone_value(value: Any) -> Any:
    """
    Structural copy of a nested value.

    Mappings become plain dicts and sequences become lists, recursively.
    Scalars and unknown objects are returned as-is.
    """
    if isinstance(value, Mapping):
        return {str(k): clone_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [clone_value(x) for x in value]
    return value


def deep_merge(target: MutableMapping[str, Any], partial: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    Merge `partial` into `target` in place and return `target`.

    Rules:
      - both values are mappings: merge recursively;
      - otherwise the incoming value replaces the current one (scalars,
        sequences and mixed types overwrite, never concatenate).

    No key is ever deleted.
    """
    for key, incoming in partial.items():
        k = str(key)
        current = target.get(k)
        if isinstance(current, MutableMapping) and isinstance(incoming, Mapping):
            deep_merge(current, incoming)
        else:
            target[k] = clone_value(incoming)
    return target


# ---------------------------------------------------------------------------
# Glob path matching
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=512)
def _compile_glob(pattern: str) -> "re.Pattern[str]":
    out = []
    i = 0
    n = len(pattern)
    while i < n:
        ch = pattern[i]
        if ch == "*":
            if i + 1 < n and pattern[i + 1] == "*":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("^" + "".join(out) + "$")


def matches_pattern(path: str, pattern: str) -> bool:
    """
    Glob-style path match.

    `**` matches across segments, `*` within one segment, `?` one character.
    Non-string input never matches.
    """
    if not isinstance(path, str) or not isinstance(pattern, str):
        return False
    return _compile_glob(pattern).match(path) is not None


# ---------------------------------------------------------------------------
# Header helpers
# ---------------------------------------------------------------------------

# Headers that must never reach enrichers or drains.
_SENSITIVE_HEADERS = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "x-auth-token",
    "x-access-token",
    "x-csrf-token",
    "x-xsrf-token",
}


def filter_safe_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Drop credentials and session headers; keys are lowercased."""
    out: Dict[str, str] = {}
    for k, v in (headers or {}).items():
        key = str(k).lower()
        if key in _SENSITIVE_HEADERS:
            continue
        out[key] = str(v)
    return out


def get_header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    if name in headers:
        return headers[name]
    lower = name.lower()
    if lower in headers:
        return headers[lower]
    for k, v in headers.items():
        if str(k).lower() == lower:
            return v
    return None


# ---------------------------------------------------------------------------
# Numbers, time, JSON
# ---------------------------------------------------------------------------


def finite_float(value: Any) -> Optional[float]:
    """Return `value` as a finite float, or None. bool is not a number here."""
    if isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(f):
        return None
    return f


def ts_iso(when: Optional[_dt.datetime] = None) -> str:
    # RFC3339 with milliseconds, UTC Z
    now = when or _dt.datetime.now(_dt.timezone.utc)
    now = now.astimezone(_dt.timezone.utc)
    ms = int(now.microsecond / 1000)
    base = now.replace(microsecond=0, tzinfo=None).isoformat()
    return f"{base}.{ms:03d}Z"


def compact_json(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def format_duration(ms: float) -> str:
    """
    Human form of a duration in milliseconds: "42ms" below one second,
    "1.50s" above.
    """
    if ms < 1000:
        return f"{round(ms)}ms"
    return f"{ms / 1000:.2f}s"


def split_csv(raw: Optional[str]) -> list:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


# ---------------------------------------------------------------------------
# Environment detection
# ---------------------------------------------------------------------------


def _first_env(names: Iterable[str]) -> Optional[str]:
    for name in names:
        v = os.environ.get(name)
        if v:
            return v
    return None


def detect_environment() -> Dict[str, Optional[str]]:
    """
    Read deployment identity from common platform variables.

    Missing values are returned as None so callers can layer their own
    defaults on top.
    """
    return {
        "service": _first_env(("WIDELOG_SERVICE", "SERVICE_NAME")),
        "environment": _first_env(("WIDELOG_ENV", "ENV")),
        "version": _first_env(("WIDELOG_VERSION", "APP_VERSION")),
        "commit_hash": _first_env(
            ("COMMIT_SHA", "GITHUB_SHA", "VERCEL_GIT_COMMIT_SHA", "CF_PAGES_COMMIT_SHA")
        ),
        "region": _first_env(("VERCEL_REGION", "AWS_REGION", "FLY_REGION", "CF_REGION")),
    }
