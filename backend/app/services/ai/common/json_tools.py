"""Tolerant JSON object extraction from model output."""

from __future__ import annotations

import json
from typing import Any


def _strip_fences(text: str) -> str:
    s = text.strip()
    if s.startswith("```"):
        s = s.split("\n", 1)[-1] if "\n" in s else s[3:]
        if s.rstrip().endswith("```"):
            s = s.rstrip()[:-3]
    return s.strip()


def extract_json_object(text: str | None) -> dict[str, Any] | None:
    """Return the first JSON object found in *text*, or ``None``.

    Handles markdown code fences and prose around the object.
    """
    if not text or not text.strip():
        return None

    stripped = _strip_fences(text)
    try:
        parsed = json.loads(stripped)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    for i, ch in enumerate(stripped):
        if ch == "{":
            candidate = _balanced_object(stripped, i)
            if candidate is not None:
                return candidate
    return None


def _balanced_object(text: str, start: int) -> dict[str, Any] | None:
    depth = 0
    in_string = False
    escape = False

    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\" and in_string:
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                try:
                    parsed = json.loads(text[start : i + 1])
                except ValueError:
                    return None
                return parsed if isinstance(parsed, dict) else None
    return None
