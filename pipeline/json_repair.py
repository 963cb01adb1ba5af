"""JSON recovery for text produced by LLM collaborators.

Collaborator output may be wrapped in markdown fences, cut off at the
output-token ceiling, or buried in commentary that itself contains
brace-like fragments. Everything here is pure, synchronous scanning.

All scanners are string/escape aware: characters inside quoted strings
(including escaped quotes) never change nesting depth.
"""

from __future__ import annotations

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"\n?```[a-zA-Z0-9_-]*[ \t]*\n?")

# Truncation cut points, least to most aggressive.
_INCOMPLETE_STRING_RE = re.compile(r',?\s*"[^"]*$')
_INCOMPLETE_PAIR_RE = re.compile(r',?\s*"[^"]*"\s*:\s*"?[^"{}\[\]]*$')
_AFTER_LAST_CLOSER_RE = re.compile(r"[^}\]]*$")

_OPENERS = {"{": "}", "[": "]"}


def strip_fences(text: str) -> str:
    """Remove markdown code-fence markers (```json ... ```) and trim."""
    if not text:
        return ""
    return _FENCE_RE.sub("", text).strip()


def _parses(candidate: str) -> bool:
    try:
        json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return False
    return True


def _balanced_end(text: str, start: int) -> int | None:
    """Index of the bracket closing the one at ``start``, or None.

    Only the bracket kind found at ``start`` affects depth; the other kind
    is ignored, matching how a JSON value of that kind nests.
    """
    opener = text[start]
    closer = _OPENERS[opener]
    depth = 0
    in_string = False
    escape = False
    for idx in range(start, len(text)):
        ch = text[idx]
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
        if ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return idx
    return None


def _balanced_candidates(text: str, opener: str):
    """Yield every balanced ``opener``...closer slice of ``text`` in order."""
    for start, ch in enumerate(text):
        if ch != opener:
            continue
        end = _balanced_end(text, start)
        if end is not None:
            yield text[start:end + 1]


def extract_json_object(text: str) -> str | None:
    """Return the longest balanced ``{...}`` slice of ``text`` that parses.

    Picking the longest (rather than the first) parseable candidate keeps a
    small fragment in leading commentary from winning over the payload.
    """
    if not text:
        return None
    best: str | None = None
    for candidate in _balanced_candidates(text, "{"):
        if best is not None and len(candidate) <= len(best):
            continue
        if _parses(candidate):
            best = candidate
    return best


def extract_json_array(text: str) -> str | None:
    """Return the longest balanced ``[...]`` slice of ``text`` that parses to a list."""
    if not text:
        return None
    best: str | None = None
    for candidate in _balanced_candidates(text, "["):
        if best is not None and len(candidate) <= len(best):
            continue
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(parsed, list):
            best = candidate
    return best


def find_object_with_key(text: str, key: str) -> dict[str, Any] | None:
    """Parse every balanced object in ``text``; prefer one containing ``key``.

    Falls back to the longest parseable object when none has the key.
    """
    parsed = _parsed_objects(text)
    for _, obj in parsed:
        if key in obj:
            return obj
    if parsed:
        return parsed[0][1]
    return None


def objects_with_key(text: str, key: str) -> list[dict[str, Any]]:
    """Every balanced object in ``text`` that parses and holds ``key``, longest first."""
    return [obj for _, obj in _parsed_objects(text) if key in obj]


def _parsed_objects(text: str) -> list[tuple[int, dict[str, Any]]]:
    if not text:
        return []
    found: list[tuple[int, dict[str, Any]]] = []
    for candidate in _balanced_candidates(text, "{"):
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(parsed, dict):
            found.append((len(candidate), parsed))
    # stable: equal sizes keep scan order
    found.sort(key=lambda item: -item[0])
    return found


def _closers_for(candidate: str) -> tuple[list[str], bool]:
    """Return (closing brackets still required, ends inside a string)."""
    stack: list[str] = []
    in_string = False
    escape = False
    for ch in candidate:
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
        if ch in _OPENERS:
            stack.append(_OPENERS[ch])
        elif ch in ("}", "]") and stack:
            stack.pop()
    return stack, in_string


def repair_truncated_json(text: str) -> str | None:
    """Close a JSON document that was cut off mid-output.

    Tries cut points from least to most aggressive: the raw text, the text
    with a trailing incomplete string stripped, with a trailing incomplete
    key/value pair stripped, and trimmed back to the last ``}`` or ``]``.
    For each, the still-open brackets are closed in reverse order and the
    result test-parsed; the first that parses is returned.

    Already-valid JSON comes back unchanged. Returns None when every cut
    point is still inside an open string or nothing parses.
    """
    if not text:
        return None
    candidates = [
        text,
        _INCOMPLETE_STRING_RE.sub("", text, count=1),
        _INCOMPLETE_PAIR_RE.sub("", text, count=1),
        _AFTER_LAST_CLOSER_RE.sub("", text, count=1),
    ]
    for candidate in candidates:
        candidate = candidate.rstrip()
        if len(candidate) < 2:
            continue
        closers, in_string = _closers_for(candidate)
        if in_string:
            continue
        repaired = candidate + "".join(reversed(closers))
        if _parses(repaired):
            return repaired
    return None


def load_json_lenient(raw: str) -> Any:
    """Parse JSON with fallback repair for common LLM quirks.

    Handles: markdown fences, trailing commas, unquoted numeric keys.
    Raises json.JSONDecodeError when nothing works.
    """
    cleaned = strip_fences(raw)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Quote unquoted numeric keys, then drop trailing commas before } or ]
    fixed = re.sub(r'(?<=[\{,])\s*(\d+)\s*:', r' "\1":', cleaned)
    fixed = re.sub(r',\s*([}\]])', r'\1', fixed)
    try:
        return json.loads(fixed)
    except json.JSONDecodeError:
        pass

    # Give up — raise the original error
    return json.loads(cleaned)
