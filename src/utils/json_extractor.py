# src/utils/json_extractor.py
"""
Extract a JSON value from raw LLM completion text.

Models wrap JSON in prose, markdown fences or truncated tool-call payloads.
`extract_json` tries progressively looser strategies and reports a readable
failure reason instead of raising.
"""
from pydantic import BaseModel, ConfigDict
from typing import Any, List, Optional, Tuple
import json
import re

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)

_CLOSERS = {"{": "}", "[": "]"}


class JsonExtractionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    data: Any = None
    error: Optional[str] = None
    raw_response: str = ""


def find_matching_bracket(text: str, start: int) -> int:
    """
    Find the index of the bracket that closes the one at `start`.

    Brackets inside string literals are ignored and backslash escapes are
    honoured. Returns -1 when the opener is never closed.
    """
    stack: List[str] = []
    in_string = False
    escaped = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in ("}", "]"):
            if not stack or stack[-1] != ch:
                return -1
            stack.pop()
            if not stack:
                return i
    return -1


def _try_parse(candidate: str) -> Tuple[bool, Any, Optional[json.JSONDecodeError]]:
    try:
        return True, json.loads(candidate), None
    except json.JSONDecodeError as e:
        return False, None, e


def _structured(data: Any) -> bool:
    return isinstance(data, (dict, list))


def extract_json(text: Optional[str]) -> JsonExtractionResult:
    """
    Locate and parse the JSON object or array in a completion response.

    Strategies, in order:
        1. parse the whole (stripped) text
        2. parse the contents of a markdown code fence
        3. scan each `{`/`[` in position order, cut at its matching closer
           and parse the first candidate that decodes

    Args:
        text: Raw completion text (or tool-call argument string)

    Returns:
        JsonExtractionResult with `data` on success or `error` on failure
    """
    raw = text or ""
    stripped = raw.strip()
    if not stripped:
        return JsonExtractionResult(success=False, error="empty response", raw_response=raw)

    # 1. Direct parse
    ok, data, _ = _try_parse(stripped)
    if ok:
        if _structured(data):
            return JsonExtractionResult(success=True, data=data, raw_response=raw)
        return JsonExtractionResult(
            success=False, error="parsed JSON but unexpected structure", raw_response=raw
        )

    # 2. Code fences
    fence = _FENCE_RE.search(stripped)
    if fence:
        ok, data, _ = _try_parse(fence.group(1))
        if ok and _structured(data):
            return JsonExtractionResult(success=True, data=data, raw_response=raw)
        if ok:
            return JsonExtractionResult(
                success=False, error="parsed JSON but unexpected structure", raw_response=raw
            )

    # 3. Bracket scan
    first_error: Optional[Tuple[int, str]] = None
    found_boundary = False
    for start, ch in enumerate(stripped):
        if ch not in _CLOSERS:
            continue
        end = find_matching_bracket(stripped, start)
        if end == -1:
            continue
        found_boundary = True
        ok, data, err = _try_parse(stripped[start:end + 1])
        if ok:
            return JsonExtractionResult(success=True, data=data, raw_response=raw)
        if first_error is None:
            first_error = (start + err.pos, err.msg)

    if not found_boundary:
        return JsonExtractionResult(success=False, error="no JSON boundaries found", raw_response=raw)

    position, message = first_error
    return JsonExtractionResult(
        success=False,
        error=f"parse error at position {position}: {message}",
        raw_response=raw,
    )
