"""
JSON extraction from model output.

Models wrap JSON in prose and code fences no matter how firmly they are told
not to. These helpers find the payload.
"""

import json
import re

__all__ = ["ParseError", "strip_markdown_fences", "extract_json_block", "parse_json_object"]

_FENCE_PATTERN = re.compile(r'```json\s*([\s\S]*?)```', re.IGNORECASE)
_BRACE_SPAN_PATTERN = re.compile(r'\{[\s\S]*\}')
_decoder = json.JSONDecoder()


class ParseError(ValueError):
    """No usable JSON object in model output."""
    pass


def strip_markdown_fences(text: str) -> str:
    """Strip a surrounding markdown code fence from text if present."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        if lines and lines[0].strip().startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines)
    return text


def extract_json_block(text: str) -> str | None:
    """Return the JSON candidate in `text`.

    A ```json fenced block wins. Otherwise any bare fence is dropped and the
    first `{` that starts a complete JSON object is decoded up to its matching
    brace, so prose before and after the object (braces included) is ignored.
    If no `{` starts valid JSON, the span from the first `{` to the last `}`
    is returned so the caller can report the decode error.
    """
    trimmed = text.strip()

    fence_match = _FENCE_PATTERN.search(trimmed)
    if fence_match:
        return fence_match.group(1).strip()

    body = strip_markdown_fences(trimmed)
    start = body.find("{")
    while start != -1:
        try:
            _, end = _decoder.raw_decode(body, start)
        except json.JSONDecodeError:
            start = body.find("{", start + 1)
            continue
        return body[start:end]

    span_match = _BRACE_SPAN_PATTERN.search(body)
    if span_match:
        return span_match.group(0)
    return None


def parse_json_object(text: str) -> dict:
    """Extract and decode a JSON object from model output.

    Raises:
        ParseError: If no JSON is found, it does not decode, or it is not an object
    """
    candidate = extract_json_block(text)
    if not candidate:
        raise ParseError("Unable to locate JSON in AI response.")

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ParseError(f"Failed to parse JSON phase plan: {e}") from e

    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object, got {type(data).__name__}")
    return data
