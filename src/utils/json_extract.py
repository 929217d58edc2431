from __future__ import annotations

import json
import re


class JSONExtractionError(ValueError):
    pass


_FENCE_RE = re.compile(r"^```(?:json)?\s*(?P<body>.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def extract_first_json_object(text: str) -> dict:
    """Parse the JSON object in an LLM reply.

    Accepts a bare object or one wrapped in a ```json fence; anything else is an error.
    """
    s = (text or "").strip()
    fenced = _FENCE_RE.match(s)
    if fenced:
        s = fenced.group("body").strip()

    start = s.find("{")
    end = s.rfind("}")
    if start == -1 or end == -1 or end <= start:
        raise JSONExtractionError("No JSON object found in response.")

    try:
        data = json.loads(s[start : end + 1])
    except json.JSONDecodeError as e:
        raise JSONExtractionError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise JSONExtractionError("Top-level JSON value is not an object.")
    return data
