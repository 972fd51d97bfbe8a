"""Streaming partial JSON parser for tool call arguments."""
from __future__ import annotations

import json
from typing import Any

from partial_json_parser import loads as partial_loads


def parse_streaming_json(partial: str) -> dict[str, Any]:
    """Parse potentially incomplete JSON from streaming tool call args.

    Uses three-tier fallback:
    1. Standard json.loads() for complete JSON
    2. partial_json_parser for incomplete JSON
    3. Empty dict fallback

    Only for display; arguments are validated separately once complete.
    """
    if not partial or not partial.strip():
        return {}
    try:
        result = json.loads(partial)
        return result if isinstance(result, dict) else {}
    except json.JSONDecodeError:
        pass
    try:
        result = partial_loads(partial)
    except Exception:
        return {}
    return result if isinstance(result, dict) else {}
