"""Shared helpers."""

from turnkit.utils.json_parse import parse_streaming_json
from turnkit.utils.sanitize import cap_output, sanitize_output

__all__ = ["cap_output", "parse_streaming_json", "sanitize_output"]
