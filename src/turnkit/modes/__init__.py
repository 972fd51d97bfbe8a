"""Output modes for the agent loop."""

from __future__ import annotations

from turnkit.modes.json_mode import JsonMode, event_to_dict

__all__ = ["JsonMode", "event_to_dict"]
