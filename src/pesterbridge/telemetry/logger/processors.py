# src/pesterbridge/telemetry/logger/processors.py

"""
structlog processors shared by every renderer.
"""

import logging
from typing import Any

LOG_EMOJIS = {
    logging.DEBUG: "🐛",
    logging.INFO: "ℹ️",
    logging.WARNING: "⚠️",
    logging.ERROR: "❌",
    logging.CRITICAL: "💥",
    "spawn": "🚀",
    "invoke": "▶️",
    "discover": "🔍",
    "run": "🧪",
    "pipe": "🔌",
    "general": "➡️",
}


def add_emoji_processor(_: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Prefixes the event with an emoji for the log area or level."""
    emoji_key = event_dict.get("emoji_key")
    if emoji_key in LOG_EMOJIS:
        emoji = LOG_EMOJIS[emoji_key]
    else:
        level = logging.getLevelName(method_name.upper())
        emoji = LOG_EMOJIS.get(level, LOG_EMOJIS["general"])
    event = event_dict.get("event")
    if isinstance(event, str):
        event_dict["event"] = f"{emoji} {event}"
    return event_dict


def remove_extra_keys_processor(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Drops processor-only keys before rendering."""
    event_dict.pop("emoji_key", None)
    return event_dict

# 🔼⚙️
