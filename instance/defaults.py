"""Known instance setting keys and their built-in fallbacks."""

from __future__ import annotations

from typing import Any

SETTING_KEYS: tuple[str, ...] = (
    "app_name",
    "app_description",
    "app_header",
    "app_logo",
    "setup_completed",
    "nexirift_mode",
    "nova_url",
)

# Keys missing here have no fallback; an unset one is a true miss.
DEFAULTS: dict[str, Any] = {
    "app_name": "Cosmos",
    "app_description": "Community moderation and access control",
    "setup_completed": False,
    "nexirift_mode": False,
}
