"""Persistent user preferences for deploysync.

Stored as JSON under ~/.config/deploysync/preferences.json. The only key
the CLI uses today is ``config_path``.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

PREFERENCES_DIR = Path.home() / ".config" / "deploysync"
PREFERENCES_FILE = PREFERENCES_DIR / "preferences.json"


def _load() -> Dict[str, Any]:
    """
    Read the preferences file.

    Returns:
        Stored preferences, or an empty dict when the file is missing,
        unreadable, or does not hold a JSON object
    """
    if not PREFERENCES_FILE.exists():
        return {}
    try:
        with open(PREFERENCES_FILE, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Ignoring unreadable preferences file {PREFERENCES_FILE}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def _save(preferences: Dict[str, Any]) -> None:
    """
    Write preferences, creating the config directory on first use.

    Args:
        preferences: Complete preference mapping to store
    """
    PREFERENCES_DIR.mkdir(parents=True, exist_ok=True)
    with open(PREFERENCES_FILE, "w") as f:
        json.dump(preferences, f, indent=2)


def get_preference(key: str) -> Optional[str]:
    """
    Look up one preference.

    Args:
        key: Preference name, e.g. ``config_path``

    Returns:
        The stored value, or None if it was never set
    """
    return _load().get(key)


def set_preference(key: str, value: str) -> None:
    """
    Store one preference, keeping the others.

    Args:
        key: Preference name
        value: Value to store
    """
    preferences = _load()
    preferences[key] = value
    _save(preferences)
    logger.info(f"Preference '{key}' set to: {value}")


def clear_preference(key: str) -> None:
    """
    Remove a preference; missing keys are ignored.

    Args:
        key: Preference name to remove
    """
    preferences = _load()
    if key not in preferences:
        logger.debug(f"Preference '{key}' not found, nothing to clear")
        return
    del preferences[key]
    _save(preferences)
    logger.info(f"Preference '{key}' cleared")


def get_all_preferences() -> Dict[str, Any]:
    """
    Return every stored preference.

    Returns:
        Mapping of preference name to value
    """
    return _load()
