# kalina: Lightweight YAML settings loader; settings live next to the stored conversations in the data directory.

from __future__ import annotations

import pathlib
from typing import Any, Dict

import yaml


def load_settings(home: pathlib.Path) -> Dict[str, Any]:
    """
    Load Kalina settings from <home>/settings.yaml or settings.yml.

    Returns an empty dict {} when the settings file is missing, unreadable, or
    does not contain a mapping. The function never raises.

    Recognized sections:
        api:     provider, api_key, model, base_url, image_model
        chat:    default_model, default_tool
        logging: level
    """
    try:
        candidates = [pathlib.Path(home) / "settings.yaml", pathlib.Path(home) / "settings.yml"]
        for p in candidates:
            try:
                if p.exists() and p.is_file():
                    data = yaml.safe_load(p.read_text(encoding="utf-8"))
                    if isinstance(data, dict):
                        return data
                    # kalina: Non-mapping YAML is treated as empty settings.
                    return {}
            except Exception:
                # kalina: Swallow parse/IO errors and continue to next candidate.
                continue
        return {}
    except Exception:
        return {}


def section(settings: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return settings[name] when it is a mapping, else {}."""
    value = (settings or {}).get(name) if isinstance(settings, dict) else None
    return value if isinstance(value, dict) else {}
