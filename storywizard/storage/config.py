"""Global app configuration (model connections, model ids, prompts, notifications)."""

import copy
import json
from pathlib import Path
from typing import Any

from .core import data_dir

_CONFIG_DEFAULTS: dict[str, Any] = {
    "connections": {
        "text": {
            "provider_url": "https://generativelanguage.googleapis.com",
            "api_key": "",
            "format": "gemini",
        },
        "image": {
            "provider_url": "https://generativelanguage.googleapis.com",
            "api_key": "",
        },
    },
    "models": {
        "compile": "gemini-2.5-pro",
        "synopsis": "gemini-2.5-flash",
        "image": "gemini-2.5-flash-image-preview",
        "exemplar": "gemini-2.5-flash-image-preview",
    },
    "prompts": {
        "global_prefix": "",
        "compile": "",
        "image": "",
    },
    "notifications": {
        "maintenance_emails": [],
        "smtp_host": "",
        "smtp_port": 587,
        "smtp_user": "",
        "smtp_password": "",
        "sender": "",
    },
}


def _config_path() -> Path:
    return data_dir() / "config.json"


def _merge_groups(config: dict[str, Any], fields: dict[str, Any]) -> None:
    # connections are nested one level deeper (text/image)
    for group, vals in fields.items():
        if group not in config or not isinstance(vals, dict):
            continue
        if group == "connections":
            for name, conn in vals.items():
                if name in config["connections"] and isinstance(conn, dict):
                    config["connections"][name].update(conn)
        else:
            config[group].update(vals)


def get_config() -> dict[str, Any]:
    """Read config, returning defaults merged with stored values."""
    config = copy.deepcopy(_CONFIG_DEFAULTS)
    path = _config_path()
    if path.is_file():
        _merge_groups(config, json.loads(path.read_text()))
    return config


def update_config(fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into config and persist. Returns full config."""
    config = get_config()
    _merge_groups(config, fields)
    _config_path().write_text(json.dumps(config, indent=2))
    return config
