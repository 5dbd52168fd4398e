# config.py
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

CONFIG_ENV_VAR = "PYLITEDOC_CONFIG"


class Settings:
    """Engine limits and background task behaviour.

    The defaults mirror the documented limits of the storage engine the
    query language comes from: 64 indexes per collection (the implicit
    ``_id_`` index included), index names up to 125 characters, 31 fields per
    compound index and 100 levels of document nesting.
    """

    DEFAULTS: Dict[str, Any] = {
        "max_indexes": 64,
        "max_index_name_length": 125,
        "max_compound_fields": 31,
        "max_nesting_depth": 100,
        "ttl_monitor_interval": 60.0,
        "text_default_language": "english",
    }

    def __init__(self, **overrides):
        unknown = set(overrides) - set(self.DEFAULTS)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        values = dict(self.DEFAULTS)
        values.update(overrides)
        self.max_indexes = int(values["max_indexes"])
        self.max_index_name_length = int(values["max_index_name_length"])
        self.max_compound_fields = int(values["max_compound_fields"])
        self.max_nesting_depth = int(values["max_nesting_depth"])
        self.ttl_monitor_interval = float(values["ttl_monitor_interval"])
        self.text_default_language = str(values["text_default_language"])

    def as_dict(self) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in self.DEFAULTS}

    def __repr__(self):
        return f"Settings({self.as_dict()!r})"


def load_settings(path: Optional[str] = None) -> Settings:
    """Load settings from a YAML file, falling back to defaults.

    The path defaults to the PYLITEDOC_CONFIG environment variable. A missing
    file yields the defaults; an empty file too.
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path or not Path(path).exists():
        return Settings()
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping.")
    return Settings(**data)
