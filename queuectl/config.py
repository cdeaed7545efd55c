import json
import logging
import os
from typing import Any, Dict

from .errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.json"

# Keys whose value may be null (cap disabled)
NULLABLE_KEYS = {"max_backoff", "stale_after"}


def config_path() -> str:
    return os.environ.get("QUEUECTL_CONFIG", DEFAULT_CONFIG_PATH)


class Config:
    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH):
        self.config_path = config_path
        self.defaults = {
            "max_retries": 3,
            "base_delay": 2,  # seconds
            "poll_interval": 2000,  # milliseconds between idle polls
            "max_backoff": None,  # seconds; None = uncapped
            "stale_after": None,  # seconds a claim may run before it is reclaimed; None = never
        }
        self._load()

    def _load(self):
        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r") as f:
                    stored = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("Ignoring unreadable config %s: %s", self.config_path, e)
                stored = {}
            if not isinstance(stored, dict):
                logger.warning("Ignoring malformed config %s", self.config_path)
                stored = {}
            self.config = dict(self.defaults)
            for key, value in stored.items():
                if key not in self.defaults:
                    continue
                try:
                    self.config[key] = self._validate(key, value)
                except ValidationError as e:
                    logger.warning("Using default for %s in %s: %s", key, self.config_path, e)
        else:
            self.config = dict(self.defaults)
            self._save()

    def _save(self):
        with open(self.config_path, "w") as f:
            json.dump(self.config, f, indent=2)

    def get(self, key: str) -> Any:
        if key not in self.defaults:
            raise ValidationError(self._unknown_key(key))
        return self.config.get(key, self.defaults[key])

    def set(self, key: str, value: Any):
        if key not in self.defaults:
            raise ValidationError(self._unknown_key(key))
        self.config[key] = self._validate(key, value)
        self._save()
        logger.debug("Config %s set to %r", key, self.config[key])

    def get_all(self) -> Dict[str, Any]:
        return dict(self.config)

    def _unknown_key(self, key: str) -> str:
        return f'Unknown config key "{key}". Valid keys: {", ".join(sorted(self.defaults))}'

    def _validate(self, key: str, value: Any) -> Any:
        if value is None:
            if key in NULLABLE_KEYS:
                return None
            raise ValidationError(f"{key} cannot be null")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{key} must be a number, got {value!r}")
        if value < 0:
            raise ValidationError(f"{key} must not be negative")
        if key == "max_retries" and not isinstance(value, int):
            raise ValidationError("max_retries must be an integer")
        return value
