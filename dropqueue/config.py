"""Settings for dropqueue.

Values are layered, later sources winning: built-in defaults,
settings.default.json, settings.json, then environment variables (a .env file
in the project root is loaded first).
"""

import json
import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

SETTINGS_FILE = Path(os.environ.get("DROPQUEUE_SETTINGS_FILE", BASE_DIR / "settings.json"))
SETTINGS_DEFAULT_FILE = BASE_DIR / "settings.default.json"
PYPROJECT_FILE = BASE_DIR / "pyproject.toml"

ENV_REMOTE_BASE_URL = "DROPQUEUE_REMOTE_BASE_URL"
ENV_MAX_CONCURRENT_UPLOADS = "DROPQUEUE_MAX_CONCURRENT_UPLOADS"
ENV_PASS_DELAY_SECONDS = "DROPQUEUE_PASS_DELAY_SECONDS"
ENV_REQUEST_TIMEOUT_SECONDS = "DROPQUEUE_REQUEST_TIMEOUT_SECONDS"
ENV_LOG_DIRECTORY = "DROPQUEUE_LOG_DIRECTORY"

# Setting key -> environment variable overriding it
ENV_KEYS = {
    "remote_base_url": ENV_REMOTE_BASE_URL,
    "max_concurrent_uploads": ENV_MAX_CONCURRENT_UPLOADS,
    "pass_delay_seconds": ENV_PASS_DELAY_SECONDS,
    "request_timeout_seconds": ENV_REQUEST_TIMEOUT_SECONDS,
    "log_directory": ENV_LOG_DIRECTORY,
}

DEFAULT_SETTINGS: dict[str, Any] = {
    "remote_base_url": "http://localhost:5000",
    "max_concurrent_uploads": 2,
    "pass_delay_seconds": 0.3,
    "request_timeout_seconds": 300.0,
    "log_directory": "logs",
    "display_name": "dropqueue",
}


@lru_cache(maxsize=1)
def _project_metadata() -> dict[str, Any]:
    try:
        with open(PYPROJECT_FILE, "rb") as f:
            return dict(tomllib.load(f).get("project", {}))
    except (OSError, tomllib.TOMLDecodeError):
        return {}


def get_package_version() -> str:
    """Version declared in pyproject.toml."""
    return str(_project_metadata().get("version", "0.0.0"))


def get_package_name() -> str:
    """Distribution name declared in pyproject.toml."""
    return str(_project_metadata().get("name", "dropqueue"))


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        return json.load(f)


class Settings:
    """Process-wide settings, persisted to settings.json on change."""

    _instance: "Settings | None" = None
    _settings: dict[str, Any]

    def __new__(cls) -> "Settings":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._load_settings()
        return cls._instance

    def _load_settings(self) -> None:
        merged = dict(DEFAULT_SETTINGS)
        merged.update(_read_json(SETTINGS_DEFAULT_FILE))
        merged.update(_read_json(SETTINGS_FILE))
        for key, env_name in ENV_KEYS.items():
            value = os.environ.get(env_name)
            if value is not None:
                merged[key] = value
        self._settings = merged

        if not SETTINGS_FILE.exists():
            self._save_settings()

    def _save_settings(self) -> None:
        SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(SETTINGS_FILE, "w", encoding="utf-8") as f:
            json.dump(self._settings, f, indent=4)

    def get(self, key: str, default: Any = None) -> Any:
        return self._settings.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.update({key: value})

    def update(self, data: dict[str, Any]) -> None:
        """Merge ``data`` into the settings and save them."""
        self._settings.update(data)
        self._save_settings()

    def all(self) -> dict[str, Any]:
        return dict(self._settings)

    def reload(self) -> None:
        """Re-read every source."""
        self._load_settings()

    @property
    def remote_base_url(self) -> str:
        """Base URL of the remote upload service, without trailing slash."""
        return str(self._settings.get("remote_base_url", "")).rstrip("/")

    @property
    def max_concurrent_uploads(self) -> int:
        """Admission ceiling for simultaneous uploads (never below 1)."""
        return max(1, int(self._settings.get("max_concurrent_uploads", 2)))

    @property
    def pass_delay_seconds(self) -> float:
        """Delay before a follow-up scheduling pass."""
        return max(0.0, float(self._settings.get("pass_delay_seconds", 0.3)))

    @property
    def request_timeout_seconds(self) -> float:
        return float(self._settings.get("request_timeout_seconds", 300.0))

    @property
    def log_directory(self) -> Path:
        """Event log directory; relative paths resolve against the project root."""
        path = Path(str(self._settings.get("log_directory", "logs")))
        return path if path.is_absolute() else BASE_DIR / path

    @property
    def display_name(self) -> str:
        return str(self._settings.get("display_name", "dropqueue"))


def get_settings() -> Settings:
    """Get the singleton Settings instance."""
    return Settings()
