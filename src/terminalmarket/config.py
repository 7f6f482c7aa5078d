from __future__ import annotations

import json
import logging
import os
import stat
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

log = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://terminalmarket.app/api"
DEFAULT_TIMEOUT_S = 30.0
# Older backends issued "connect.sid", newer ones "tm.sid" / "tm_session".
DEFAULT_SESSION_COOKIE_PATTERN = r"connect\.sid|tm[._]s(?:id|ession)"

_MISSING = object()


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("TERMINALMARKET_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("terminalmarket") / "config.json"


def _read_json_object(path: Path) -> dict[str, Any]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        log.debug("ignoring unreadable config %s: %s", path, e)
        return {}
    if not isinstance(raw, dict):
        log.debug("ignoring config %s: top level is not an object", path)
        return {}
    return raw


class ConfigStore:
    """
    Key/value settings persisted as one JSON object per OS user.

    Every write goes straight to disk. A missing or corrupt file reads as an
    empty store so the CLI keeps working with defaults.
    """

    def __init__(self, path: Path, data: dict[str, Any] | None = None) -> None:
        self.path = path
        self._data: dict[str, Any] = dict(data or {})

    @classmethod
    def load(cls, path_override: str | Path | None = None) -> "ConfigStore":
        path = config_path(path_override)
        return cls(path, _read_json_object(path))

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self.save()

    def delete(self, key: str) -> None:
        if self._data.pop(key, _MISSING) is not _MISSING:
            self.save()

    def as_dict(self) -> dict[str, Any]:
        return dict(self._data)

    def save(self) -> Path:
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)

        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        tmp.replace(path)

        # Best-effort permissions hardening (the session cookie lives here).
        try:
            os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
        except OSError:
            pass

        return path

    # Typed accessors.

    @property
    def api_base(self) -> str:
        value = os.getenv("TERMINALMARKET_API") or self.get("apiBase")
        return value if isinstance(value, str) and value else DEFAULT_API_BASE

    @api_base.setter
    def api_base(self, value: str) -> None:
        self.set("apiBase", value)

    @property
    def session_cookie(self) -> str | None:
        value = self.get("sessionCookie")
        return value if isinstance(value, str) and value else None

    @session_cookie.setter
    def session_cookie(self, value: str | None) -> None:
        if value:
            self.set("sessionCookie", value)
        else:
            self.delete("sessionCookie")

    @property
    def csrf_token(self) -> str | None:
        value = self.get("csrfToken")
        return value if isinstance(value, str) and value else None

    @csrf_token.setter
    def csrf_token(self, value: str | None) -> None:
        if value:
            self.set("csrfToken", value)
        else:
            self.delete("csrfToken")

    @property
    def user(self) -> dict[str, Any] | None:
        value = self.get("user")
        return value if isinstance(value, dict) else None

    @user.setter
    def user(self, value: dict[str, Any] | None) -> None:
        if value:
            self.set("user", value)
        else:
            self.delete("user")

    @property
    def location(self) -> dict[str, str] | None:
        value = self.get("location")
        if not isinstance(value, dict) or not value.get("city"):
            return None
        return {"city": str(value["city"]), "country": str(value.get("country") or "")}

    @location.setter
    def location(self, value: dict[str, str] | None) -> None:
        if value:
            self.set("location", value)
        else:
            self.delete("location")

    @property
    def session_cookie_pattern(self) -> str:
        value = os.getenv("TERMINALMARKET_SESSION_COOKIE") or self.get("sessionCookiePattern")
        return value if isinstance(value, str) and value else DEFAULT_SESSION_COOKIE_PATTERN

    @property
    def timeout_s(self) -> float:
        value = os.getenv("TERMINALMARKET_TIMEOUT_S") or self.get("timeoutS", DEFAULT_TIMEOUT_S)
        try:
            return float(value)
        except (TypeError, ValueError):
            return DEFAULT_TIMEOUT_S

    def clear_session(self) -> None:
        for key in ("sessionCookie", "csrfToken", "user"):
            self._data.pop(key, None)
        self.save()


def redact(value: str | None) -> str | None:
    if not value:
        return value
    if len(value) <= 10:
        return value[:2] + "..." + value[-2:]
    return value[:6] + "..." + value[-4:]
