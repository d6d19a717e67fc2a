"""Harness configuration: endpoint, timing, users and rooms."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping

from .errors import ConfigError
from .protocol import RoomId

ENV_ENDPOINT = "CHAT_HARNESS_ENDPOINT"
ENV_TIMEOUT_MS = "CHAT_HARNESS_TIMEOUT_MS"
ENV_API_BASE = "CHAT_HARNESS_API_BASE"

DEFAULT_ENDPOINT = "ws://localhost:8080/api/v1/chat/ws"


@dataclass(frozen=True)
class UserConfig:
    name: str
    token: str | None = None
    email: str | None = None
    password: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UserConfig":
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ConfigError("every user needs a non-empty 'name'")
        values = {}
        for key in ("token", "email", "password"):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise ConfigError(f"user {name}: '{key}' must be a string")
            values[key] = value
        return cls(name=name, **values)


@dataclass(frozen=True)
class HarnessConfig:
    endpoint: str = DEFAULT_ENDPOINT
    timeout_ms: int = 30_000
    users: List[UserConfig] = field(default_factory=list)
    rooms: List[RoomId] = field(default_factory=list)
    settle_ms: int = 500
    connect_timeout_ms: int = 10_000
    close_timeout_ms: int = 1_000
    expect_echo: bool | None = None
    api_base: str | None = None

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def settle_s(self) -> float:
        return self.settle_ms / 1000.0

    @property
    def connect_timeout_s(self) -> float:
        return self.connect_timeout_ms / 1000.0

    @property
    def close_timeout_s(self) -> float:
        return self.close_timeout_ms / 1000.0

    def user(self, name: str) -> UserConfig:
        for user in self.users:
            if user.name == name:
                return user
        raise ConfigError(f"unknown user: {name}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HarnessConfig":
        if not isinstance(data, Mapping):
            raise ConfigError("config must be a JSON object")
        unknown = set(data) - {
            "endpoint",
            "timeout_ms",
            "timeoutMs",
            "users",
            "rooms",
            "settle_ms",
            "connect_timeout_ms",
            "close_timeout_ms",
            "expect_echo",
            "api_base",
        }
        if unknown:
            raise ConfigError(f"unknown config keys: {', '.join(sorted(unknown))}")

        kwargs: Dict[str, Any] = {}
        if "endpoint" in data:
            kwargs["endpoint"] = _require_str(data, "endpoint")
        timeout = data.get("timeout_ms", data.get("timeoutMs"))
        if timeout is not None:
            kwargs["timeout_ms"] = _require_positive_int(timeout, "timeout_ms")
        for key in ("settle_ms", "connect_timeout_ms", "close_timeout_ms"):
            if key in data:
                kwargs[key] = _require_positive_int(data[key], key, allow_zero=key == "settle_ms")
        if "expect_echo" in data:
            echo = data["expect_echo"]
            if echo is not None and not isinstance(echo, bool):
                raise ConfigError("'expect_echo' must be true, false or null")
            kwargs["expect_echo"] = echo
        if data.get("api_base") is not None:
            kwargs["api_base"] = _require_str(data, "api_base")

        users = data.get("users") or []
        if not isinstance(users, list):
            raise ConfigError("'users' must be a list")
        kwargs["users"] = [UserConfig.from_dict(user) for user in users]
        names = [user.name for user in kwargs["users"]]
        if len(names) != len(set(names)):
            raise ConfigError("user names must be unique")

        rooms = data.get("rooms") or []
        if not isinstance(rooms, list) or any(
            isinstance(room, bool) or not isinstance(room, (int, str)) for room in rooms
        ):
            raise ConfigError("'rooms' must be a list of room ids")
        kwargs["rooms"] = list(rooms)
        return cls(**kwargs)

    def with_env(self, environ: Mapping[str, str] | None = None) -> "HarnessConfig":
        environ = os.environ if environ is None else environ
        updates: Dict[str, Any] = {}
        endpoint = environ.get(ENV_ENDPOINT)
        if endpoint:
            updates["endpoint"] = endpoint
        timeout = environ.get(ENV_TIMEOUT_MS)
        if timeout:
            try:
                updates["timeout_ms"] = _require_positive_int(int(timeout), ENV_TIMEOUT_MS)
            except ValueError as exc:
                raise ConfigError(f"{ENV_TIMEOUT_MS} must be an integer") from exc
        api_base = environ.get(ENV_API_BASE)
        if api_base:
            updates["api_base"] = api_base
        return replace(self, **updates) if updates else self


def load_config(path: str | os.PathLike[str]) -> HarnessConfig:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise ConfigError(f"config {path} is not valid JSON: {exc}") from exc
    return HarnessConfig.from_dict(data)


def _require_str(data: Mapping[str, Any], key: str) -> str:
    value = data[key]
    if not isinstance(value, str) or not value:
        raise ConfigError(f"'{key}' must be a non-empty string")
    return value


def _require_positive_int(value: Any, key: str, *, allow_zero: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"'{key}' must be an integer")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"'{key}' must be positive")
    return value
