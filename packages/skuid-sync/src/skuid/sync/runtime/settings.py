from __future__ import annotations

import os
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel, Field, ValidationError

from skuid.sync.exception import ArgumentError
from skuid.sync.models import PlanFilter

ENV_PREFIX = "SKUID_"
CONFIG_ENV = "SKUID_CONFIG"

_TRUE = {"1", "t", "T", "true", "TRUE", "True"}
_FALSE = {"0", "f", "F", "false", "FALSE", "False"}


def parse_bool(value: Any, *, name: str = "value") -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).strip()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ArgumentError(f"{name}: invalid boolean {value!r} (use true/false, 1/0, t/f)")


def env_name(field_name: str) -> str:
    """`no_zip` -> `SKUID_NO_ZIP` (the mirror of `--no-zip`)."""
    return ENV_PREFIX + field_name.upper()


class Settings(BaseModel):
    # Defaults are static. Use load_settings(env=...) to read from an env snapshot.
    host: str = ""
    username: str = ""
    password: str = ""

    # Local metadata tree
    dir: str = "."

    # Plan filter
    app: str = ""
    page: List[str] = Field(default_factory=list)

    # Ask shards for a JSON map of base64 blobs instead of zip archives
    no_zip: bool = False

    log_level: str = "INFO"
    # - log_format: "text" (default) or "json" (one JSON object per line)
    log_format: str = "text"

    # Concurrency and deadlines (seconds)
    workers: int = 4
    request_timeout: float = 120.0
    shard_timeout: float = 300.0
    total_timeout: float = 1800.0

    # watch: quiet period per path before a change is deployed
    debounce_ms: int = 250

    verify_ssl: bool = True

    def __repr__(self) -> str:
        return f"Settings(host={self.host!r}, username={self.username!r}, dir={self.dir!r})"

    def plan_filter(self) -> PlanFilter | None:
        if not self.app and not self.page:
            return None
        return PlanFilter(app_name=self.app, page_names=list(self.page))

    @classmethod
    def from_env(cls, env: dict[str, str], overrides: dict | None = None) -> "Settings":
        """Build Settings from an explicit env snapshot (does not read os.environ)."""
        def g(key: str, default: str | None = None) -> str | None:
            return env.get(env_name(key), default)

        data: Dict[str, Any] = {}
        for key in ("host", "username", "password", "dir", "app", "log_level", "log_format"):
            v = g(key)
            if v is not None:
                data[key] = v
        page = g("page")
        if page is not None:
            data["page"] = [p.strip() for p in page.split(",") if p.strip()]
        for key in ("no_zip", "verify_ssl"):
            v = g(key)
            if v is not None:
                data[key] = parse_bool(v, name=env_name(key))
        for key in ("workers", "request_timeout", "shard_timeout", "total_timeout", "debounce_ms"):
            v = g(key)
            if v is not None:
                data[key] = v
        if overrides:
            data.update(overrides)
        return _build(data, source="environment")


def _build(data: Dict[str, Any], *, source: str) -> Settings:
    try:
        return Settings(**data)
    except ValidationError as e:
        raise ArgumentError(f"invalid settings from {source}: {e}") from e


def _load_config_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except OSError as e:
        raise ArgumentError(f"{CONFIG_ENV}: cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ArgumentError(f"{CONFIG_ENV}: invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ArgumentError(f"{CONFIG_ENV}: {path} must contain a mapping")
    data = {str(k).replace("-", "_"): v for k, v in raw.items()}
    unknown = sorted(set(data) - set(Settings.model_fields))
    if unknown:
        raise ArgumentError(f"{CONFIG_ENV}: unknown setting(s) in {path}: {', '.join(unknown)}")
    for key in ("no_zip", "verify_ssl"):
        if key in data:
            data[key] = parse_bool(data[key], name=key)
    if isinstance(data.get("page"), str):
        data["page"] = [p.strip() for p in data["page"].split(",") if p.strip()]
    return data


def load_settings(overrides: dict | None = None, *, env: dict[str, str] | None = None) -> Settings:
    """Load settings from (1) env snapshot, (2) optional YAML file, (3) explicit overrides.

    The YAML file is only read when SKUID_CONFIG names it. Overrides (the
    command-line flags) always win. If env is not provided, a snapshot of
    os.environ is used.
    """
    env2 = {k: str(v) for k, v in os.environ.items()} if env is None else env
    data: Dict[str, Any] = {}
    path = env2.get(CONFIG_ENV)
    if path:
        data.update(_load_config_file(path))
    s = Settings.from_env(env2, overrides=None)
    # environment beats the file, flags beat both
    data.update(s.model_dump(exclude_unset=True))
    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})
    return _build(data, source="configuration")
