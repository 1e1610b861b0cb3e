# FILE: widelog/config.py
from __future__ import annotations

import logging
import os
import threading
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except Exception:  # pragma: no cover
    yaml = None

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .utils import detect_environment, split_csv


_log = logging.getLogger(__name__)

LOG_LEVELS = ("debug", "info", "warn", "error")


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _parse_rates(raw: str) -> Dict[str, float]:
    """
    Parse "info=10,warn=50" into a rate mapping.

    Malformed entries are a startup error, not something to skip silently.
    """
    out: Dict[str, float] = {}
    for part in split_csv(raw):
        if "=" not in part:
            raise ConfigError(f"invalid sample rate entry: {part!r}")
        level, _, value = part.partition("=")
        try:
            out[level.strip().lower()] = float(value)
        except ValueError:
            raise ConfigError(f"invalid sample rate for {level!r}: {value!r}") from None
    return out


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a top-level mapping from YAML.

    Missing path or missing PyYAML yields an empty overlay. A file that
    exists but cannot be parsed is a startup error.
    """
    if not path:
        return {}
    if yaml is None:
        _log.warning("PyYAML not available; ignoring %s", path)
        return {}
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except Exception as exc:
        raise ConfigError(f"failed to load YAML config from {path}: {exc}") from exc
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise ConfigError(f"YAML config at {path} must be a mapping")
    return {str(k): v for k, v in doc.items()}


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class KeepRule(BaseModel):
    """
    Tail keep rule. Every field that is set must match; at least one is
    required.

      - status: exact HTTP status
      - duration: minimum duration in milliseconds
      - path: glob pattern (`**` spans segments)
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    status: Optional[int] = None
    duration: Optional[float] = Field(default=None, ge=0)
    path: Optional[str] = None

    @model_validator(mode="after")
    def _at_least_one(self) -> "KeepRule":
        if self.status is None and self.duration is None and not self.path:
            raise ValueError("keep rule needs at least one of status, duration, path")
        return self


class SamplingConfig(BaseModel):
    """
    Head rates per level (0-100, percent kept; missing level keeps all)
    and an ordered list of tail keep rules.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    rates: Dict[str, float] = Field(default_factory=dict)
    keep: List[KeepRule] = Field(default_factory=list)

    @field_validator("rates")
    @classmethod
    def _check_rates(cls, v: Dict[str, float]) -> Dict[str, float]:
        out: Dict[str, float] = {}
        for level, rate in v.items():
            lvl = str(level).lower()
            if lvl not in LOG_LEVELS:
                raise ValueError(f"unknown log level {level!r}")
            if not (0.0 <= float(rate) <= 100.0):
                raise ValueError(f"rate for {level!r} must be within 0..100, got {rate}")
            out[lvl] = float(rate)
        return out

    def rate_for(self, level: str) -> float:
        return self.rates.get(level, 100.0)


class RouteConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    service: str


class Settings(BaseModel):
    """Process-wide configuration, read once at startup."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = True

    # --- Environment context ---------------------------------------------

    service: str = "app"
    environment: str = "development"
    version: Optional[str] = None
    commit_hash: Optional[str] = None
    region: Optional[str] = None

    # --- Boundary ---------------------------------------------------------

    # Glob patterns; exclusions win over inclusions. Empty include logs all.
    include: List[str] = Field(default_factory=list)
    exclude: List[str] = Field(default_factory=list)
    # Route pattern -> service override. First match wins, in order.
    routes: Dict[str, RouteConfig] = Field(default_factory=dict)
    request_id_header: str = "x-request-id"

    # --- Pipeline ---------------------------------------------------------

    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    enrichers: List[str] = Field(default_factory=list)

    # --- Client ingest ----------------------------------------------------

    ingest_path: str = "/_widelog/ingest"
    ingest_require_origin: bool = True
    ingest_endpoint: Optional[str] = None

    # --- Side channel -----------------------------------------------------

    log_level: str = "INFO"

    def environment_context(self) -> Dict[str, Any]:
        ctx = {
            "service": self.service,
            "environment": self.environment,
            "version": self.version,
            "commit_hash": self.commit_hash,
            "region": self.region,
        }
        return {k: v for k, v in ctx.items() if v is not None}


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> Settings:
    """
    Load Settings from defaults, optional YAML, environment variables and
    explicit overrides.

    Priority (later wins):
      1. Settings defaults (in-code).
      2. YAML file pointed to by WIDELOG_CONFIG_PATH.
      3. Environment variables.
      4. `overrides`.

    Any invalid value raises ConfigError.
    """
    merged: Dict[str, Any] = {}

    yaml_path = os.environ.get("WIDELOG_CONFIG_PATH", "").strip()
    merged.update(_load_yaml_mapping(yaml_path))

    detected = detect_environment()
    for key, value in detected.items():
        if value is not None:
            merged[key] = value

    if os.environ.get("WIDELOG_ENABLED"):
        merged["enabled"] = _env_bool("WIDELOG_ENABLED", True)

    rates_raw = os.environ.get("WIDELOG_SAMPLE_RATES", "").strip()
    if rates_raw:
        sampling = dict(merged.get("sampling") or {})
        rates = dict(sampling.get("rates") or {})
        rates.update(_parse_rates(rates_raw))
        sampling["rates"] = rates
        merged["sampling"] = sampling

    for env_name, key in (
        ("WIDELOG_INCLUDE", "include"),
        ("WIDELOG_EXCLUDE", "exclude"),
        ("WIDELOG_ENRICHERS", "enrichers"),
    ):
        raw = os.environ.get(env_name)
        if raw:
            merged[key] = split_csv(raw)

    for env_name, key in (
        ("WIDELOG_INGEST_ENDPOINT", "ingest_endpoint"),
        ("WIDELOG_LOG_LEVEL", "log_level"),
    ):
        raw = os.environ.get(env_name)
        if raw:
            merged[key] = raw.strip()

    if overrides:
        merged.update(overrides)

    try:
        return Settings(**merged)
    except ValidationError as exc:
        raise ConfigError(f"invalid widelog configuration: {exc}") from exc


# ---------------------------------------------------------------------------
# Reloadable wrapper
# ---------------------------------------------------------------------------


class ReloadableSettings:
    """
    Thread-safe holder for the current Settings snapshot.

    Request-path code only calls get(); refresh() belongs to a well-defined
    reconfiguration boundary. A failed refresh keeps the previous snapshot.
    """

    def __init__(self, initial: Optional[Settings] = None) -> None:
        self._lock = threading.RLock()
        self._settings = initial or load_settings()

    def get(self) -> Settings:
        with self._lock:
            return self._settings

    def refresh(self, overrides: Optional[Dict[str, Any]] = None) -> Settings:
        with self._lock:
            try:
                self._settings = load_settings(overrides)
            except ConfigError:
                _log.error("settings refresh rejected; keeping previous snapshot", exc_info=True)
            return self._settings
