"""Application configuration helpers."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Literal, Mapping

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.yaml"
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

# Environment names kept for deployments that predate the dotted option names.
_LEGACY_ENV = {
    "DATABASE_PATH": ("paths", "store_url"),
    "ASSETS_BASE_DIR": ("paths", "assets_dir"),
}


class ConfigError(ValueError):
    """Raised when a configuration value cannot be parsed."""


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ServerConfig(_Section):
    mode: Literal["release", "debug"] = "release"
    host: str = "0.0.0.0"
    port: int = 8080

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class PathsConfig(_Section):
    assets_dir: str = "./assets"
    store_url: str = "./data/mediavault.sqlite3"
    log_dir: str = "./logs"


class StoreConfig(_Section):
    pool_size: int = 8
    pool_timeout_seconds: float = 10.0


class SchedulerConfig(_Section):
    tick_interval: float = 1.0
    batch_size: int = 64
    lease_seconds: float = 60.0
    max_concurrent_jobs: int = 4
    backoff_base_seconds: float = 60.0
    backoff_cap_seconds: float = 3600.0
    shutdown_grace_seconds: float = 5.0


class VerifierConfig(_Section):
    worker_count: int = 16
    default_ttl_days: int = 7
    per_host_spacing_ms: int = 1000
    request_timeout_ms: int = 10000
    failure_threshold: int = 3
    poll_interval_seconds: float = 300.0
    batch_size: int = 100
    health_window: int = 500


class ScraperConfig(_Section):
    request_timeout_ms: int = 30000
    max_pages_per_thread: int = 50
    per_host_spacing_ms: int = 500
    category_workers: int = 3
    max_attempts: int = 3
    user_agent: str = BROWSER_USER_AGENT


class ActivityConfig(_Section):
    retention_days: int = 30
    step_interval_ms: int = 500


class HubConfig(_Section):
    queue_depth: int = 256
    max_overflows: int = 3
    ping_interval_seconds: float = 30.0
    pong_timeout_seconds: float = 60.0


class DownloadsConfig(_Section):
    manager_url: str = "http://localhost:3128"
    timeout_seconds: float = 30.0


class LLMConfig(_Section):
    enabled: bool = False
    base_url: str = "http://127.0.0.1:11434"
    model: str = "llama3.1:8b"
    timeout_seconds: float = 30.0


_SECTIONS: Dict[str, type[_Section]] = {
    "server": ServerConfig,
    "paths": PathsConfig,
    "store": StoreConfig,
    "scheduler": SchedulerConfig,
    "verifier": VerifierConfig,
    "scraper": ScraperConfig,
    "activity": ActivityConfig,
    "hub": HubConfig,
    "downloads": DownloadsConfig,
    "llm": LLMConfig,
}


def _resolve_path(value: str | os.PathLike[str] | None, base: Path) -> Path:
    """Resolve ``value`` relative to ``base`` when not absolute."""

    if value is None:
        return base
    candidate = Path(value)
    if candidate.is_absolute():
        return candidate
    return (base / candidate).resolve()


def _store_path(store_url: str, base: Path) -> Path:
    raw = store_url.strip()
    if raw.startswith("sqlite:///"):
        # sqlite:///relative.db and sqlite:////absolute.db
        raw = raw[len("sqlite:///") :]
    return _resolve_path(raw, base)


@dataclass(slots=True)
class AppConfig:
    """Runtime configuration resolved from file, ``.env`` and environment."""

    server: ServerConfig = field(default_factory=ServerConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    verifier: VerifierConfig = field(default_factory=VerifierConfig)
    scraper: ScraperConfig = field(default_factory=ScraperConfig)
    activity: ActivityConfig = field(default_factory=ActivityConfig)
    hub: HubConfig = field(default_factory=HubConfig)
    downloads: DownloadsConfig = field(default_factory=DownloadsConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    base_dir: Path = field(default_factory=Path.cwd)

    @classmethod
    def from_mapping(
        cls, data: Mapping[str, Any] | None, *, base_dir: Path | None = None
    ) -> "AppConfig":
        data = data or {}
        sections: Dict[str, _Section] = {}
        for name, model in _SECTIONS.items():
            raw = data.get(name) or {}
            if not isinstance(raw, Mapping):
                raise ConfigError(f"config section '{name}' must be a mapping")
            try:
                sections[name] = model.model_validate(dict(raw))
            except ValidationError as exc:
                first = exc.errors()[0]
                option = ".".join([name, *(str(p) for p in first.get("loc", ()))])
                raise ConfigError(f"invalid value for {option}: {first.get('msg')}") from exc
        return cls(base_dir=base_dir or Path.cwd(), **sections)  # type: ignore[arg-type]

    @property
    def assets_dir(self) -> Path:
        return _resolve_path(self.paths.assets_dir, self.base_dir)

    @property
    def log_dir(self) -> Path:
        return _resolve_path(self.paths.log_dir, self.base_dir)

    @property
    def store_path(self) -> Path:
        return _store_path(self.paths.store_url, self.base_dir)

    @property
    def debug(self) -> bool:
        return self.server.mode == "debug"

    def ensure_dirs(self) -> None:
        for path in (self.assets_dir, self.log_dir, self.store_path.parent):
            path.mkdir(parents=True, exist_ok=True)

    def log_summary(self) -> None:
        LOGGER.info(
            "configuration: mode=%s port=%s store=%s assets=%s tick=%.1fs verifier_workers=%d ttl_days=%d",
            self.server.mode,
            self.server.port,
            self.store_path,
            self.assets_dir,
            self.scheduler.tick_interval,
            self.verifier.worker_count,
            self.verifier.default_ttl_days,
        )


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"unable to parse {path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return loaded


def _apply_env(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    merged = {name: dict(data.get(name) or {}) for name in _SECTIONS}
    for env_name, (section, option) in _LEGACY_ENV.items():
        value = environ.get(env_name)
        if value not in (None, ""):
            merged[section][option] = value
    for section, model in _SECTIONS.items():
        for option in model.model_fields:
            value = environ.get(f"{section}_{option}".upper())
            if value not in (None, ""):
                merged[section][option] = value
    return merged


def load_config(
    path: str | os.PathLike[str] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    load_env_file: bool = True,
) -> AppConfig:
    """Load configuration from ``path`` (YAML) and the environment.

    Precedence from lowest to highest: built-in defaults, the YAML file,
    ``.env`` and the process environment. ``SECTION_OPTION`` environment
    variables override the dotted ``section.option`` keys.
    """

    if load_env_file:
        load_dotenv(override=False)
    env = os.environ if environ is None else environ

    explicit = path or env.get("MEDIAVAULT_CONFIG")
    config_path = Path(explicit) if explicit else Path.cwd() / DEFAULT_CONFIG_FILE
    data: Dict[str, Any] = {}
    if config_path.is_file():
        data = _read_yaml(config_path)
        base_dir = config_path.resolve().parent
    elif explicit:
        raise ConfigError(f"config file not found: {config_path}")
    else:
        base_dir = Path.cwd()

    return AppConfig.from_mapping(_apply_env(data, env), base_dir=base_dir)


__all__ = [
    "ActivityConfig",
    "AppConfig",
    "BROWSER_USER_AGENT",
    "ConfigError",
    "DownloadsConfig",
    "HubConfig",
    "LLMConfig",
    "PathsConfig",
    "SchedulerConfig",
    "ScraperConfig",
    "ServerConfig",
    "StoreConfig",
    "VerifierConfig",
    "load_config",
]
