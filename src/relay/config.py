"""YAML configuration: defaults, file loading, environment overrides, validation."""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError
from .models.adapters import ProviderKind
from .models.transport import ProviderSettings
from .pipeline import PipelineSettings

__all__ = [
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "EngineConfig",
    "deep_merge",
    "load_config",
    "write_default_config",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "relay.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "provider": {
        "kind": "google",
        "model": None,
        "base_url": None,
        "api_keys": [],
        "api_key_env": "RELAY_PROVIDER_KEYS",
        "max_tokens": None,
        "interactive_timeout": 60,
        "generation_timeout": 300,
        "max_retries": 3,
        "backoff_seconds": 1.0,
    },
    "engine": {
        "max_turns": 100,
        "tool_timeout": 600,
        "streaming": True,
        "workspace": ".",
    },
    "pipeline": {
        "max_repair_attempts": 5,
        "metadata_retries": 1,
        "phase_retries": 3,
        "max_ai_fallback_plans": 2,
        "smoke_tests": True,
        "smoke_test_port": None,
    },
    "paths": {
        "data": "data",
        "db_path": "data/relay.sqlite",
        "logs": "data/logs",
    },
    "logging": {
        "level": "INFO",
    },
}

_ENV_KEYS = "RELAY_API_KEYS"
_ENV_MODEL = "RELAY_MODEL"
_ENV_BASE_URL = "RELAY_BASE_URL"


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProviderConfig(_Section):
    kind: ProviderKind = ProviderKind.GOOGLE
    model: Optional[str] = None
    base_url: Optional[str] = None
    api_keys: List[str] = Field(default_factory=list)
    api_key_env: Optional[str] = None
    max_tokens: Optional[int] = Field(default=None, gt=0)
    interactive_timeout: float = Field(default=60.0, gt=0)
    generation_timeout: float = Field(default=300.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    backoff_seconds: float = Field(default=1.0, ge=0)


class EngineSection(_Section):
    max_turns: int = Field(default=100, gt=0)
    tool_timeout: float = Field(default=600.0, gt=0)
    streaming: bool = True
    workspace: str = "."


class PipelineSection(_Section):
    max_repair_attempts: int = Field(default=5, gt=0)
    metadata_retries: int = Field(default=1, ge=0)
    phase_retries: int = Field(default=3, gt=0)
    max_ai_fallback_plans: int = Field(default=2, ge=0)
    smoke_tests: bool = True
    smoke_test_port: Optional[int] = Field(default=None, gt=0, lt=65536)


class PathsSection(_Section):
    data: str = "data"
    db_path: Optional[str] = None
    logs: Optional[str] = None


class LoggingSection(_Section):
    level: str = "INFO"


class EngineConfig(_Section):
    """Validated configuration; relative paths resolve against ``base_dir``."""

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    engine: EngineSection = Field(default_factory=EngineSection)
    pipeline: PipelineSection = Field(default_factory=PipelineSection)
    paths: PathsSection = Field(default_factory=PathsSection)
    logging: LoggingSection = Field(default_factory=LoggingSection)
    base_dir: Path = Field(default_factory=Path.cwd, exclude=True)

    def _resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else (self.base_dir / path).resolve()

    @property
    def data_root(self) -> Path:
        return self._resolve(self.paths.data)

    @property
    def db_path(self) -> Path:
        if self.paths.db_path:
            return self._resolve(self.paths.db_path)
        return self.data_root / "relay.sqlite"

    @property
    def logs_root(self) -> Path:
        if self.paths.logs:
            return self._resolve(self.paths.logs)
        return self.data_root / "logs"

    @property
    def workspace(self) -> Path:
        return self._resolve(self.engine.workspace)

    def provider_settings(self) -> ProviderSettings:
        provider = self.provider
        return ProviderSettings(
            kind=provider.kind,
            model=provider.model,
            base_url=provider.base_url,
            api_keys=list(provider.api_keys),
            max_tokens=provider.max_tokens,
            interactive_timeout=provider.interactive_timeout,
            generation_timeout=provider.generation_timeout,
        )

    def pipeline_settings(self) -> PipelineSettings:
        section = self.pipeline
        return PipelineSettings(
            max_repair_attempts=section.max_repair_attempts,
            metadata_retries=section.metadata_retries,
            max_ai_fallback_plans=section.max_ai_fallback_plans,
            smoke_tests=section.smoke_tests,
            smoke_test_port=section.smoke_test_port,
        )


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _split_keys(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _apply_environment(data: Dict[str, Any], env: Mapping[str, str]) -> None:
    provider = data.setdefault("provider", {})
    keys = list(provider.get("api_keys") or [])
    key_env = provider.get("api_key_env")
    if key_env and env.get(key_env):
        keys.extend(_split_keys(env[key_env]))
    if env.get(_ENV_KEYS):
        keys = _split_keys(env[_ENV_KEYS])
    provider["api_keys"] = list(dict.fromkeys(keys))
    if env.get(_ENV_MODEL):
        provider["model"] = env[_ENV_MODEL]
    if env.get(_ENV_BASE_URL):
        provider["base_url"] = env[_ENV_BASE_URL]


def load_config(path: Optional[Path] = None, *, env: Optional[Mapping[str, str]] = None) -> EngineConfig:
    """Load ``path`` over the defaults; a missing file yields the defaults."""
    config_path = Path(path) if path is not None else Path(DEFAULT_CONFIG_NAME)
    overrides: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with config_path.open("r", encoding="utf-8") as handle:
                overrides = yaml.safe_load(handle) or {}
        except yaml.YAMLError as error:
            raise ConfigError(f"Failed to parse config {config_path}: {error}") from error
        except OSError as error:
            raise ConfigError(f"Failed to read config {config_path}: {error}") from error
        if not isinstance(overrides, dict):
            raise ConfigError("Configuration must be a mapping at the top level.")
    else:
        LOGGER.debug("Config file %s not found; using defaults", config_path)

    data = deep_merge(DEFAULT_CONFIG_TEMPLATE, overrides)
    _apply_environment(data, os.environ if env is None else env)
    data["base_dir"] = config_path.resolve().parent
    try:
        return EngineConfig.model_validate(data)
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration in {config_path}: {error}") from error


def write_default_config(path: Path, *, overwrite: bool = False) -> bool:
    """Write the default template to ``path``; returns False when the file already exists."""
    if path.exists() and not overwrite:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(DEFAULT_CONFIG_TEMPLATE, handle, sort_keys=False)
    return True
