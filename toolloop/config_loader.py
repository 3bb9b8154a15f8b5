"""
Configuration loader for toolloop.

Loads configuration from a YAML file with support for
environment variable interpolation.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml

from .models import (
    AppConfig,
    LangfuseConfig,
    LoggingConfig,
    LoopConfig,
    RuntimeConfig,
    TransportConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config.yaml")

# Regex for environment variable interpolation: ${VAR} or ${VAR:-default}
ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")

# Singleton cache for app config
_app_config: Optional[AppConfig] = None


def resolve_env_vars(value: str) -> str:
    """
    Resolve environment variable references in a string.

    Supports ${VAR} and ${VAR:-default} syntax. Unset variables without a
    default resolve to an empty string.
    """

    def replace_match(match: re.Match) -> str:
        default_value = match.group(2) if match.group(2) is not None else ""
        return os.environ.get(match.group(1), default_value)

    return ENV_VAR_PATTERN.sub(replace_match, value)


def _substitute_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: _substitute_env_vars_recursive(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_substitute_env_vars_recursive(item) for item in data]
    if isinstance(data, str):
        return resolve_env_vars(data)
    return data


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _as_optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def _parse_transport_config(data: dict) -> TransportConfig:
    defaults = TransportConfig()
    return TransportConfig(
        base_url=data.get("base_url") or defaults.base_url,
        api_key=data.get("api_key", ""),
        timeout=float(data.get("timeout", defaults.timeout)),
        app_title=data.get("app_title", defaults.app_title),
        referer=data.get("referer", ""),
    )


def _parse_loop_config(data: dict) -> LoopConfig:
    defaults = LoopConfig()
    return LoopConfig(
        model=data.get("model") or defaults.model,
        temperature=float(data.get("temperature", defaults.temperature)),
        max_tokens=int(data.get("max_tokens", defaults.max_tokens)),
        max_iterations=int(data.get("max_iterations", defaults.max_iterations)),
        tool_timeout=_as_optional_float(data.get("tool_timeout", defaults.tool_timeout)),
        stream=_as_bool(data.get("stream"), defaults.stream),
    )


def _parse_runtime_config(data: dict) -> RuntimeConfig:
    return RuntimeConfig(
        max_steps=int(data.get("max_steps", 5)),
        max_iterations=int(data.get("max_iterations", 5)),
    )


def _parse_langfuse_config(data: dict) -> LangfuseConfig:
    return LangfuseConfig(
        public_key=data.get("public_key", ""),
        secret_key=data.get("secret_key", ""),
        host=data.get("host", ""),
        debug=_as_bool(data.get("debug")),
    )


def load_app_config(path: Optional[str] = None, reload: bool = False) -> AppConfig:
    """
    Load application configuration from a YAML file.

    Subsequent calls return the cached config unless reload=True.

    Args:
        path: Path to the YAML file. If None, uses the CONFIG_PATH env var
              or config.yaml in the working directory.
        reload: Force a reload from disk instead of using the cache.

    Returns:
        AppConfig with all sections loaded

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file is empty
    """
    global _app_config

    if _app_config is not None and not reload:
        return _app_config

    if path is None:
        path = os.environ.get("CONFIG_PATH", str(DEFAULT_CONFIG_PATH))

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found at {config_path}. "
            "Create one or set the CONFIG_PATH env var."
        )

    logger.info("Loading configuration from %s", config_path)

    with open(config_path, "r") as f:
        raw_config = yaml.safe_load(f)

    if raw_config is None:
        raise ValueError(f"Configuration file {config_path} is empty")

    raw_config = _substitute_env_vars_recursive(raw_config)

    _app_config = AppConfig(
        version=str(raw_config.get("version", "1.0")),
        transport=_parse_transport_config(raw_config.get("transport") or {}),
        loop=_parse_loop_config(raw_config.get("loop") or {}),
        runtime=_parse_runtime_config(raw_config.get("runtime") or {}),
        logging=LoggingConfig(level=(raw_config.get("logging") or {}).get("level", "INFO")),
        langfuse=_parse_langfuse_config(raw_config.get("langfuse") or {}),
    )
    return _app_config


def reset_config_cache() -> None:
    """Drop the cached config so the next load reads from disk."""
    global _app_config
    _app_config = None
