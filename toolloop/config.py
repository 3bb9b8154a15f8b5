"""
Configuration management for toolloop.

Loads configuration from environment variables with defaults suited to
OpenRouter. A .env file in the working directory is honoured.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .models.config import clamp_max_iterations

load_dotenv()


def _optional_float(value: str) -> Optional[float]:
    return float(value) if value else None


@dataclass
class TransportConfig:
    """Connection settings for the completions endpoint."""
    base_url: str = os.getenv("COMPLETION_BASE_URL", "https://openrouter.ai/api/v1")
    api_key: str = os.getenv("COMPLETION_API_KEY", "")
    timeout: float = float(os.getenv("COMPLETION_TIMEOUT", "120"))
    app_title: str = os.getenv("COMPLETION_APP_TITLE", "toolloop")
    referer: str = os.getenv("COMPLETION_REFERER", "")


@dataclass
class LoopConfig:
    """Defaults for the general tool-use loop."""
    model: str = os.getenv("LOOP_MODEL", "openrouter/auto")
    temperature: float = float(os.getenv("LOOP_TEMPERATURE", "0.7"))
    max_tokens: int = int(os.getenv("LOOP_MAX_TOKENS", "1024"))
    max_iterations: int = clamp_max_iterations(os.getenv("LOOP_MAX_ITERATIONS", "8"))
    tool_timeout: Optional[float] = _optional_float(os.getenv("LOOP_TOOL_TIMEOUT", "30"))
    stream: bool = os.getenv("LOOP_STREAM", "false").lower() == "true"


@dataclass
class RuntimeConfig:
    """Defaults for the lightweight single-path runtime."""
    max_steps: int = int(os.getenv("RUNTIME_MAX_STEPS", "5"))
    max_iterations: int = clamp_max_iterations(os.getenv("RUNTIME_MAX_ITERATIONS", "5"))


@dataclass
class LangfuseConfig:
    """Configuration for Langfuse observability.

    Tracing auto-enables when both public_key and secret_key are provided.
    """
    public_key: str = os.getenv("LANGFUSE_PUBLIC_KEY", "")
    secret_key: str = os.getenv("LANGFUSE_SECRET_KEY", "")
    host: str = os.getenv("LANGFUSE_HOST", "")
    debug: bool = os.getenv("LANGFUSE_DEBUG", "false").lower() == "true"

    @property
    def enabled(self) -> bool:
        """Auto-enable when both keys are configured."""
        return bool(self.public_key and self.secret_key)


@dataclass
class Config:
    """Main configuration container."""
    transport: TransportConfig
    loop: LoopConfig
    runtime: RuntimeConfig
    langfuse: LangfuseConfig
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


def get_config() -> Config:
    """Get the application configuration."""
    return Config(
        transport=TransportConfig(),
        loop=LoopConfig(),
        runtime=RuntimeConfig(),
        langfuse=LangfuseConfig(),
    )


# Global config instance
config = get_config()
