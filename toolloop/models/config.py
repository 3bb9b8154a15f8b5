"""
Configuration models for toolloop.

Defines dataclasses for the YAML configuration file.
"""

from dataclasses import dataclass, field
from typing import Optional

MIN_ITERATIONS = 1
MAX_ITERATIONS = 50


def clamp_max_iterations(value: int) -> int:
    """Clamp a configured iteration ceiling into [1, 50]."""
    return max(MIN_ITERATIONS, min(MAX_ITERATIONS, int(value)))


@dataclass
class TransportConfig:
    """Connection settings for the completions endpoint."""
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    timeout: float = 120.0
    app_title: str = "toolloop"
    referer: str = ""


@dataclass
class LoopConfig:
    """Defaults for the general tool-use loop."""
    model: str = "openrouter/auto"
    temperature: float = 0.7
    max_tokens: int = 1024
    max_iterations: int = 8
    tool_timeout: Optional[float] = 30.0
    stream: bool = False

    def __post_init__(self):
        self.max_iterations = clamp_max_iterations(self.max_iterations)


@dataclass
class RuntimeConfig:
    """Defaults for the lightweight single-path runtime."""
    max_steps: int = 5
    max_iterations: int = 5

    def __post_init__(self):
        self.max_iterations = clamp_max_iterations(self.max_iterations)


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"


@dataclass
class LangfuseConfig:
    """Configuration for Langfuse observability.

    Tracing auto-enables when both public_key and secret_key are provided.
    """
    public_key: str = ""
    secret_key: str = ""
    host: str = ""
    debug: bool = False

    @property
    def enabled(self) -> bool:
        """Auto-enable when both keys are configured."""
        return bool(self.public_key and self.secret_key)


@dataclass
class AppConfig:
    """
    Application configuration container.

    Holds every section loaded from config.yaml.
    """
    version: str = "1.0"
    transport: TransportConfig = field(default_factory=TransportConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    langfuse: LangfuseConfig = field(default_factory=LangfuseConfig)

    @property
    def log_level(self) -> str:
        return self.logging.level
