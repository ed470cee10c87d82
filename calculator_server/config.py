"""Configuration management for the stateless calculator server."""

import os
from typing import Any, Dict, List, Optional
import json
from pydantic import field_validator
from pydantic_settings import BaseSettings


VALID_LOG_LEVELS = ("debug", "info", "warn", "warning", "error")


class ServerConfig(BaseSettings):
    """Main server configuration.

    Read once at process start; instances are frozen so every request sees
    the same value.
    """

    # Server settings
    server_name: str = "calculator-learning-demo-stateless"
    server_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "info"

    # HTTP binding
    host: str = "127.0.0.1"
    port: int = 1071
    cors_origin: str = "*"
    max_request_size: int = 1048576

    # Rate limiting (window in milliseconds)
    rate_limit_max: int = 1000
    rate_limit_window: int = 900000

    # Metrics
    enable_metrics: bool = True
    metrics_capacity: int = 1000

    # Tools
    progress_delay_ms: int = 200
    sample_tool_name: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False
        frozen = True
        extra = "ignore"

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: Any) -> str:
        level = str(value or "").lower()
        return level if level in VALID_LOG_LEVELS else "info"

    @field_validator("sample_tool_name", mode="before")
    @classmethod
    def _blank_tool_name(cls, value: Any) -> Optional[str]:
        if value is None or not str(value).strip():
            return None
        return str(value).strip()

    @property
    def allowed_hosts(self) -> List[str]:
        """Host headers accepted on the MCP endpoint."""
        hosts = [f"localhost:{self.port}", f"127.0.0.1:{self.port}"]
        bound = f"{self.host}:{self.port}"
        if self.host not in ("0.0.0.0", "::") and bound not in hosts:
            hosts.append(bound)
        return hosts

    @property
    def allowed_origins(self) -> Optional[List[str]]:
        """Origins accepted on the MCP endpoint; ``None`` means any."""
        if self.cors_origin == "*":
            return None
        return [self.cors_origin]

    @classmethod
    def from_file(cls, config_file: str) -> "ServerConfig":
        """Load configuration from JSON file."""
        with open(config_file, "r") as f:
            config_data = json.load(f)
        return cls(**config_data)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Load configuration from environment variables."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump()


def load_config(
    config_file: Optional[str] = None,
    use_env: bool = True
) -> ServerConfig:
    """Load configuration from file or environment."""

    if config_file and os.path.exists(config_file):
        return ServerConfig.from_file(config_file)
    if use_env:
        return ServerConfig.from_env()
    return ServerConfig(_env_file=None)


def create_sample_config() -> Dict[str, Any]:
    """Create a sample configuration for reference."""
    return {
        "server_name": "calculator-learning-demo-stateless",
        "server_version": "1.0.0",
        "debug": False,
        "log_level": "info",
        "host": "127.0.0.1",
        "port": 1071,
        "cors_origin": "*",
        "max_request_size": 1048576,
        "rate_limit_max": 1000,
        "rate_limit_window": 900000,
        "enable_metrics": True,
        "metrics_capacity": 1000,
        "progress_delay_ms": 200,
        "sample_tool_name": None,
    }
