"""
Configuration Management for Server Functions

This module handles environment-based configuration using .env files
and provides centralized access to all configurable parameters.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from dotenv import load_dotenv


@dataclass
class NetworkConfig:
    """Network-related configuration."""
    default_port: int = 8080
    default_host: str = "127.0.0.1"
    bind_address: str = "0.0.0.0"
    dispatch_path: str = "/_serverfn"


@dataclass
class RPCConfig:
    """RPC communication configuration."""
    endpoint: str = ""
    timeout_seconds: float = 30.0
    max_request_size_mb: int = 10


@dataclass
class RuntimeConfig:
    """Execution side of this process."""
    mode: str = "client"


@dataclass
class ContextConfig:
    """Request context configuration."""
    environment_prefix: str = ""


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file_path: str = ""
    enable_console_logging: bool = True


@dataclass
class SecurityConfig:
    """Security-related configuration."""
    expose_tracebacks: bool = False


class Config:
    """
    Centralized configuration management.

    Loads configuration from environment variables and .env files.
    """

    def __init__(self, env_file: str = ".env"):
        """
        Initialize configuration.

        Args:
            env_file: Path to .env file (optional)
        """
        self.env_file = env_file
        self._load_env_file()
        self._initialize_configs()

    def _load_env_file(self):
        """Load environment variables from .env file if available."""
        if self.env_file and os.path.exists(self.env_file):
            load_dotenv(self.env_file)

    def _get_env(self, key: str, default: Any, type_cast: type = str) -> Any:
        """Get environment variable with type casting and default."""
        value = os.environ.get(key, default)

        if type_cast == bool:
            if isinstance(value, str):
                return value.lower() in ('true', '1', 'yes', 'on')
            return bool(value)

        try:
            return type_cast(value)
        except (ValueError, TypeError):
            return default

    def _initialize_configs(self):
        """Initialize all configuration sections."""
        self.network = NetworkConfig(
            default_port=self._get_env("DEFAULT_PORT", 8080, int),
            default_host=self._get_env("DEFAULT_HOST", "127.0.0.1"),
            bind_address=self._get_env("BIND_ADDRESS", "0.0.0.0"),
            dispatch_path=self._get_env("DISPATCH_PATH", "/_serverfn")
        )

        self.rpc = RPCConfig(
            endpoint=self._get_env("SERVERFN_ENDPOINT", ""),
            timeout_seconds=self._get_env("RPC_TIMEOUT_SECONDS", 30.0, float),
            max_request_size_mb=self._get_env("MAX_REQUEST_SIZE_MB", 10, int)
        )

        self.runtime = RuntimeConfig(
            mode=self._get_env("SERVERFN_MODE", "client")
        )

        self.context = ContextConfig(
            environment_prefix=self._get_env("CONTEXT_ENVIRONMENT_PREFIX", "")
        )

        self.logging = LoggingConfig(
            level=self._get_env("LOG_LEVEL", "INFO"),
            format=self._get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            file_path=self._get_env("LOG_FILE_PATH", ""),
            enable_console_logging=self._get_env("ENABLE_CONSOLE_LOGGING", True, bool)
        )

        self.security = SecurityConfig(
            expose_tracebacks=self._get_env("EXPOSE_TRACEBACKS", False, bool)
        )

    def endpoint_url(self) -> str:
        """URL of the dispatch endpoint a client process calls."""
        if self.rpc.endpoint:
            return self.rpc.endpoint
        return f"http://{self.network.default_host}:{self.network.default_port}{self.network.dispatch_path}"

    def to_dict(self) -> dict:
        """Convert configuration to dictionary for debugging."""
        return {
            "network": self.network.__dict__,
            "rpc": self.rpc.__dict__,
            "runtime": self.runtime.__dict__,
            "context": self.context.__dict__,
            "logging": self.logging.__dict__,
            "security": self.security.__dict__
        }


# Global configuration instance
config = Config()


def setup_logging(settings: Optional[Config] = None) -> logging.Logger:
    """
    Configure the root logger from the logging section.

    Args:
        settings: Configuration to use (the global one if None)

    Returns:
        The package logger
    """
    settings = settings or config
    handlers = []
    if settings.logging.enable_console_logging:
        handlers.append(logging.StreamHandler())
    if settings.logging.file_path:
        log_dir = os.path.dirname(settings.logging.file_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(settings.logging.file_path))
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=getattr(logging, settings.logging.level.upper(), logging.INFO),
        format=settings.logging.format,
        handlers=handlers,
        force=True
    )
    return logging.getLogger("serverfn")


# Convenience functions
def get_default_port() -> int:
    """Get default port from configuration."""
    return config.network.default_port


def get_default_host() -> str:
    """Get default host from configuration."""
    return config.network.default_host


def get_rpc_timeout() -> float:
    """Get RPC timeout from configuration."""
    return config.rpc.timeout_seconds


def get_endpoint_url() -> str:
    """Get the configured dispatch endpoint URL."""
    return config.endpoint_url()
