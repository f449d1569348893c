"""
Unified Configuration System for Lunex Chat

This module provides a centralized configuration system that consolidates all application settings,
supports environment-based overrides, and provides type-safe configuration access.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
import streamlit as st
import os
from pathlib import Path


DEFAULT_SYSTEM_PROMPT = (
    "You are Lunex AI. When providing code, always wrap it in fenced markdown blocks "
    "with the appropriate language tag (e.g., ```tsx). Do not include extra commentary "
    "inside the fences."
)


@dataclass
class APIConfig:
    """API configuration settings"""
    gateway_url: str = "http://localhost:3000/api/chat/stream"
    gateway_base_url: str = "https://openrouter.ai/api/v1"
    gateway_api_key: str = ""
    auth_token: str = ""

    @classmethod
    def _from_env(cls) -> 'APIConfig':
        return cls(
            gateway_url=os.getenv("CHAT_GATEWAY_URL", cls.gateway_url),
            gateway_base_url=os.getenv("OPENROUTER_BASE_URL", cls.gateway_base_url),
            gateway_api_key=os.getenv("OPENROUTER_API_KEY", ""),
            auth_token=os.getenv("CHAT_AUTH_TOKEN", "")
        )

    @classmethod
    def from_secrets(cls) -> 'APIConfig':
        """Load API config from Streamlit secrets"""
        # In test environment, prefer environment variables
        if os.getenv("PYTEST_CURRENT_TEST") is not None:
            return cls._from_env()

        try:
            return cls(
                gateway_url=st.secrets.get("CHAT_GATEWAY_URL", cls.gateway_url),
                gateway_base_url=st.secrets.get("OPENROUTER_BASE_URL", cls.gateway_base_url),
                gateway_api_key=st.secrets.get("OPENROUTER_API_KEY", ""),
                auth_token=st.secrets.get("CHAT_AUTH_TOKEN", "")
            )
        except Exception:
            # Fallback to environment variables if secrets not available
            return cls._from_env()


@dataclass
class LLMConfig:
    """Language model configuration"""
    default_model: str = "google/gemini-2.0-flash-001"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    request_timeout: float = 120.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "default_model": self.default_model,
            "system_prompt": self.system_prompt,
            "request_timeout": self.request_timeout
        }


@dataclass
class StreamingConfig:
    """Streaming response configuration"""
    update_interval_ms: int = 50
    temp_update_interval_ms: int = 25
    max_retry_attempts: int = 3
    retry_base_delay: float = 1.0
    # Seconds without a chunk before the read is abandoned; None disables the watchdog
    stream_idle_timeout: Optional[float] = None


@dataclass
class SyncConfig:
    """Server snapshot reconciliation thresholds"""
    content_slack_chars: int = 10
    local_freshness_seconds: float = 30.0


@dataclass
class StorageConfig:
    """Local system-of-record configuration"""
    db_path: str = "infrastructure/database/conversations.db"
    max_conversations: int = 50


@dataclass
class LoggingConfig:
    """Logging and monitoring configuration"""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    enable_file_logging: bool = False
    log_file: str = "logs/app.log"


@dataclass
class AppConfig:
    """Main application configuration"""
    api: APIConfig = field(default_factory=APIConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Environment settings
    environment: str = field(default_factory=lambda: os.getenv("APP_ENV", "development"))
    debug: bool = field(default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true")

    @classmethod
    def load(cls) -> 'AppConfig':
        """Load the base configuration; environment overrides live in infrastructure.config.environments"""
        config = cls()
        config.api = APIConfig.from_secrets()
        return config

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors"""
        errors = []

        if not self.api.gateway_url:
            errors.append("Chat gateway URL is required")

        if self.streaming.update_interval_ms < 0 or self.streaming.temp_update_interval_ms < 0:
            errors.append("Streaming update intervals must not be negative")

        if self.streaming.max_retry_attempts < 1:
            errors.append("At least one streaming attempt is required")

        if self.streaming.stream_idle_timeout is not None and self.streaming.stream_idle_timeout <= 0:
            errors.append("Stream idle timeout must be positive when set")

        if self.sync.content_slack_chars < 0:
            errors.append("Reconciliation slack must not be negative")

        if self.logging.enable_file_logging:
            log_dir = Path(self.logging.log_file).parent
            if not log_dir.exists():
                log_dir.mkdir(parents=True, exist_ok=True)

        return errors


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance"""
    global _config
    if _config is None:
        from infrastructure.config.environments import get_environment_config
        _config = get_environment_config()

        # Validate configuration
        errors = _config.validate()
        if errors:
            import warnings
            for error in errors:
                warnings.warn(f"Configuration error: {error}")

    return _config


def reload_config() -> AppConfig:
    """Reload configuration (useful for testing)"""
    global _config
    _config = None
    return get_config()


def get_gateway_api_key() -> str:
    return get_config().api.gateway_api_key
