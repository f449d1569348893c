"""
Development environment configuration overrides
"""

from dataclasses import dataclass
from infrastructure.config.settings import AppConfig


@dataclass
class DevelopmentConfig(AppConfig):
    """Development environment configuration"""

    def __post_init__(self):
        # First load the base configuration (including API keys)
        base_config = AppConfig.load()

        self.api = base_config.api
        self.llm = base_config.llm
        self.streaming = base_config.streaming
        self.sync = base_config.sync
        self.storage = base_config.storage
        self.logging = base_config.logging

        self.environment = "development"
        self.debug = True

        # More verbose logging in development
        self.logging.level = "DEBUG"
        self.logging.enable_file_logging = True
        self.logging.log_file = "logs/dev-app.log"

        # Local proxy and a throwaway database
        self.api.gateway_url = self.api.gateway_url or "http://localhost:3000/api/chat/stream"
        self.storage.db_path = "infrastructure/database/dev-conversations.db"


def get_development_config() -> DevelopmentConfig:
    """Get development-specific configuration"""
    return DevelopmentConfig()
