"""
Production environment configuration overrides
"""

from dataclasses import dataclass
from infrastructure.config.settings import AppConfig


@dataclass
class ProductionConfig(AppConfig):
    """Production environment configuration"""

    def __post_init__(self):
        base_config = AppConfig.load()
        self.api = base_config.api
        self.llm = base_config.llm
        self.streaming = base_config.streaming
        self.sync = base_config.sync
        self.storage = base_config.storage
        self.logging = base_config.logging

        self.environment = "production"
        self.debug = False

        # Errors only, kept on disk
        self.logging.level = "WARNING"
        self.logging.enable_file_logging = True
        self.logging.log_file = "logs/prod-app.log"

        # A stalled gateway should not hold a conversation's lease forever
        if self.streaming.stream_idle_timeout is None:
            self.streaming.stream_idle_timeout = 60.0

        self.storage.max_conversations = 100


def get_production_config() -> ProductionConfig:
    """Get production-specific configuration"""
    return ProductionConfig()
