"""
Per-environment configuration, selected by APP_ENV
"""

import os
from typing import Callable, Dict, Optional

from infrastructure.config.settings import AppConfig
from .development import DevelopmentConfig
from .production import ProductionConfig


ENVIRONMENTS: Dict[str, Callable[[], AppConfig]] = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
}


def get_environment_config(environment: Optional[str] = None) -> AppConfig:
    """
    Build the configuration for an environment (APP_ENV when not given)

    Unknown environments get the base configuration without overrides.
    """
    environment = (environment or os.getenv("APP_ENV", "development")).lower()
    factory = ENVIRONMENTS.get(environment)
    if factory is None:
        config = AppConfig.load()
        config.environment = environment
        return config
    return factory()
