# config/__init__.py

from .base import Config, DevelopmentConfig, ProductionConfig, TestingConfig
from .monitoring import (
    DevelopmentMonitoringConfig,
    MonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)

# FLASK_ENV -> (settings, logging/monitoring settings); anything else is development
CONFIGS_BY_ENV = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}


def get_config_classes(flask_env):
    return CONFIGS_BY_ENV.get(flask_env, CONFIGS_BY_ENV["development"])


__all__ = [
    "CONFIGS_BY_ENV",
    "get_config_classes",
    "Config",
    "DevelopmentConfig",
    "TestingConfig",
    "ProductionConfig",
    "MonitoringConfig",
    "DevelopmentMonitoringConfig",
    "TestingMonitoringConfig",
    "ProductionMonitoringConfig",
]
