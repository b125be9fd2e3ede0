from .models import (
    AdminSettings,
    CorsSettings,
    DatabaseSettings,
    DatabaseTables,
    ProcessLoadSettings,
    RateLimitSettings,
    Settings,
)
from .service import ConfigError, load_settings

__all__ = [
    "AdminSettings",
    "CorsSettings",
    "DatabaseSettings",
    "DatabaseTables",
    "ProcessLoadSettings",
    "RateLimitSettings",
    "Settings",
    "ConfigError",
    "load_settings",
]
