"""Configuration package for application settings and database connections."""

from app.config.settings import settings, Settings, get_settings
from app.config.database import connect_to_mongodb, close_mongodb_connection

__all__ = [
    "settings",
    "Settings",
    "get_settings",
    "connect_to_mongodb",
    "close_mongodb_connection",
]
