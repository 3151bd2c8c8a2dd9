"""Configuration package for the log publisher."""
from .settings import PublisherSettings, get_settings

__all__ = ["PublisherSettings", "get_settings"]
