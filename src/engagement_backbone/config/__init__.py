"""Configuration package: settings singleton and shared constants."""

from engagement_backbone.config.settings import Settings, get_settings, reload_settings

__all__ = ["Settings", "get_settings", "reload_settings"]
