"""Configuration management for bondhome-mqtt."""

from bondhome.config.settings import BondSettings, get_settings

__all__ = ["BondSettings", "get_settings"]
