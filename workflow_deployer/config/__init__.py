"""Configuration management."""

from workflow_deployer.config.settings import Environment, Settings, get_settings

__all__ = ["Environment", "Settings", "get_settings"]
