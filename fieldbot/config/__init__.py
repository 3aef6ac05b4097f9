"""Configuration module for fieldbot."""

from fieldbot.config.loader import load_config
from fieldbot.config.schema import Config

__all__ = ["Config", "load_config"]
