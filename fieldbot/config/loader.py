"""Configuration loading utilities."""

from __future__ import annotations

import json
import os
from pathlib import Path

from fieldbot.config.schema import Config
from fieldbot.logging import get_logger

logger = get_logger(__name__)


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path(os.environ.get("FIELDBOT_CONFIG", "~/.fieldbot/config.json")).expanduser()


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or fall back to defaults.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()
    config = Config()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            config = Config.model_validate(data)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("config_load_failed", path=str(path), error=str(e))

    if not config.upstream.resolved_api_key:
        env_key = os.environ.get("OPENAI_API_KEY", "")
        if env_key:
            config.upstream.api_key = env_key

    return config
