"""Configuration module for chatcompact."""

from chatcompact.config.loader import load_config, get_config_path
from chatcompact.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
