"""Configuration module for the BLT transfer service."""

from blt.config.settings import ServiceConfig, load_config

__all__ = ["ServiceConfig", "load_config"]
