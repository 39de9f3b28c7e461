"""Configuration package for payment routing."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
