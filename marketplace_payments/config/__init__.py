"""Configuration package for marketplace payments."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
