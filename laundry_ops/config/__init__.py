"""Configuration package for laundry operations."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
