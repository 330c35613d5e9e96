"""API routes module."""

from . import conversion, health

__all__ = ["conversion", "health"]
