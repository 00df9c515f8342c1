"""Utility helpers for the BTCS backend."""
from .logger import get_logger

__all__ = ["get_logger"]
