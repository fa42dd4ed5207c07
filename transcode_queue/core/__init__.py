"""Core orchestration and modules."""

from .main import main

__all__ = ["main"]
