"""
Core module for engine configuration and utilities.

The adaptive testing engine itself lives in ``cat_engine.core.cat``.
"""
from .config import settings

__all__ = ["settings"]
