"""Utility modules for the scheduling engine."""

from .retry import with_retry

__all__ = [
    "with_retry",
]
