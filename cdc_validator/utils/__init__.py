"""
Utilities package for the CDC snapshot validator.

Exports shared helpers for logging and profiling. Keep this package
lightweight and free of domain-specific logic.
"""

from cdc_validator.utils.logging import configure_logging, get_logger
from cdc_validator.utils.profiler import ProfileStats, profile_block

__all__ = [
    "configure_logging",
    "get_logger",
    "ProfileStats",
    "profile_block",
]
