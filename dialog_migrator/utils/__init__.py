"""Shared utilities for logging and formatting."""

__all__ = [
    "formatting",
    "logging",
]
