"""Stillwater: stress-aware wellness nudges."""

__version__ = "0.1.0"
