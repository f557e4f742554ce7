"""Lightweight availability monitor with transition alerts."""

__version__ = "0.3.0"
