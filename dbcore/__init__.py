"""Async database access with pooled, transaction-safe backends."""

__version__ = "0.1.0"
