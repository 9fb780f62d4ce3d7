"""Crash-safe execution and validation engine for multi-step work plans."""

__version__ = "0.1.0"
