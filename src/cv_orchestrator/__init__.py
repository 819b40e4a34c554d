"""Asynchronous job orchestration engine for CV processing."""

__version__ = "0.1.0"
