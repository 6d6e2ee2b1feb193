"""Durable task-execution broker."""

__version__ = "0.1.0"
