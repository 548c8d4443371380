"""Switchboard: route requests across specialised agents with shared context."""

__version__ = "0.1.0"
