"""Core contracts shared across packages."""
