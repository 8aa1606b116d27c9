"""Core configuration, errors and dependencies."""
