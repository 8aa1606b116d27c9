"""Audit store persistence."""
