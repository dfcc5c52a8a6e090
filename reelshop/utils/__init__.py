"""Shared utilities: exception hierarchy and retry helper."""
