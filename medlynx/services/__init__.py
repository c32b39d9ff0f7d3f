"""Adapters for storage and platform notifications."""
