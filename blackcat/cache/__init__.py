"""Encrypted on-disk cache for the access layer."""
