"""Encrypted, controlled-disclosure file storage backend."""
