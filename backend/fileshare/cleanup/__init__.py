"""Periodic expiry of uploaded files."""
