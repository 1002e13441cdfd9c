"""Ephemeral linked guest-chat sessions bound to owner conversations."""

__version__ = "0.1.0"
