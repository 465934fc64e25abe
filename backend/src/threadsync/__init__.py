"""Conversation and message synchronization core."""

__version__ = "0.1.0"
