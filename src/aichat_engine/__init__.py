"""Conversation state engine for a browser-based AI chat client."""

__version__ = "0.1.0"
