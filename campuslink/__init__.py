"""Realtime chat, presence and connection requests for the campus social app."""

__version__ = "0.1.0"
