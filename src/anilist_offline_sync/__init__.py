"""Offline-capable AniList list manager."""

__version__ = "0.1.0"
