"""Textual front end: one tab per session, a shared command input."""

from .app import FlashTermApp

__all__ = ["FlashTermApp"]
