"""Conversation storage."""

from chatcompact.session.manager import Session, SessionManager, load_transcript

__all__ = ["Session", "SessionManager", "load_transcript"]
