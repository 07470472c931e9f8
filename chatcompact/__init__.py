"""chatcompact - context compaction for long-running chat transcripts."""

__version__ = "0.3.0"
__logo__ = "🗜️"
