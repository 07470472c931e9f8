"""Utility functions for chatcompact."""

from chatcompact.utils.helpers import ensure_dir, expand_path, safe_filename

__all__ = ["ensure_dir", "expand_path", "safe_filename"]
