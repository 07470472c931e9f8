"""Session management for conversation transcripts."""

import json
import os
import secrets
from collections import OrderedDict
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from chatcompact.compaction.types import Message, MessageRange
from chatcompact.utils.helpers import ensure_dir, safe_filename

# Maximum number of sessions to keep in memory cache (LRU eviction)
_MAX_CACHED_SESSIONS = 200
_MAX_CORRUPT_LINES = 50

RangeListener = Callable[[MessageRange], Any]


def _message_from_record(data: dict[str, Any], position: int) -> Message:
    """Build a Message from a JSONL record, filling ids and sequence if absent."""
    return Message(
        id=str(data.get("id") or f"m{position}"),
        role=data["role"],
        text=data.get("text", data.get("content", "")),
        created_at=int(data.get("created_at", position)),
        token_count=data.get("token_count"),
        has_image=bool(data.get("has_image", False)),
    )


def _read_jsonl(path: Path, label: str) -> tuple[dict[str, Any], list[Message]] | None:
    """
    Read a metadata line and message lines from a JSONL file.

    Corrupt lines are skipped; a file with too many of them is rejected.
    """
    messages: list[Message] = []
    metadata: dict[str, Any] = {}
    corrupt_lines = 0

    with open(path, encoding="utf-8") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue

            try:
                data = json.loads(line)
                if data.get("_type") == "metadata":
                    metadata = data
                    continue
                messages.append(_message_from_record(data, len(messages)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError):
                corrupt_lines += 1
                if corrupt_lines <= 3:
                    logger.warning(f"Skipped corrupt line {line_num} in {label}")
                if corrupt_lines > _MAX_CORRUPT_LINES:
                    logger.error(f"Too many corrupt lines in {label}, aborting load")
                    return None

    if corrupt_lines:
        logger.warning(f"{label}: loaded with {corrupt_lines} corrupt line(s) skipped")
    return metadata, messages


def load_transcript(path: Path) -> list[Message]:
    """
    Load a transcript from a JSONL file.

    Each line holds one message with ``role`` and ``text`` (or
    ``content``); ``id`` and ``created_at`` default to the line position.
    A leading metadata line, as written by ``SessionManager``, is ignored.

    Raises:
        FileNotFoundError: The file does not exist.
        ValueError: The file has too many corrupt lines.
    """
    result = _read_jsonl(path, str(path))
    if result is None:
        raise ValueError(f"Transcript {path} is not valid JSONL")
    return result[1]


@dataclass
class Session:
    """
    A conversation session.

    Owns the transcript. Edits and deletions notify listeners with the
    affected range so cached summaries covering it can be dropped.
    """

    key: str
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)
    listeners: list[RangeListener] = field(default_factory=list, repr=False)

    def add_listener(self, listener: RangeListener) -> None:
        self.listeners.append(listener)

    def _notify(self, message_range: MessageRange) -> None:
        for listener in self.listeners:
            listener(message_range)

    def _index_of(self, message_id: str) -> int:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        raise KeyError(f"No message {message_id!r} in session {self.key}")

    def add_message(
        self,
        role: str,
        text: str,
        message_id: str | None = None,
        token_count: int | None = None,
        has_image: bool = False,
    ) -> Message:
        """Append a message at the next sequence position."""
        seq = self.messages[-1].created_at + 1 if self.messages else 0
        message = Message(
            id=message_id or secrets.token_hex(6),
            role=role,
            text=text,
            created_at=seq,
            token_count=token_count,
            has_image=has_image,
        )
        self.messages.append(message)
        self.updated_at = datetime.now()
        return message

    def edit_message(self, message_id: str, text: str) -> Message:
        """
        Replace the text of a message.

        The message keeps its id and sequence position; its token count
        is cleared so it gets measured again.

        Raises:
            KeyError: No message with that id.
        """
        index = self._index_of(message_id)
        edited = replace(self.messages[index], text=text, token_count=None)
        self.messages[index] = edited
        self.updated_at = datetime.now()
        self._notify(MessageRange.of([edited]))
        return edited

    def delete_message(self, message_id: str) -> Message:
        """
        Remove a message.

        Raises:
            KeyError: No message with that id.
        """
        removed = self.messages.pop(self._index_of(message_id))
        self.updated_at = datetime.now()
        self._notify(MessageRange.of([removed]))
        return removed

    def get_history(self, max_messages: int | None = None) -> list[Message]:
        """Get the transcript, optionally only the newest ``max_messages``."""
        if max_messages is None or len(self.messages) <= max_messages:
            return list(self.messages)
        return self.messages[-max_messages:]

    def clear(self) -> None:
        """Clear all messages in the session."""
        if self.messages:
            self._notify(MessageRange.of(self.messages))
        self.messages = []
        self.updated_at = datetime.now()


class SessionManager:
    """
    Manages conversation sessions.

    Sessions are stored as JSONL files in the sessions directory.
    Uses LRU cache to limit memory usage. Listeners given here are
    attached to every session, e.g. ``engine.invalidate_range``.
    """

    def __init__(
        self,
        sessions_dir: Path | None = None,
        listeners: list[RangeListener] | None = None,
    ):
        self.sessions_dir = ensure_dir(sessions_dir or Path.home() / ".chatcompact" / "sessions")
        self.listeners = list(listeners or [])
        self._cache: OrderedDict[str, Session] = OrderedDict()

    def _get_session_path(self, key: str) -> Path:
        """Get the file path for a session."""
        safe_key = safe_filename(key.replace(":", "_"))
        return self.sessions_dir / f"{safe_key}.jsonl"

    def get_or_create(self, key: str) -> Session:
        """
        Get an existing session or create a new one.

        Args:
            key: Session key (conversation id).

        Returns:
            The session.
        """
        if key in self._cache:
            self._cache.move_to_end(key)
            return self._cache[key]

        session = self._load(key)
        if session is None:
            session = Session(key=key)
        for listener in self.listeners:
            session.add_listener(listener)

        self._cache[key] = session
        if len(self._cache) > _MAX_CACHED_SESSIONS:
            self._cache.popitem(last=False)

        return session

    def _load(self, key: str) -> Session | None:
        """Load a session from disk, skipping corrupt lines."""
        path = self._get_session_path(key)

        if not path.exists():
            return None

        try:
            result = _read_jsonl(path, f"session {key}")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to load session {key}: {e}")
            return None
        if result is None:
            return None

        header, messages = result
        created_at = None
        if header.get("created_at"):
            try:
                created_at = datetime.fromisoformat(header["created_at"])
            except (ValueError, TypeError):
                pass

        return Session(
            key=key,
            messages=messages,
            created_at=created_at or datetime.now(),
            metadata=header.get("metadata", {}),
        )

    def save(self, session: Session) -> None:
        """Save a session to disk atomically."""
        path = self._get_session_path(session.key)
        path.parent.mkdir(parents=True, exist_ok=True)

        tmp_path = path.with_suffix(f".tmp.{secrets.token_hex(4)}")
        try:
            with open(tmp_path, "w", encoding="utf-8", newline="\n") as f:
                metadata_line = {
                    "_type": "metadata",
                    "created_at": session.created_at.isoformat(),
                    "updated_at": session.updated_at.isoformat(),
                    "metadata": session.metadata,
                }
                f.write(json.dumps(metadata_line) + "\n")

                for message in session.messages:
                    f.write(json.dumps(asdict(message)) + "\n")

            os.replace(str(tmp_path), str(path))
        except Exception:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                pass
            raise

        self._cache[session.key] = session
        self._cache.move_to_end(session.key)

    def delete(self, key: str) -> bool:
        """
        Delete a session.

        Listeners are told the whole transcript is gone.

        Returns:
            True if deleted, False if not found.
        """
        session = self._cache.pop(key, None) or self._load(key)
        if session is not None and session.messages:
            for listener in self.listeners:
                listener(MessageRange.of(session.messages))

        path = self._get_session_path(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def list_sessions(self) -> list[dict[str, Any]]:
        """
        List all sessions.

        Returns:
            List of session info dicts, most recently updated first.
        """
        sessions = []

        for path in self.sessions_dir.glob("*.jsonl"):
            try:
                with open(path, encoding="utf-8") as f:
                    first_line = f.readline().strip()
                if not first_line:
                    continue
                data = json.loads(first_line)
            except (OSError, json.JSONDecodeError):
                continue
            if data.get("_type") == "metadata":
                sessions.append({
                    "key": path.stem.replace("_", ":"),
                    "created_at": data.get("created_at"),
                    "updated_at": data.get("updated_at"),
                    "path": str(path),
                })

        return sorted(sessions, key=lambda x: x.get("updated_at") or "", reverse=True)
