"""
JSONL persistence for sessions.

A session log is append-only. The first line is a ``header`` record; after
it come ``message``, ``compaction``, and ``meta`` records in the order they
happened. Each record is written with a single ``write()`` call followed by
``flush``/``fsync``, so a crash can at worst lose the line being written.
A torn final line (no trailing newline, not valid JSON) is skipped on load
and cut off before the next append; every other malformed line is an error.

Replaying the log rebuilds the identical message tree; the active leaf and
usage totals come from the last ``meta`` record.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from turnkit.errors import SessionLoadError
from turnkit.logging import get_logger
from turnkit.models import Message
from turnkit.session.models import CompactionRecord, SessionHeader, SessionMeta
from turnkit.session.session import Session

logger = get_logger("session.store")

RECORD_TYPES = ("header", "message", "compaction", "meta")


def _serialize(record: dict[str, Any]) -> str:
    return json.dumps(record, separators=(",", ":"), ensure_ascii=False) + "\n"


class SessionStore:
    """Reads and appends one session's JSONL log."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        # Set by load() when the log ends in a partial write
        self._torn_offset: int | None = None
        self._missing_newline = False

    def exists(self) -> bool:
        return self.path.exists()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def create(self, header: SessionHeader) -> None:
        """Start a new log with ``header``. Fails if the file already exists."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(_serialize(header.to_dict()))
            fh.flush()
            os.fsync(fh.fileno())

    def append_message(self, message: Message) -> None:
        self._append({"type": "message", **message.to_dict()})

    def append_compaction(self, record: CompactionRecord) -> None:
        self._append(record.to_dict())

    def append_meta(self, meta: SessionMeta) -> None:
        self._append(meta.to_dict())

    def _append(self, record: dict[str, Any]) -> None:
        line = _serialize(record)
        if self._torn_offset is not None:
            logger.warning("Discarding partial last line of %s", self.path)
            os.truncate(self.path, self._torn_offset)
            self._torn_offset = None
        elif self._missing_newline:
            line = "\n" + line
            self._missing_newline = False
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line)
            fh.flush()
            os.fsync(fh.fileno())

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_header(self) -> SessionHeader:
        """Read just the header line."""
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                first = fh.readline()
        except OSError as e:
            raise SessionLoadError(f"Cannot read {self.path}: {e}") from e
        record = self._parse_line(first, 1)
        if record.get("type") != "header":
            raise SessionLoadError(f"{self.path}:1: first record must be a header")
        return self._build(SessionHeader.from_dict, record, 1)

    def load(self) -> Session:
        """
        Replay the log into a :class:`Session` bound to this store.

        Raises:
            SessionLoadError: On unreadable files, malformed lines other
                than a torn last line, unknown record types, or references
                to unknown messages. The file is never modified.
        """
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                lines = fh.readlines()
        except (OSError, UnicodeDecodeError) as e:
            raise SessionLoadError(f"Cannot read {self.path}: {e}") from e

        session: Session | None = None
        meta: SessionMeta | None = None
        self._torn_offset = None
        self._missing_newline = bool(lines) and not lines[-1].endswith("\n")

        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            if lineno == len(lines) and self._missing_newline and session is not None:
                try:
                    record = self._parse_line(line, lineno)
                except SessionLoadError as e:
                    logger.warning("Ignoring partial last line: %s", e)
                    self._torn_offset = sum(len(x.encode("utf-8")) for x in lines[:-1])
                    self._missing_newline = False
                    break
            else:
                record = self._parse_line(line, lineno)
            record_type = record.get("type")

            if session is None:
                if record_type != "header":
                    raise SessionLoadError(f"{self.path}:{lineno}: first record must be a header")
                session = Session(header=self._build(SessionHeader.from_dict, record, lineno))
                continue

            if record_type == "message":
                message = self._build(Message.from_dict, record, lineno)
                try:
                    session._insert(message)
                except (KeyError, ValueError) as e:
                    raise SessionLoadError(f"{self.path}:{lineno}: {e}") from e
            elif record_type == "compaction":
                compaction = self._build(CompactionRecord.from_dict, record, lineno)
                try:
                    session.record_compaction(compaction)
                except KeyError as e:
                    raise SessionLoadError(f"{self.path}:{lineno}: {e}") from e
            elif record_type == "meta":
                meta = self._build(SessionMeta.from_dict, record, lineno)
            elif record_type == "header":
                raise SessionLoadError(f"{self.path}:{lineno}: duplicate header")
            else:
                raise SessionLoadError(
                    f"{self.path}:{lineno}: unknown record type {record_type!r}"
                )

        if session is None:
            raise SessionLoadError(f"{self.path}: empty session log")

        if meta is not None:
            if meta.active_leaf_id is not None and meta.active_leaf_id not in session.messages:
                raise SessionLoadError(
                    f"{self.path}: active leaf {meta.active_leaf_id!r} is not in the log"
                )
            session.active_leaf_id = meta.active_leaf_id
            session.usage = meta.usage
            session.metadata = dict(meta.metadata)
        else:
            branch_ids = [m.id for m in session.messages.values() if not session.is_detached(m.id)]
            session.active_leaf_id = branch_ids[-1] if branch_ids else None
            for message in session.messages.values():
                if message.usage is not None:
                    session.add_usage(message.usage)

        session.store = self
        logger.debug("Loaded session %s (%d messages)", session.id, len(session))
        return session

    def _parse_line(self, line: str, lineno: int) -> dict[str, Any]:
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            raise SessionLoadError(f"{self.path}:{lineno}: malformed JSON ({e.msg})") from e
        if not isinstance(record, dict):
            raise SessionLoadError(f"{self.path}:{lineno}: record is not an object")
        return record

    def _build(self, factory: Any, record: dict[str, Any], lineno: int) -> Any:
        try:
            return factory(record)
        except (KeyError, TypeError, ValueError) as e:
            raise SessionLoadError(
                f"{self.path}:{lineno}: invalid {record.get('type')} record ({e})"
            ) from e


def list_sessions(session_dir: str | Path) -> list[SessionHeader]:
    """Headers of every readable session log in ``session_dir``, newest first."""
    directory = Path(session_dir)
    if not directory.is_dir():
        return []
    headers: list[SessionHeader] = []
    for path in directory.glob("*.jsonl"):
        try:
            headers.append(SessionStore(path).read_header())
        except SessionLoadError as e:
            logger.warning("Skipping unreadable session log: %s", e)
    headers.sort(key=lambda h: h.created_at, reverse=True)
    return headers
