"""
SessionManager - create, open, and lock sessions in a directory.

Each session lives in ``<session_dir>/<id>.jsonl``. At most one agent loop
may drive a session at a time: :meth:`SessionManager.locked` serializes
callers in this process and takes an exclusive ``<id>.lock`` file so a
second process fails fast with :class:`SessionLockedError`.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from turnkit.errors import SessionLoadError, SessionLockedError
from turnkit.logging import get_logger
from turnkit.session.models import SessionHeader
from turnkit.session.session import Session
from turnkit.session.store import SessionStore, list_sessions

logger = get_logger("session.manager")

# Process-wide: one asyncio.Lock per session id, with the number of callers using it
_LOCKS: dict[str, tuple[asyncio.Lock, int]] = {}

# An empty lock file or reclaim guard older than this is treated as abandoned
_ABANDON_AFTER = 10.0


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class SessionManager:
    """Session lifecycle over a directory of JSONL logs."""

    def __init__(self, session_dir: str | Path) -> None:
        self.session_dir = Path(session_dir).expanduser()
        self.session_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, session_id: str) -> Path:
        return self.session_dir / f"{session_id}.jsonl"

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    def create(self, cwd: str | None = None, **metadata: object) -> Session:
        """Create and persist a new, empty session."""
        header = SessionHeader(cwd=cwd or os.getcwd(), metadata=dict(metadata))
        store = SessionStore(self.path_for(header.id))
        store.create(header)
        logger.info("Created session %s", header.id)
        return Session(header=header, store=store)

    def open(self, session_id: str) -> Session:
        """
        Load an existing session.

        Raises:
            SessionLoadError: If there is no such session or its log is invalid.
        """
        path = self.path_for(session_id)
        if not path.exists():
            raise SessionLoadError(f"No session {session_id!r} in {self.session_dir}")
        return SessionStore(path).load()

    def list_sessions(self) -> list[SessionHeader]:
        return list_sessions(self.session_dir)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def locked(self, session_id: str) -> AsyncIterator[None]:
        """
        Hold exclusive use of ``session_id`` for the duration of the block.

        Callers in this process wait their turn; a lock held by another live
        process raises :class:`SessionLockedError`. Lock files left behind
        by dead processes are reclaimed.
        """
        lock, users = _LOCKS.get(session_id, (asyncio.Lock(), 0))
        _LOCKS[session_id] = (lock, users + 1)
        try:
            async with lock:
                lock_path = self.session_dir / f"{session_id}.lock"
                self._acquire_file(lock_path, session_id)
                try:
                    yield
                finally:
                    lock_path.unlink(missing_ok=True)
        finally:
            lock, users = _LOCKS[session_id]
            if users <= 1:
                del _LOCKS[session_id]
            else:
                _LOCKS[session_id] = (lock, users - 1)

    def _acquire_file(self, lock_path: Path, session_id: str) -> None:
        if _create_exclusive(lock_path):
            return
        self._raise_if_held(lock_path, session_id)

        # Only the holder of the guard may remove a stale lock and take over
        guard = lock_path.with_name(f"{lock_path.name}.reclaim")
        if not _create_exclusive(guard):
            if _age(guard) > _ABANDON_AFTER:
                guard.unlink(missing_ok=True)
            raise SessionLockedError(
                f"Session {session_id} lock is being reclaimed by another process"
            )
        try:
            self._raise_if_held(lock_path, session_id)
            logger.warning("Removing stale lock for session %s", session_id)
            lock_path.unlink(missing_ok=True)
            if not _create_exclusive(lock_path):
                raise SessionLockedError(f"Could not lock session {session_id}")
        finally:
            guard.unlink(missing_ok=True)

    def _raise_if_held(self, lock_path: Path, session_id: str) -> None:
        try:
            content = lock_path.read_text().strip()
        except FileNotFoundError:
            return
        except OSError as e:
            raise SessionLockedError(f"Cannot read lock for session {session_id}: {e}") from e

        if not content:
            # Created but its owner has not written the pid yet
            if _age(lock_path) < _ABANDON_AFTER:
                raise SessionLockedError(f"Session {session_id} is being locked by another process")
            return
        try:
            owner = int(content)
        except ValueError:
            return
        if _pid_alive(owner):
            raise SessionLockedError(f"Session {session_id} is in use by process {owner}")


def _create_exclusive(path: Path) -> bool:
    """Create ``path`` holding this process's pid. False if it already exists."""
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w") as fh:
        fh.write(str(os.getpid()))
    return True


def _age(path: Path) -> float:
    try:
        return time.time() - path.stat().st_mtime
    except FileNotFoundError:
        return 0.0
