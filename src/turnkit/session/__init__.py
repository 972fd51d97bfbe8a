"""
Conversation sessions: a branchable message tree persisted as JSONL.

Example:
    from turnkit.session import SessionManager

    manager = SessionManager("~/.turnkit/sessions")
    session = manager.create()
    session.append(Message.user("hello"))
    session.flush()

    same = manager.open(session.id)
"""

from turnkit.session.manager import SessionManager
from turnkit.session.models import CompactionRecord, SessionHeader, SessionMeta
from turnkit.session.session import Session
from turnkit.session.store import SessionStore, list_sessions
from turnkit.session.tree import get_branches, path_to, walk_to_root

__all__ = [
    "CompactionRecord",
    "Session",
    "SessionHeader",
    "SessionManager",
    "SessionMeta",
    "SessionStore",
    "get_branches",
    "list_sessions",
    "path_to",
    "walk_to_root",
]
