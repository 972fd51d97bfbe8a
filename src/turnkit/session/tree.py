"""
Tree operations over a flat message store.

Messages form a tree via ``parent_id`` pointers. The store is a plain
``id -> Message`` dict plus a children index, so branching is an index
operation and nothing ever points from parent to child.
"""

from __future__ import annotations

from turnkit.models import Message


def walk_to_root(messages: dict[str, Message], leaf_id: str | None) -> list[Message]:
    """
    Walk from ``leaf_id`` to the root, following ``parent_id`` links.

    Returns a list ordered from **leaf to root**.
    """
    path: list[Message] = []
    visited: set[str] = set()
    current_id = leaf_id

    while current_id is not None:
        if current_id in visited:
            break  # cycle guard
        visited.add(current_id)
        message = messages.get(current_id)
        if message is None:
            break
        path.append(message)
        current_id = message.parent_id

    return path


def path_to(messages: dict[str, Message], leaf_id: str | None) -> list[Message]:
    """Root-to-leaf path ending at ``leaf_id``."""
    path = walk_to_root(messages, leaf_id)
    path.reverse()
    return path


def leaves(children: dict[str | None, list[str]], ids: list[str]) -> list[str]:
    """Ids (from ``ids``, in that order) that have no children."""
    return [mid for mid in ids if not children.get(mid)]


def get_branches(
    messages: dict[str, Message],
    children: dict[str | None, list[str]],
    exclude: set[str] | None = None,
) -> list[list[Message]]:
    """
    Get every root-to-leaf path in insertion order of the leaves.

    Messages in ``exclude`` (and their descendants' paths) are skipped.
    """
    exclude = exclude or set()
    ids = [mid for mid in messages if mid not in exclude]
    return [path_to(messages, leaf_id) for leaf_id in leaves(children, ids)]
