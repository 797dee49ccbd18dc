from __future__ import annotations

"""Active-path resolution over a flat set of message rows.

Messages are stored as flat rows with a ``parent_message_id`` pointer; the
visible conversation is derived on every read. Resolution is pure: the same
input always yields the same path and nothing is mutated.
"""

import os
from typing import Dict, Iterable, List, Optional, Sequence

from ..domain.chat_models import Message


# When no child is flagged active, descend into the lowest branch index
# ("lowest_index") or the most recent one ("latest_index").
DEFAULT_RESOLUTION_POLICIES = ("lowest_index", "latest_index")


def default_resolution_policy() -> str:
    policy = (os.getenv("BRANCHCHAT_DEFAULT_RESOLUTION") or "lowest_index").strip().lower()
    return policy if policy in DEFAULT_RESOLUTION_POLICIES else "lowest_index"


def _branch_key(message: Message) -> tuple:
    return (message.branch_index, message.created_at, message.message_id)


def _root_key(message: Message) -> tuple:
    # Stable sort keeps insertion order for roots sharing a timestamp
    return (message.created_at, message.branch_index)


def build_children_map(messages: Iterable[Message]) -> Dict[Optional[str], List[Message]]:
    """Group messages by parent id, each group sorted by branch index.

    Roots are grouped under ``None``. Children whose parent is not part of the
    set are dropped, matching how the tree is assembled for display.
    """
    rows = list(messages)
    known = {m.message_id for m in rows}
    children: Dict[Optional[str], List[Message]] = {}
    for msg in rows:
        parent = msg.parent_message_id
        if parent is not None and parent not in known:
            continue
        children.setdefault(parent, []).append(msg)
    for parent, group in children.items():
        group.sort(key=_root_key if parent is None else _branch_key)
    return children


def _pick_child(children: Sequence[Message], policy: str) -> Message:
    for child in children:
        if child.is_active_branch:
            return child
    if policy == "latest_index":
        return children[-1]
    return children[0]


def resolve_active_path(messages: Iterable[Message], policy: Optional[str] = None) -> List[Message]:
    """Return the active conversation path.

    Starting from every root (ordered by timestamp) the walk descends into the
    child flagged ``is_active_branch``; without a flagged child the default
    policy decides. Descent is capped at the number of rows and never revisits
    a node, so malformed pointer data cannot loop forever.
    """
    rows = list(messages)
    policy = policy or default_resolution_policy()
    children = build_children_map(rows)
    max_depth = len(rows)
    visited: set[str] = set()
    path: List[Message] = []

    for root in children.get(None, []):
        node: Optional[Message] = root
        depth = 0
        while node is not None and depth <= max_depth:
            if node.message_id in visited:
                break
            visited.add(node.message_id)
            path.append(node)
            depth += 1
            kids = children.get(node.message_id)
            node = _pick_child(kids, policy) if kids else None
    return path


def list_branches(messages: Iterable[Message], parent_message_id: str) -> List[Message]:
    """Siblings under ``parent_message_id`` ordered by branch index."""
    group = [m for m in messages if m.parent_message_id == parent_message_id]
    group.sort(key=_branch_key)
    return group


def active_leaf(messages: Iterable[Message], policy: Optional[str] = None) -> Optional[Message]:
    path = resolve_active_path(messages, policy)
    return path[-1] if path else None
