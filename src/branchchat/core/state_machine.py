from __future__ import annotations

from typing import Dict, List

# Lifecycle of one AI message while it is being generated
STREAM_TRANSITIONS: Dict[str, List[str]] = {
    "pending": ["streaming", "complete", "error"],
    "streaming": ["streaming", "complete", "error"],
    "complete": [],
    "error": [],
}

TERMINAL_STATES = frozenset({"complete", "error"})


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES


def is_valid_transition(current: str, target: str) -> bool:
    return target in STREAM_TRANSITIONS.get(current, [])
