"""Typed lifecycle errors for the conversation flow engine."""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    STORAGE_FAILURE = "storage_failure"
    MAP_NOT_FOUND = "map_not_found"
    MAP_NOT_PUBLISHED = "map_not_published"
    MAP_ARCHIVED = "map_archived"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_CLOSED = "session_closed"
    INVALID_STATE = "invalid_state"
    TURN_LIMIT_EXCEEDED = "turn_limit_exceeded"
    UNSUBSCRIBE_UNROUTED = "unsubscribe_unrouted"
    NODE_MISSING = "node_missing"
    CONCURRENT_UPDATE = "concurrent_update"
    CLASSIFIER_FAILURE = "classifier_failure"


class ConversationFlowError(Exception):
    """Error an operator has to act on.

    Carries a machine-readable ``kind``, a human-readable ``hint`` and a
    ``debug`` dict with structured context for logs.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.STORAGE_FAILURE,
        hint: str = "",
        debug: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.hint = hint
        self.debug = debug or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "kind": self.kind.value,
            "hint": self.hint,
            "debug": self.debug,
        }
