"""Backend contract and a scripted in-memory backend."""

from structured_batch.backends.base import (
    ChatBackend,
    ChatMessage,
    ChatOptions,
    ChatResponse,
)
from structured_batch.backends.mock import ScriptedBackend

__all__ = [
    "ChatBackend",
    "ChatMessage",
    "ChatOptions",
    "ChatResponse",
    "ScriptedBackend",
]
