"""Backend contract consumed by the feature executor.

Backends are opaque collaborators: they take a list of chat messages and
return text. Transport, authentication and vendor request shapes live
entirely behind `ChatBackend.chat`. Any exception a backend raises is
normalized with `to_structured_error`, so raising `httpx` errors directly is
fine.
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Literal, Protocol, runtime_checkable

from structured_batch.core.types import TokenUsage, _require

if TYPE_CHECKING:
    from structured_batch.execution.cancellation import CancelToken

__all__ = ["ChatBackend", "ChatMessage", "ChatOptions", "ChatResponse", "TokenUsage"]

type Role = Literal["system", "user", "assistant"]


@dataclasses.dataclass(frozen=True, slots=True)
class ChatMessage:
    """A single chat message."""

    role: Role
    content: str

    def __post_init__(self) -> None:
        """Reject unknown roles early."""
        _require(
            condition=self.role in ("system", "user", "assistant"),
            message=f"must be one of ['system','user','assistant'], got {self.role!r}",
            field_name="role",
        )
        _require(
            condition=isinstance(self.content, str),
            message="must be str",
            field_name="content",
            exc=TypeError,
        )


@dataclasses.dataclass(frozen=True, slots=True)
class ChatOptions:
    """Per-call generation options."""

    temperature: float | None = None
    max_tokens: int | None = None
    cancel_token: CancelToken | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class ChatResponse:
    """Text returned by a backend plus optional accounting."""

    content: str
    usage: TokenUsage | None = None
    model: str | None = None


@runtime_checkable
class ChatBackend(Protocol):
    """Minimal backend protocol.

    `backend_id` identifies the backend in result metadata and logs.
    """

    backend_id: str

    async def chat(
        self, messages: list[ChatMessage], options: ChatOptions
    ) -> ChatResponse:
        """Send `messages` and return the model's reply."""
        ...
