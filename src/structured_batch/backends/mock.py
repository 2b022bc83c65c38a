"""Deterministic scripted backend for tests and examples (no network)."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
import inspect
from typing import Any

from structured_batch.backends.base import ChatMessage, ChatOptions, ChatResponse
from structured_batch.core.types import TokenUsage

type ScriptStep = str | ChatResponse | BaseException | Callable[[list[ChatMessage]], Any]


class ScriptedBackend:
    """Replays a script of responses, one step per `chat` call.

    Each step is a string, a `ChatResponse`, an exception instance to raise,
    or a callable receiving the messages and returning any of those (sync or
    async). Once the script is exhausted the last step repeats.
    """

    def __init__(
        self,
        script: Sequence[ScriptStep] | ScriptStep,
        *,
        delay_s: float | Sequence[float] = 0.0,
        backend_id: str = "mock",
        model: str = "mock-model",
    ) -> None:
        if isinstance(script, str | ChatResponse | BaseException) or callable(script):
            script = [script]
        if not script:
            raise ValueError("script must contain at least one step")
        self.script = list(script)
        self.delay_s = delay_s
        self.backend_id = backend_id
        self.model = model
        self.calls: list[list[ChatMessage]] = []
        self.options: list[ChatOptions] = []

    @property
    def call_count(self) -> int:
        """Number of `chat` calls made so far."""
        return len(self.calls)

    def _delay_for(self, call_index: int) -> float:
        if isinstance(self.delay_s, int | float):
            return float(self.delay_s)
        if not self.delay_s:
            return 0.0
        return float(self.delay_s[min(call_index, len(self.delay_s) - 1)])

    async def chat(
        self, messages: list[ChatMessage], options: ChatOptions
    ) -> ChatResponse:
        call_index = len(self.calls)
        self.calls.append(list(messages))
        self.options.append(options)

        delay = self._delay_for(call_index)
        if delay > 0:
            await asyncio.sleep(delay)

        step: Any = self.script[min(call_index, len(self.script) - 1)]
        if callable(step) and not isinstance(step, BaseException):
            step = step(list(messages))
            if inspect.isawaitable(step):
                step = await step
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, ChatResponse):
            return step
        text = str(step)
        return ChatResponse(
            content=text,
            usage=TokenUsage(
                prompt_tokens=sum(len(m.content) for m in messages) // 4,
                completion_tokens=len(text) // 4,
            ),
            model=self.model,
        )
