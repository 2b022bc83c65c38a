"""Feature executor: retry policy, lenient fallback and batch execution."""

import asyncio
import dataclasses

import httpx
import pytest

from structured_batch.backends.base import ChatResponse
from structured_batch.core.exceptions import (
    BackendConnectionError,
    BackendRateLimitError,
    ConfigurationError,
    ErrorKind,
    ExtractionError,
    FeatureNotFoundError,
    OperationCancelledError,
    RequestTimeoutError,
    ResponseParseError,
    TransformError,
)
from structured_batch.core.types import ParseStatus, TokenUsage
from structured_batch.execution.cancellation import CancelToken
from structured_batch.execution.executor import (
    BatchCallbacks,
    FeatureExecutor,
    FeatureOptions,
)
from structured_batch.features.prompts import CustomPrompt
from structured_batch.features.registry import FeatureConfig

VALID = '{"chapters": [{"title": "Intro", "start": "00:00"}]}'


def _http_error(status: int, headers: dict[str, str] | None = None):
    request = httpx.Request("POST", "https://models.example/v1/chat")
    response = httpx.Response(status, request=request, headers=headers or {})
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class TestSingleCall:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_attempt_success(self, registry, scripted_backend, fast_config):
        backend = scripted_backend(VALID)
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature("chapters", {"text": "hello"})

        assert result.success
        assert result.data == {"chapters": [{"title": "Intro", "start": "00:00"}]}
        assert result.raw_response == VALID
        meta = result.metadata
        assert meta.feature_id == "chapters"
        assert meta.backend_id == "mock"
        assert meta.model == "mock-model"
        assert meta.retry_attempts == 0
        assert meta.parse_status is ParseStatus.VALID
        assert not meta.lenient
        assert meta.duration_ms >= 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_messages_are_rendered_from_templates(
        self, registry, scripted_backend, fast_config
    ):
        backend = scripted_backend(VALID)
        executor = FeatureExecutor(registry, backend, config=fast_config)

        await executor.execute_feature("chapters", {"text": "hello"})

        system, user = backend.calls[0]
        assert (system.role, system.content) == (
            "system",
            "Split the transcript into chapters.",
        )
        assert (user.role, user.content) == ("user", "Transcript:\nhello")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_custom_prompt_and_generation_options(
        self, registry, scripted_backend, fast_config
    ):
        backend = scripted_backend(VALID)
        executor = FeatureExecutor(
            registry, backend, config=dataclasses.replace(fast_config, temperature=0.7)
        )

        await executor.execute_feature(
            "chapters",
            {"text": "hello"},
            FeatureOptions(
                custom_prompt=CustomPrompt(system_prompt="Be brief."),
                max_tokens=256,
            ),
        )

        assert backend.calls[0][0].content == "Be brief."
        assert backend.calls[0][1].content == "Transcript:\nhello"
        assert backend.options[0].temperature == 0.7
        assert backend.options[0].max_tokens == 256

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_feature_raises(self, registry, scripted_backend, fast_config):
        executor = FeatureExecutor(registry, scripted_backend(VALID), config=fast_config)
        with pytest.raises(FeatureNotFoundError):
            await executor.execute_feature("missing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_template_error_is_a_failed_result(
        self, registry, scripted_backend, fast_config
    ):
        backend = scripted_backend(VALID)
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature(
            "chapters",
            {"text": "x"},
            FeatureOptions(custom_prompt=CustomPrompt(user_prompt_template="{% if %}")),
        )

        assert not result.success
        assert isinstance(result.error, ConfigurationError)
        assert backend.call_count == 0

    @pytest.mark.unit
    def test_invalid_options_rejected(self):
        with pytest.raises(ValueError):
            FeatureOptions(max_retries=-1)
        with pytest.raises(ValueError):
            FeatureOptions(timeout_s=0)


class TestRetries:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_parse_failures_are_retried_with_identical_request(
        self, registry, scripted_backend, fast_config
    ):
        backend = scripted_backend(["not json", '{"chapters": 3}', VALID])
        retries = []
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature(
            "chapters", {"text": "hello"}, FeatureOptions(on_retry=retries.append)
        )

        assert result.success
        assert result.metadata.retry_attempts == 2
        assert backend.call_count == 3
        assert backend.calls[0] == backend.calls[1] == backend.calls[2]
        assert [(r.attempt, r.max_attempts) for r in retries] == [(1, 3), (2, 3)]
        assert all(r.attempt_duration_ms >= 0 for r in retries)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_async_retry_callback_is_awaited(
        self, registry, scripted_backend, fast_config
    ):
        seen = []

        async def on_retry(info):
            await asyncio.sleep(0)
            seen.append(info.attempt)

        backend = scripted_backend(["bad", VALID])
        executor = FeatureExecutor(registry, backend, config=fast_config)
        await executor.execute_feature(
            "chapters", {"text": "x"}, FeatureOptions(on_retry=on_retry)
        )
        assert seen == [1]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exhausted_retries_give_response_parse_error(
        self, registry, scripted_backend, fast_config
    ):
        backend = scripted_backend("not json")
        retries = []
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature(
            "chapters", {"text": "x"}, FeatureOptions(on_retry=retries.append)
        )

        assert not result.success
        assert isinstance(result.error, ResponseParseError)
        assert result.error.kind is ErrorKind.PARSE
        assert result.error.raw_response == "not json"
        assert result.error.details["attempts"] == 3
        assert isinstance(result.error.__cause__, ExtractionError)
        assert result.metadata.retry_attempts == fast_config.max_retries
        assert result.raw_response == "not json"
        assert backend.call_count == 3
        assert len(retries) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_max_retries_override(self, registry, scripted_backend, fast_config):
        backend = scripted_backend("not json")
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature(
            "chapters", {"text": "x"}, FeatureOptions(max_retries=0)
        )

        assert not result.success
        assert backend.call_count == 1
        assert result.metadata.retry_attempts == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_token_usage_accumulates_across_attempts(
        self, registry, scripted_backend, fast_config
    ):
        backend = scripted_backend(
            [
                ChatResponse("bad", usage=TokenUsage(10, 2)),
                ChatResponse(VALID, usage=TokenUsage(10, 5), model="m-2"),
            ]
        )
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature("chapters", {"text": "x"})

        assert result.metadata.token_usage == TokenUsage(20, 7)
        assert result.metadata.token_usage.total_tokens == 27
        assert result.metadata.model == "m-2"


class TestLenientFallback:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_schema_gate_lifted_after_retries(
        self, registry, scripted_backend, fast_config
    ):
        backend = scripted_backend('{"chapters": "none"}')
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature("chapters", {"text": "x"})

        assert result.success
        assert result.data == {"chapters": "none"}
        assert result.metadata.lenient
        assert result.metadata.parse_status is ParseStatus.MALFORMED
        assert "schema validation bypassed" in result.metadata.parse_warnings
        assert result.metadata.retry_attempts == fast_config.max_retries
        assert backend.call_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fallback_prefers_schema_guided_recovery(
        self, registry, scripted_backend, fast_config
    ):
        truncated = (
            '{"chapters": [{"title": "One", "start": "0"}, '
            '{"title": "Two", "start": "5"}, {"title": "Th'
        )
        backend = scripted_backend(truncated)
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature(
            "chapters", {"text": "x"}, FeatureOptions(recover_partial=False)
        )

        assert result.success
        assert result.metadata.lenient
        assert [c["title"] for c in result.data["chapters"]] == ["One", "Two"]
        assert result.metadata.recovery is not None
        assert backend.call_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inline_recovery_succeeds_without_retry(
        self, registry, scripted_backend, fast_config
    ):
        truncated = '{"chapters": [{"title": "One", "start": "0"}, {"title": "Tw'
        backend = scripted_backend(truncated)
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature("chapters", {"text": "x"})

        assert result.success
        assert result.metadata.retry_attempts == 0
        assert result.metadata.parse_status is ParseStatus.MALFORMED
        assert not result.metadata.lenient
        assert result.metadata.recovery.recovered_count == 1


class TestTerminalErrors:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_errors_are_not_retried(
        self, registry, scripted_backend, fast_config
    ):
        backend = scripted_backend(httpx.ConnectError("connection refused"))
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature("chapters", {"text": "x"})

        assert not result.success
        assert isinstance(result.error, BackendConnectionError)
        assert result.error.kind is ErrorKind.CONNECTION
        assert backend.call_count == 1
        assert result.metadata.retry_attempts == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(
        self, registry, scripted_backend, fast_config
    ):
        backend = scripted_backend(_http_error(429, {"retry-after": "3"}))
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature("chapters", {"text": "x"})

        assert isinstance(result.error, BackendRateLimitError)
        assert result.error.retry_after == 3.0
        assert backend.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_error_after_parse_failure_keeps_retry_count(
        self, registry, scripted_backend, fast_config
    ):
        backend = scripted_backend(["bad", _http_error(503)])
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature("chapters", {"text": "x"})

        assert result.error.kind is ErrorKind.SERVER
        assert result.metadata.retry_attempts == 1
        assert result.raw_response == "bad"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_is_terminal(self, registry, scripted_backend, fast_config):
        backend = scripted_backend(VALID, delay_s=1.0)
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature(
            "chapters", {"text": "x"}, FeatureOptions(timeout_s=0.01)
        )

        assert isinstance(result.error, RequestTimeoutError)
        assert result.error.kind is ErrorKind.TIMEOUT
        assert backend.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pre_cancelled_token_sends_nothing(
        self, registry, scripted_backend, fast_config
    ):
        token = CancelToken()
        token.cancel()
        backend = scripted_backend(VALID)
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature(
            "chapters", {"text": "x"}, FeatureOptions(cancel_token=token)
        )

        assert isinstance(result.error, OperationCancelledError)
        assert result.error.origin == "user"
        assert backend.call_count == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_during_call(self, registry, scripted_backend, fast_config):
        token = CancelToken()
        backend = scripted_backend(VALID, delay_s=1.0)
        executor = FeatureExecutor(registry, backend, config=fast_config)

        async def cancel_later():
            await asyncio.sleep(0.01)
            token.cancel()

        canceller = asyncio.create_task(cancel_later())
        result = await executor.execute_feature(
            "chapters", {"text": "x"}, FeatureOptions(cancel_token=token)
        )
        await canceller

        assert result.error.kind is ErrorKind.CANCELLED
        assert backend.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_transform_is_not_retried(
        self, chapter_schema, scripted_backend, fast_config
    ):
        from structured_batch.features.registry import FeatureRegistry

        def explode(_data):
            raise RuntimeError("boom")

        registry = FeatureRegistry(
            [
                FeatureConfig(
                    id="chapters",
                    name="Chapters",
                    system_prompt="s",
                    user_prompt_template="{{ text }}",
                    response_schema=chapter_schema,
                    transform=explode,
                )
            ]
        )
        backend = scripted_backend(VALID)
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature("chapters", {"text": "x"})

        assert isinstance(result.error, TransformError)
        assert isinstance(result.error.__cause__, RuntimeError)
        assert backend.call_count == 1


class TestTextFeatures:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_text_response_is_cleaned(self, registry, scripted_backend, fast_config):
        backend = scripted_backend('"A better sentence."')
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature("revise", {"text": "a sentence"})

        assert result.success
        assert result.data == "A better sentence."
        assert result.metadata.parse_status is ParseStatus.VALID

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refusal_falls_back_to_input_text(
        self, registry, scripted_backend, fast_config
    ):
        backend = scripted_backend("I'm sorry, I cannot help with that.")
        executor = FeatureExecutor(registry, backend, config=fast_config)

        result = await executor.execute_feature("revise", {"text": "keep me"})

        assert result.success
        assert result.data == "keep me"
        assert result.metadata.parse_status is ParseStatus.MALFORMED
        assert backend.call_count == 1


class TestBatch:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_feature_metadata_does_not_gate_execution(
        self, chapter_schema, scripted_backend, fast_config
    ):
        from structured_batch.features.registry import FeatureRegistry

        registry = FeatureRegistry(
            [
                FeatureConfig(
                    id="chapters",
                    name="Chapters",
                    system_prompt="s",
                    user_prompt_template="{{ text }} ({{ language }})",
                    response_schema=chapter_schema,
                    batchable=False,
                    default_batch_size=1,
                    requires_confirmation=True,
                    available_placeholders=("text",),
                )
            ]
        )
        backend = scripted_backend(VALID)
        executor = FeatureExecutor(registry, backend, config=fast_config)

        batch = await executor.execute_batch(
            "chapters", [{"text": f"doc {i}", "language": "en"} for i in range(3)]
        )

        assert batch.summary.succeeded == 3
        assert backend.calls[0][1].content == "doc 0 (en)"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_results_align_with_inputs(self, registry, scripted_backend, fast_config):
        def reply(messages):
            text = messages[1].content.removeprefix("Transcript:\n")
            return f'{{"chapters": [{{"title": "{text}", "start": "0"}}]}}'

        backend = scripted_backend(reply, delay_s=[0.03, 0.0, 0.01, 0.0])
        completed = []
        progress = []
        executor = FeatureExecutor(registry, backend, config=fast_config)

        batch = await executor.execute_batch(
            "chapters",
            [{"text": f"doc-{i}"} for i in range(4)],
            callbacks=BatchCallbacks(
                on_item_complete=lambda i, r: completed.append(i),
                on_progress=lambda done, total: progress.append((done, total)),
            ),
        )

        assert completed == [0, 1, 2, 3]
        assert progress[-1] == (4, 4)
        titles = [r.data["chapters"][0]["title"] for r in batch.results]
        assert titles == ["doc-0", "doc-1", "doc-2", "doc-3"]
        assert batch.summary.total == 4
        assert batch.summary.succeeded == 4
        assert batch.summary.failed == 0
        assert batch.extra["feature_id"] == "chapters"
        assert batch.extra["breaker_tripped"] is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_prepare_skips_inputs(self, registry, scripted_backend, fast_config):
        backend = scripted_backend(VALID)
        executor = FeatureExecutor(registry, backend, config=fast_config)

        batch = await executor.execute_batch(
            "chapters",
            [{"text": "a"}, {"text": ""}, {"text": "c"}],
            prepare=lambda v: v if v["text"] else None,
        )

        skipped = batch.results[1]
        assert not skipped.success
        assert skipped.error.code == "SKIPPED"
        assert not skipped.metadata.attempted
        assert batch.summary.skipped == 1
        assert batch.summary.failed == 0
        assert batch.summary.succeeded == 2
        assert backend.call_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_items_reach_both_callbacks(
        self, registry, scripted_backend, fast_config
    ):
        backend = scripted_backend(httpx.ConnectError("down"))
        events = []
        executor = FeatureExecutor(registry, backend, config=fast_config)

        batch = await executor.execute_batch(
            "chapters",
            [{"text": "a"}],
            callbacks=BatchCallbacks(
                on_item_complete=lambda i, r: events.append(("complete", i, r.success)),
                on_item_error=lambda i, e: events.append(("error", i, e.kind)),
            ),
        )

        assert events == [
            ("complete", 0, False),
            ("error", 0, ErrorKind.CONNECTION),
        ]
        assert batch.summary.failed == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_retry_callback_receives_item_index(
        self, registry, scripted_backend, fast_config
    ):
        def reply(messages):
            if messages[1].content.endswith("flaky") and not flaky_seen:
                flaky_seen.append(True)
                return "not json"
            return VALID

        flaky_seen: list[bool] = []
        backend = scripted_backend(reply)
        retries = []
        executor = FeatureExecutor(registry, backend, config=fast_config)

        await executor.execute_batch(
            "chapters",
            [{"text": "fine"}, {"text": "flaky"}],
            callbacks=BatchCallbacks(
                on_retry=lambda index, info: retries.append((index, info.attempt))
            ),
        )

        assert retries == [(1, 1)]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_user_cancellation_marks_remaining_not_attempted(
        self, registry, scripted_backend, fast_config
    ):
        token = CancelToken()
        backend = scripted_backend(VALID)
        config = dataclasses.replace(fast_config, concurrency=1)
        executor = FeatureExecutor(registry, backend, config=config)

        def on_complete(index, _result):
            if index == 1:
                token.cancel()

        batch = await executor.execute_batch(
            "chapters",
            [{"text": str(i)} for i in range(5)],
            FeatureOptions(cancel_token=token),
            BatchCallbacks(on_item_complete=on_complete),
        )

        assert [r.success for r in batch.results] == [True, True, False, False, False]
        for result in batch.results[2:]:
            assert result.error.code == "NOT_ATTEMPTED"
            assert result.error.origin == "user"
        assert batch.summary.not_attempted == 3
        assert batch.summary.failed == 0
        assert batch.summary.aborted_by == "user"
