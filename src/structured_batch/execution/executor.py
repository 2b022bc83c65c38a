"""Retry/fallback executor for one logical feature call, plus batch execution.

One call is: build the message pair, send it, interpret the reply. Only
parse and validation failures are retried, by resending the identical
request. Everything else (transport, auth, rate limit, timeout,
cancellation, a failing transform) is terminal. Once retries are exhausted a
single lenient pass runs over the last raw response with the schema gate
lifted; if that also fails the result carries a `ResponseParseError` with the
raw response attached.

Failures are returned as `FeatureResult` values. The executor raises only for
caller bugs such as an unknown feature id.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
import dataclasses
import inspect
import logging
from time import perf_counter
from typing import Any

from structured_batch.backends.base import (
    ChatBackend,
    ChatMessage,
    ChatOptions,
    ChatResponse,
)
from structured_batch.config import FrozenConfig, resolve_config
from structured_batch.core.exceptions import (
    RAW_PREVIEW_CHARS,
    OperationCancelledError,
    ResponseParseError,
    StructuredBatchError,
    excerpt,
    to_structured_error,
)
from structured_batch.core.types import (
    BatchResult,
    BatchSummary,
    Failure,
    FeatureMetadata,
    FeatureResult,
    ParseMetadata,
    ParseOutcome,
    ParseStatus,
    Result,
    RetryAttemptInfo,
    Success,
    TokenUsage,
)
from structured_batch.execution.cancellation import CancelToken, race_call
from structured_batch.execution.coordinator import (
    CircuitBreaker,
    run_batch_coordinator,
)
from structured_batch.execution.scheduler import OrderedCallbacks, call_maybe_async
from structured_batch.features.prompts import CustomPrompt, build_messages
from structured_batch.features.registry import FeatureConfig, FeatureRegistry
from structured_batch.parsing.extraction import ExtractionOptions
from structured_batch.parsing.interpreter import apply_transform, parse_response
from structured_batch.parsing.recovery import recover_partial
from structured_batch.parsing.text import parse_text_response
from structured_batch.telemetry import (
    BATCH_BREAKER_TRIPPED,
    BATCH_EXECUTE,
    FEATURE_ATTEMPT,
    FEATURE_EXECUTE,
    FEATURE_LENIENT_FALLBACK,
    FEATURE_RETRY,
    TelemetryContext,
    TelemetryReporter,
)

log = logging.getLogger(__name__)

type Variables = dict[str, Any]
type PrepareFn = Callable[[Variables], Any]


@dataclasses.dataclass(frozen=True, slots=True)
class FeatureOptions:
    """Per-call overrides. Unset fields fall back to the executor config."""

    custom_prompt: CustomPrompt | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    cancel_token: CancelToken | None = None
    on_retry: Callable[[RetryAttemptInfo], Any] | None = None
    max_retries: int | None = None
    timeout_s: float | None = None
    recover_partial: bool | None = None

    def __post_init__(self) -> None:
        """Reject negative retry counts and non-positive timeouts."""
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")


@dataclasses.dataclass(frozen=True, slots=True)
class BatchCallbacks:
    """Batch callbacks, fired in input order with caller-visible indices.

    `on_item_complete` receives every attempted item's `FeatureResult`;
    `on_item_error` additionally fires for failed items with their error.
    `on_retry` fires before each resend of an item. Sync or async.
    """

    on_item_complete: Callable[[int, FeatureResult[Any]], Any] | None = None
    on_item_error: Callable[[int, BaseException], Any] | None = None
    on_progress: Callable[[int, int], Any] | None = None
    on_retry: Callable[[int, RetryAttemptInfo], Any] | None = None


class _Usage:
    """Token usage summed across attempts."""

    __slots__ = ("completion", "prompt", "seen")

    def __init__(self) -> None:
        self.prompt = 0
        self.completion = 0
        self.seen = False

    def add(self, usage: TokenUsage | None) -> None:
        if usage is None:
            return
        self.seen = True
        self.prompt += usage.prompt_tokens
        self.completion += usage.completion_tokens

    def freeze(self) -> TokenUsage | None:
        return TokenUsage(self.prompt, self.completion) if self.seen else None


class FeatureExecutor:
    """Runs registered features against a chat backend.

    Example:
        registry = FeatureRegistry([my_feature])
        executor = FeatureExecutor(registry, backend, config=FrozenConfig())
        result = await executor.execute_feature("summary", {"text": doc})
    """

    def __init__(
        self,
        registry: FeatureRegistry,
        backend: ChatBackend,
        config: FrozenConfig | None = None,
        *,
        telemetry_reporters: Sequence[TelemetryReporter] = (),
    ) -> None:
        """Initialize the executor.

        Args:
            registry: Features available to this executor.
            backend: Opaque chat backend used for every call.
            config: Frozen configuration; resolved from the environment and
                config files when omitted.
            telemetry_reporters: Reporters for the telemetry context. Ignored
                unless telemetry is enabled.
        """
        self.registry = registry
        self.backend = backend
        # This is the only place where ambient configuration is resolved.
        self.config = config if config is not None else resolve_config().to_frozen()
        self._telemetry = TelemetryContext(*telemetry_reporters)

    # --- Single call ---

    async def execute_feature(
        self,
        feature_id: str,
        variables: Variables | None = None,
        options: FeatureOptions | None = None,
    ) -> FeatureResult[Any]:
        """Execute one feature call with retries and lenient fallback.

        Raises:
            FeatureNotFoundError: `feature_id` is not registered.
        """
        feature = self.registry.get_or_raise(feature_id)
        opts = options or FeatureOptions()
        with self._telemetry(FEATURE_EXECUTE, feature=feature.id):
            return await self._execute(feature, variables or {}, opts)

    async def _execute(
        self, feature: FeatureConfig, variables: Variables, opts: FeatureOptions
    ) -> FeatureResult[Any]:
        started = perf_counter()
        usage = _Usage()
        model: str | None = None

        def finish(
            *,
            outcome: ParseOutcome[Any] | None = None,
            error: StructuredBatchError | None = None,
            raw: str | None = None,
            retries: int = 0,
            lenient: bool = False,
        ) -> FeatureResult[Any]:
            meta = outcome.metadata if outcome is not None else None
            metadata = FeatureMetadata(
                feature_id=feature.id,
                backend_id=getattr(self.backend, "backend_id", None),
                model=model,
                duration_ms=(perf_counter() - started) * 1000,
                token_usage=usage.freeze(),
                retry_attempts=retries,
                parse_status=meta.parse_status if meta else ParseStatus.INVALID,
                extraction_method=meta.extraction_method if meta else None,
                lenient=lenient,
                parse_warnings=meta.warnings if meta else (),
                parse_errors=meta.errors if meta else (),
                recovery=meta.recovery_info if meta else None,
            )
            if error is None and outcome is not None and outcome.success:
                return FeatureResult(
                    success=True, metadata=metadata, data=outcome.data, raw_response=raw
                )
            final = error or (outcome.error if outcome is not None else None)
            if final is None:
                final = StructuredBatchError("Feature call failed without an error")
            return FeatureResult(
                success=False, metadata=metadata, error=final, raw_response=raw
            )

        try:
            messages = build_messages(feature, variables, opts.custom_prompt)
        except StructuredBatchError as exc:
            return finish(error=exc)

        max_retries = (
            opts.max_retries if opts.max_retries is not None else self.config.max_retries
        )
        max_attempts = max_retries + 1
        timeout_s = opts.timeout_s or self.config.request_timeout_s
        token = opts.cancel_token
        chat_options = ChatOptions(
            temperature=(
                opts.temperature
                if opts.temperature is not None
                else self.config.temperature
            ),
            max_tokens=(
                opts.max_tokens if opts.max_tokens is not None else self.config.max_tokens
            ),
            cancel_token=token,
        )

        raw = ""
        outcome: ParseOutcome[Any] | None = None
        for attempt in range(1, max_attempts + 1):
            if token is not None and token.cancelled:
                return finish(
                    error=OperationCancelledError(origin=token.origin or "user"),
                    raw=raw or None,
                    retries=attempt - 1,
                )

            attempt_started = perf_counter()
            with self._telemetry(FEATURE_ATTEMPT, feature=feature.id, attempt=attempt):
                sent = await self._send(messages, chat_options, token, timeout_s)
            if isinstance(sent, Failure):
                log.debug(
                    "Feature %s attempt %d failed terminally: %s (%s)",
                    feature.id,
                    attempt,
                    sent.error.kind,
                    sent.error.message,
                )
                return finish(error=sent.error, raw=raw or None, retries=attempt - 1)

            response = sent.value
            usage.add(response.usage)
            model = response.model or model
            raw = response.content
            outcome = self._interpret(feature, raw, variables, opts)
            if outcome.success:
                return finish(outcome=outcome, raw=raw, retries=attempt - 1)

            error = outcome.error
            if error is not None and not error.recoverable:
                return finish(outcome=outcome, raw=raw, retries=attempt - 1)

            if attempt < max_attempts:
                info = RetryAttemptInfo(
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error_message=str(error),
                    attempt_duration_ms=(perf_counter() - attempt_started) * 1000,
                )
                log.warning(
                    "Feature %s attempt %d/%d returned an unusable response (%s); retrying",
                    feature.id,
                    attempt,
                    max_attempts,
                    error.code if error is not None else "unknown",
                )
                self._telemetry.count(FEATURE_RETRY, feature=feature.id)
                await call_maybe_async(opts.on_retry, info)

        fallback = self._lenient_fallback(feature, raw)
        if fallback.success:
            return finish(outcome=fallback, raw=raw, retries=max_retries, lenient=True)
        if fallback.error is not None and not fallback.error.recoverable:
            return finish(outcome=fallback, raw=raw, retries=max_retries, lenient=True)

        last_error = outcome.error if outcome is not None else None
        log.warning(
            "Feature %s failed to parse after %d attempt(s); raw: %s",
            feature.id,
            max_attempts,
            excerpt(raw, RAW_PREVIEW_CHARS),
        )
        terminal = ResponseParseError(
            f"Failed to parse response after {max_attempts} attempt(s): {last_error}",
            raw_response=raw,
            details={
                "attempts": max_attempts,
                "last_error_code": getattr(last_error, "code", None),
            },
        )
        if last_error is not None:
            terminal.__cause__ = last_error
        return finish(outcome=outcome, error=terminal, raw=raw, retries=max_retries)

    async def _send(
        self,
        messages: list[ChatMessage],
        chat_options: ChatOptions,
        token: CancelToken | None,
        timeout_s: float,
    ) -> Result[ChatResponse, StructuredBatchError]:
        """One backend attempt raced against cancellation and the timeout."""
        try:
            response = await race_call(
                self.backend.chat(list(messages), chat_options), token, timeout_s
            )
        except Exception as exc:
            return Failure(to_structured_error(exc))
        return Success(response)

    def _extraction_options(self) -> ExtractionOptions:
        return ExtractionOptions(
            lenient=self.config.lenient, max_depth=self.config.max_depth
        )

    def _interpret(
        self,
        feature: FeatureConfig,
        raw: str,
        variables: Variables,
        opts: FeatureOptions,
    ) -> ParseOutcome[Any]:
        if feature.response_schema is None:
            return self._interpret_text(feature, raw, variables)
        recover = opts.recover_partial
        if recover is None:
            recover = feature.recover_partial
        if recover is None:
            recover = self.config.recover_partial
        return parse_response(
            raw,
            schema=feature.response_schema,
            extraction=self._extraction_options(),
            transform=feature.transform,
            recover_partial=recover,
            strict=self.config.strict_coercion,
        )

    def _interpret_text(
        self, feature: FeatureConfig, raw: str, variables: Variables
    ) -> ParseOutcome[Any]:
        if not feature.clean_text:
            outcome = ParseOutcome(
                success=True,
                raw_input=raw,
                data=raw,
                metadata=ParseMetadata(parse_status=ParseStatus.VALID),
            )
            return apply_transform(outcome, feature.transform)
        original = variables.get("text")
        cleaned = parse_text_response(
            raw, original_text=original if isinstance(original, str) else None
        )
        outcome = ParseOutcome(
            success=True,
            raw_input=raw,
            data=cleaned.text,
            metadata=ParseMetadata(
                parse_status=(
                    ParseStatus.MALFORMED if cleaned.was_error else ParseStatus.VALID
                ),
                warnings=cleaned.warnings,
            ),
        )
        return apply_transform(outcome, feature.transform)

    def _lenient_fallback(self, feature: FeatureConfig, raw: str) -> ParseOutcome[Any]:
        """Last resort over the final raw response, schema gate lifted.

        Schema-guided partial recovery is tried first so surviving items
        still satisfy their item schema; otherwise whatever JSON lenient
        extraction finds is returned as-is.
        """
        self._telemetry.count(FEATURE_LENIENT_FALLBACK, feature=feature.id)
        schema = feature.response_schema
        if schema is None:
            return ParseOutcome(
                success=False,
                raw_input=raw,
                metadata=ParseMetadata(parse_status=ParseStatus.INVALID),
            )

        recovered = recover_partial(
            raw,
            schema,
            max_depth=self.config.max_depth,
            strict=self.config.strict_coercion,
        )
        if recovered.success:
            outcome = ParseOutcome(
                success=True,
                raw_input=raw,
                data=recovered.data,
                metadata=ParseMetadata(
                    parse_status=ParseStatus.MALFORMED,
                    extraction_method="lenient",
                    validated=True,
                    warnings=recovered.info.warnings,
                    recovery_info=recovered.info,
                ),
            )
            return apply_transform(outcome, feature.transform)

        loose = parse_response(
            raw,
            extraction=ExtractionOptions(
                lenient=True, max_depth=self.config.max_depth
            ),
        )
        if not loose.success:
            return loose
        outcome = ParseOutcome(
            success=True,
            raw_input=raw,
            data=loose.data,
            metadata=dataclasses.replace(
                loose.metadata,
                parse_status=ParseStatus.MALFORMED,
                extraction_method="lenient",
                warnings=(*loose.metadata.warnings, "schema validation bypassed"),
            ),
        )
        log.debug("Feature %s accepted by lenient fallback", feature.id)
        return apply_transform(outcome, feature.transform)

    # --- Batch ---

    async def execute_batch(
        self,
        feature_id: str,
        inputs: Sequence[Variables],
        options: FeatureOptions | None = None,
        callbacks: BatchCallbacks | None = None,
        prepare: PrepareFn | None = None,
    ) -> BatchResult[Any]:
        """Execute a feature once per input with ordered, bounded concurrency.

        Args:
            feature_id: Registered feature to run.
            inputs: Template variables, one mapping per item.
            options: Shared per-call options. Its `cancel_token` cancels the
                whole batch; its `on_retry` is superseded by
                `callbacks.on_retry`.
            callbacks: Ordered batch callbacks.
            prepare: Optional per-input preparation returning the variables
                to use, or None to skip the input. Sync or async.

        Returns:
            A `BatchResult` whose results align with `inputs`.

        Raises:
            FeatureNotFoundError: `feature_id` is not registered.
        """
        feature = self.registry.get_or_raise(feature_id)
        opts = options or FeatureOptions()
        cbs = callbacks or BatchCallbacks()
        breaker = CircuitBreaker(self.config.breaker_threshold)
        started = perf_counter()

        async def prepare_item(pair: tuple[int, Variables]) -> Any:
            position, variables = pair
            if prepare is None:
                return pair
            value = prepare(variables)
            if inspect.isawaitable(value):
                value = await value
            return None if value is None else (position, value)

        async def execute_item(
            pair: tuple[int, Variables], token: CancelToken
        ) -> FeatureResult[Any]:
            position, variables = pair

            async def on_retry(info: RetryAttemptInfo) -> None:
                await call_maybe_async(cbs.on_retry, position, info)

            item_opts = dataclasses.replace(
                opts,
                cancel_token=token,
                on_retry=on_retry if cbs.on_retry is not None else opts.on_retry,
            )
            with self._telemetry(FEATURE_EXECUTE, feature=feature.id, index=position):
                return await self._execute(feature, variables, item_opts)

        async def on_complete(index: int, result: FeatureResult[Any]) -> None:
            await call_maybe_async(cbs.on_item_complete, index, result)
            if not result.success and result.error is not None:
                await call_maybe_async(cbs.on_item_error, index, result.error)

        async def on_error(index: int, error: BaseException) -> None:
            await call_maybe_async(cbs.on_item_error, index, error)

        with self._telemetry(BATCH_EXECUTE, feature=feature.id, size=len(inputs)):
            outcome = await run_batch_coordinator(
                list(enumerate(inputs)),
                execute_item,
                prepare=prepare_item,
                concurrency=self.config.concurrency,
                cancel_token=opts.cancel_token,
                callbacks=OrderedCallbacks(on_complete, on_error, cbs.on_progress),
                breaker=breaker,
                yield_every=self.config.yield_every,
            )

        if outcome.breaker_tripped:
            self._telemetry.count(BATCH_BREAKER_TRIPPED, feature=feature.id)

        skipped = set(outcome.skipped)
        results: list[FeatureResult[Any]] = []
        for position, settled in enumerate(outcome.results):
            if settled is None:
                results.append(
                    self._unattempted(feature, position in skipped, outcome.aborted_by)
                )
            elif settled.ok and settled.value is not None:
                results.append(settled.value)
            else:
                error = to_structured_error(
                    settled.error or RuntimeError("Batch item failed without an error")
                )
                results.append(
                    FeatureResult(
                        success=False,
                        metadata=FeatureMetadata(
                            feature_id=feature.id,
                            backend_id=getattr(self.backend, "backend_id", None),
                        ),
                        error=error,
                    )
                )

        succeeded = sum(1 for r in results if r.success)
        attempted_failures = sum(
            1 for r in results if not r.success and r.metadata.attempted
        )
        summary = BatchSummary(
            total=len(inputs),
            succeeded=succeeded,
            failed=attempted_failures,
            skipped=len(outcome.skipped),
            not_attempted=len(outcome.not_attempted),
            duration_ms=(perf_counter() - started) * 1000,
            aborted_by=outcome.aborted_by,
        )
        log.debug(
            "Batch %s finished: %d ok, %d failed, %d skipped, %d not attempted",
            feature.id,
            summary.succeeded,
            summary.failed,
            summary.skipped,
            summary.not_attempted,
        )
        return BatchResult(
            results=tuple(results),
            summary=summary,
            extra={"feature_id": feature.id, "breaker_tripped": outcome.breaker_tripped},
        )

    def _unattempted(
        self, feature: FeatureConfig, skipped: bool, aborted_by: Any
    ) -> FeatureResult[Any]:
        if skipped:
            error = OperationCancelledError(
                "Input skipped during preparation", origin="user", code="SKIPPED"
            )
        else:
            origin = aborted_by or "user"
            reason = (
                "batch aborted by circuit breaker"
                if origin == "circuit_breaker"
                else "batch cancelled"
            )
            error = OperationCancelledError(
                f"Not attempted: {reason}", origin=origin, code="NOT_ATTEMPTED"
            )
        return FeatureResult(
            success=False,
            metadata=FeatureMetadata(
                feature_id=feature.id,
                backend_id=getattr(self.backend, "backend_id", None),
                attempted=False,
            ),
            error=error,
        )
