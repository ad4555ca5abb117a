"""Async client dispatching canonical requests to the active provider.

The client owns retry/backoff, the fallback-chain walk, usage accounting and
audit recording. The active model is an immutable snapshot: every call reads
it once on entry, and ``switch_model`` publishes a new one without touching
calls already in flight.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, Field

from yeoman_gateway.audit import AuditRecorder, AuditSink
from yeoman_gateway.config import (
    MAX_FALLBACKS,
    PROVIDER_KEY_ENV,
    SUPPORTED_PROVIDERS,
    AIClientConfig,
    FallbackEntry,
    ModelConfig,
)
from yeoman_gateway.cost import CostCalculator
from yeoman_gateway.errors import (
    FallbackExhaustedError,
    GatewayError,
    InvalidResponseError,
    ProviderError,
    TokenLimitError,
    UnsupportedProviderError,
)
from yeoman_gateway.fallback import FallbackPolicy, Hop
from yeoman_gateway.providers import PROVIDERS, BaseProvider, create_provider
from yeoman_gateway.retry import backoff_seconds
from yeoman_gateway.secrets import SecretResolver
from yeoman_gateway.storage import UsageStorage
from yeoman_gateway.types import ChatRequest, ChatResponse, Done, StreamChunk, StreamError, TokenUsage
from yeoman_gateway.usage import UsageStats, UsageTracker

T = TypeVar("T")

_CANCELLED = object()
_END = object()

# What an adapter raises when a backend payload has an unexpected shape.
_MALFORMED = (KeyError, TypeError, ValueError, AttributeError)


class CallContext(BaseModel):
    """Per-call context supplied by the caller."""

    personality_id: str | None = None
    # The active personality's fallback chain, consumed read-only.
    fallbacks: list[FallbackEntry] = Field(default_factory=list, max_length=MAX_FALLBACKS)
    # Extra audit metadata; never message content.
    metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass
class AIClientDeps:
    audit_chain: AuditSink | None = None
    logger: logging.Logger | None = None
    usage_storage: UsageStorage | None = None
    usage_tracker: UsageTracker | None = None
    secrets: SecretResolver | None = None
    transport: httpx.AsyncBaseTransport | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


@dataclass(frozen=True)
class _Snapshot:
    config: ModelConfig
    provider: BaseProvider


class _DispatchFailed(Exception):
    def __init__(self, error: ProviderError, tried: list[Hop]) -> None:
        super().__init__(str(error))
        self.error = error
        self.tried = tried


class _DispatchCancelled(Exception):
    def __init__(self, hop: Hop) -> None:
        super().__init__(f"cancelled during backoff on {hop.config.provider}/{hop.config.model}")
        self.hop = hop


class AIClient:
    """High-level gateway used by every caller that needs a completion."""

    def __init__(self, config: AIClientConfig | dict[str, Any], deps: AIClientDeps | None = None) -> None:
        if isinstance(config, dict):
            config = AIClientConfig(**config)
        deps = deps or AIClientDeps()

        self._logger = (deps.logger or logging.getLogger(__name__)).getChild("ai_client")
        self._audit = AuditRecorder(deps.audit_chain, self._logger)
        self._secrets = deps.secrets
        self._transport = deps.transport
        self._sleep = deps.sleep
        self._retry = config.resolved_retry()
        self._cost = CostCalculator()
        self._usage = deps.usage_tracker or UsageTracker(deps.usage_storage)

        self._fallback_providers: dict[ModelConfig, BaseProvider] = {}
        self._inflight: dict[BaseProvider, int] = {}
        self._retired: list[BaseProvider] = []
        self._closing: set[asyncio.Task[None]] = set()
        self._active = _Snapshot(config.model, self._create_provider(config.model))

    # ── public API ──────────────────────────────────────────────

    async def chat(self, request: ChatRequest, ctx: CallContext | None = None) -> ChatResponse:
        """Non-streaming completion with retry and fallback."""
        ctx = ctx or CallContext()
        snapshot = self._active
        await self._check_limit(snapshot.config)
        started = time.monotonic()
        self._acquire(snapshot)
        try:
            try:
                response, hop, _ = await self._dispatch(snapshot, ctx, lambda provider: provider.chat(request))
            except _DispatchFailed as failure:
                raise await self._fail(failure, ctx, started, request, stream=False) from None

            latency = _elapsed_ms(started)
            cost = await self._account(hop.config, ctx, response.usage, latency, is_error=False)
            self._audit.record(
                "ai_response",
                {
                    **self._request_meta(request, hop.config, ctx, stream=False),
                    "stopReason": response.stop_reason,
                    "inputTokens": response.usage.input_tokens,
                    "outputTokens": response.usage.output_tokens,
                    "cachedTokens": response.usage.cached_input_tokens,
                    "costUsd": cost,
                    "latencyMs": latency,
                },
            )
            if hop.index:
                self._audit.record("ai_fallback_success", _hop_meta(hop))
            return response
        finally:
            await self._release(snapshot)

    async def chat_stream(
        self,
        request: ChatRequest,
        ctx: CallContext | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Streaming completion.

        Retry and fallback apply only until the first chunk arrives. After
        that a failure ends the stream with a ``done`` chunk whose
        ``stop_reason`` is ``"error"``; setting ``cancel`` ends it with
        ``"cancelled"``. Either way the transport is closed and exactly one
        ``done`` chunk is the last item.
        """
        ctx = ctx or CallContext()
        snapshot = self._active
        await self._check_limit(snapshot.config)
        started = time.monotonic()
        self._acquire(snapshot)
        try:

            async def open_stream(provider: BaseProvider) -> tuple[AsyncIterator[StreamChunk], Any]:
                stream = provider.stream(request)
                try:
                    first = await _next_chunk(stream, cancel, provider.name)
                except BaseException:
                    await _aclose(stream)
                    raise
                return stream, first

            try:
                (stream, chunk), hop, _ = await self._dispatch(snapshot, ctx, open_stream, cancel)
            except _DispatchFailed as failure:
                raise await self._fail(failure, ctx, started, request, stream=True) from None
            except _DispatchCancelled as cancelled:
                stream, chunk, hop = None, _CANCELLED, cancelled.hop

            done: Done | None = None
            try:
                while done is None:
                    if chunk is _CANCELLED:
                        done = Done(stop_reason="cancelled")
                    elif chunk is _END:
                        done = Done()
                    elif isinstance(chunk, Done):
                        done = chunk
                    else:
                        yield chunk
                        try:
                            chunk = await _next_chunk(stream, cancel, hop.config.provider)
                        except ProviderError as exc:
                            self._logger.warning(
                                "Stream from %s/%s failed mid-delivery: %s",
                                hop.config.provider,
                                hop.config.model,
                                exc,
                            )
                            error = StreamError(kind=type(exc).__name__, message=str(exc))
                            done = Done(stop_reason="error", error=error)
            except (GeneratorExit, asyncio.CancelledError):
                # Consumer walked away or was cancelled; still account the call once.
                await _aclose(stream)
                await self._account(hop.config, ctx, None, _elapsed_ms(started), is_error=False)
                raise
            finally:
                await _aclose(stream)

            latency = _elapsed_ms(started)
            is_error = done.stop_reason == "error"
            cost = await self._account(hop.config, ctx, done.usage, latency, is_error=is_error)
            self._audit.record(
                "ai_stream_error" if is_error else "ai_stream_done",
                {
                    **self._request_meta(request, hop.config, ctx, stream=True),
                    "stopReason": done.stop_reason,
                    "inputTokens": done.usage.input_tokens,
                    "outputTokens": done.usage.output_tokens,
                    "costUsd": cost,
                    "latencyMs": latency,
                    **({"error": done.error.kind} if done.error else {}),
                },
            )
            if hop.index and not is_error:
                self._audit.record("ai_fallback_success", _hop_meta(hop))
            yield done
        finally:
            await self._release(snapshot)

    def switch_model(self, provider: str, model: str) -> ModelConfig:
        """Publish a new active model. Calls already running keep their snapshot."""
        if provider not in SUPPORTED_PROVIDERS:
            raise UnsupportedProviderError(provider)

        previous = self._active
        update: dict[str, Any] = {"provider": provider, "model": model}
        if provider != previous.config.provider:
            update.update(api_key_env=PROVIDER_KEY_ENV.get(provider, ""), base_url=None)
        config = previous.config.model_copy(update=update)

        self._active = _Snapshot(config, self._create_provider(config))
        if previous.provider in self._inflight:
            self._retired.append(previous.provider)
        else:
            self._close_soon(previous.provider)

        self._logger.info(
            "Switched model %s/%s -> %s/%s", previous.config.provider, previous.config.model, provider, model
        )
        self._audit.record(
            "model_switched",
            {
                "fromProvider": previous.config.provider,
                "fromModel": previous.config.model,
                "toProvider": provider,
                "toModel": model,
            },
            message=f"Model switched to {provider}/{model}",
        )
        return config

    def get_usage_stats(self) -> UsageStats:
        return self._usage.get_usage_stats()

    def get_usage_tracker(self) -> UsageTracker:
        return self._usage

    def get_cost_calculator(self) -> CostCalculator:
        return self._cost

    def get_model_config(self) -> ModelConfig:
        return self._active.config

    def get_provider_name(self) -> str:
        return self._active.config.provider

    def get_model_info(self) -> dict[str, Any]:
        """Current model plus every known model with its pricing."""
        config = self._active.config
        return {
            "current": {
                "provider": config.provider,
                "model": config.model,
                "maxTokens": config.max_tokens,
                "temperature": config.temperature,
            },
            "available": {
                provider: [
                    {
                        "provider": m.provider,
                        "model": m.model,
                        "inputPer1M": m.input_per_1m,
                        "outputPer1M": m.output_per_1m,
                        "cachedInputPer1M": m.cached_input_per_1m,
                    }
                    for m in models
                ]
                for provider, models in self._cost.available_models().items()
            },
        }

    async def aclose(self) -> None:
        """Close every adapter and wait for pending audit records."""
        providers = {self._active.provider, *self._fallback_providers.values(), *self._retired}
        self._fallback_providers.clear()
        self._retired.clear()
        for provider in providers:
            await provider.aclose()
        if self._closing:
            await asyncio.gather(*self._closing)
        await self._audit.drain()

    # ── dispatch ────────────────────────────────────────────────

    async def _dispatch(
        self,
        snapshot: _Snapshot,
        ctx: CallContext,
        invoke: Callable[[BaseProvider], Awaitable[T]],
        cancel: asyncio.Event | None = None,
    ) -> tuple[T, Hop, list[Hop]]:
        policy = FallbackPolicy(ctx.fallbacks)
        hops = policy.hops(snapshot.config)
        ceiling = policy.attempt_ceiling(self._retry)
        max_retries = self._retry.max_retries
        attempts = 0
        tried: list[Hop] = []
        last_error: ProviderError | None = None

        for hop in hops:
            if attempts >= ceiling:
                break
            if hop.index:
                self._logger.warning(
                    "Falling back to %s/%s after %s",
                    hop.config.provider,
                    hop.config.model,
                    type(last_error).__name__,
                )
                self._audit.record("ai_fallback_attempt", _hop_meta(hop))
            provider = snapshot.provider if hop.index == 0 else self._fallback_provider(hop.config)
            tried.append(hop)

            for attempt in range(max_retries + 1):
                attempts += 1
                try:
                    try:
                        return await invoke(provider), hop, tried
                    except _MALFORMED as exc:
                        raise InvalidResponseError(provider.name, f"malformed response: {exc!r}") from exc
                except InvalidResponseError as exc:
                    # A malformed request fails the same way everywhere.
                    raise _DispatchFailed(exc, tried) from exc
                except ProviderError as exc:
                    last_error = exc
                    if not exc.retryable or attempt >= max_retries or attempts >= ceiling:
                        self._logger.warning(
                            "%s/%s failed: %s", hop.config.provider, hop.config.model, exc
                        )
                        break
                    delay = backoff_seconds(self._retry, attempt, exc)
                    self._logger.warning(
                        "%s/%s failed (%s); retry %d/%d in %.2fs",
                        hop.config.provider,
                        hop.config.model,
                        type(exc).__name__,
                        attempt + 1,
                        max_retries,
                        delay,
                    )
                    if not await self._backoff(delay, cancel):
                        raise _DispatchCancelled(hop)

            if hop.index == 0 and len(hops) > 1:
                self._audit.record(
                    "ai_fallback_triggered",
                    {
                        "provider": hop.config.provider,
                        "model": hop.config.model,
                        "error": type(last_error).__name__,
                    },
                )

        assert last_error is not None
        raise _DispatchFailed(last_error, tried)

    async def _fail(
        self,
        failure: _DispatchFailed,
        ctx: CallContext,
        started: float,
        request: ChatRequest,
        *,
        stream: bool,
    ) -> GatewayError:
        """Account a failed call and build the single error the caller sees."""
        hop = failure.tried[-1]
        latency = _elapsed_ms(started)
        await self._account(hop.config, ctx, None, latency, is_error=True)
        self._audit.record(
            "ai_stream_error" if stream else "ai_error",
            {
                **self._request_meta(request, hop.config, ctx, stream=stream),
                "error": type(failure.error).__name__,
                "latencyMs": latency,
            },
        )

        if isinstance(failure.error, InvalidResponseError) or not ctx.fallbacks:
            return failure.error

        hops = [h.key for h in failure.tried]
        self._audit.record(
            "ai_fallback_exhausted",
            {"hops": [f"{p}/{m}" for p, m in hops], "error": type(failure.error).__name__},
        )
        return FallbackExhaustedError(hops, type(failure.error).__name__)

    async def _check_limit(self, config: ModelConfig) -> None:
        await self._usage.load()
        limit = self._usage.check_limit(config.max_tokens_per_day)
        if not limit.allowed:
            self._logger.warning(
                "Daily token limit reached for %s/%s: %d/%d",
                config.provider,
                config.model,
                limit.tokens_used_today,
                limit.limit_per_day,
            )
            raise TokenLimitError(config.provider, limit.tokens_used_today, limit.limit_per_day or 0)

    async def _backoff(self, delay: float, cancel: asyncio.Event | None) -> bool:
        """Sleep before a retry; False if ``cancel`` fired first."""
        if cancel is None:
            await self._sleep(delay)
            return True
        if cancel.is_set():
            return False
        sleeper = asyncio.ensure_future(self._sleep(delay))
        if await _wait_unless_cancelled(sleeper, cancel):
            await sleeper
            return True
        await _discard(sleeper)
        return False

    async def _account(
        self,
        config: ModelConfig,
        ctx: CallContext,
        usage: TokenUsage | None,
        latency_ms: float,
        *,
        is_error: bool,
    ) -> float:
        usage = usage or TokenUsage()
        cost = self._cost.cost(
            config.provider,
            config.model,
            usage.input_tokens,
            usage.output_tokens,
            usage.cached_input_tokens,
        )
        await self._usage.accumulate(
            config.provider,
            config.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cached_tokens=usage.cached_input_tokens,
            cost_usd=cost,
            latency_ms=latency_ms,
            is_error=is_error,
            personality_id=ctx.personality_id,
        )
        return cost

    # ── adapter lifecycle ───────────────────────────────────────

    def _create_provider(self, config: ModelConfig) -> BaseProvider:
        api_key = None
        if PROVIDERS[config.provider].requires_api_key:
            api_key = self._secrets.get_secret(config.key_env) if self._secrets else None
            if not api_key:
                self._logger.warning("No API key resolved for %s (%s)", config.provider, config.key_env)
        return create_provider(config, api_key=api_key, transport=self._transport)

    def _fallback_provider(self, config: ModelConfig) -> BaseProvider:
        provider = self._fallback_providers.get(config)
        if provider is None:
            provider = self._create_provider(config)
            self._fallback_providers[config] = provider
        return provider

    def _acquire(self, snapshot: _Snapshot) -> None:
        self._inflight[snapshot.provider] = self._inflight.get(snapshot.provider, 0) + 1

    async def _release(self, snapshot: _Snapshot) -> None:
        remaining = self._inflight.get(snapshot.provider, 1) - 1
        if remaining:
            self._inflight[snapshot.provider] = remaining
        else:
            self._inflight.pop(snapshot.provider, None)

        idle = [p for p in self._retired if p not in self._inflight]
        for provider in idle:
            self._retired.remove(provider)
            await provider.aclose()

    def _close_soon(self, provider: BaseProvider) -> None:
        """Close an idle retired adapter without waiting for the next call."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to close on; aclose() picks it up.
            self._retired.append(provider)
            return
        task = loop.create_task(provider.aclose())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    @staticmethod
    def _request_meta(
        request: ChatRequest,
        config: ModelConfig,
        ctx: CallContext,
        *,
        stream: bool,
    ) -> dict[str, Any]:
        return {
            "provider": config.provider,
            "model": config.model,
            "messageCount": len(request.messages),
            "hasTools": bool(request.tools),
            "stream": stream,
            **({"personalityId": ctx.personality_id} if ctx.personality_id else {}),
            **ctx.metadata,
        }


async def _next_chunk(stream: AsyncIterator[StreamChunk], cancel: asyncio.Event | None, provider: str) -> Any:
    """Pull the next chunk, or ``_END`` when exhausted, or ``_CANCELLED`` once ``cancel`` is set."""

    async def pull() -> Any:
        try:
            return await stream.__anext__()
        except StopAsyncIteration:
            return _END
        except _MALFORMED as exc:
            raise InvalidResponseError(provider, f"malformed stream chunk: {exc!r}") from exc

    if cancel is None:
        return await pull()
    if cancel.is_set():
        return _CANCELLED

    next_task = asyncio.create_task(pull())
    if not await _wait_unless_cancelled(next_task, cancel):
        # Cancelling the pending read unwinds the adapter and closes its response.
        await _discard(next_task)
        return _CANCELLED
    return next_task.result()


async def _wait_unless_cancelled(task: asyncio.Future[Any], cancel: asyncio.Event) -> bool:
    """Wait for ``task``; False if ``cancel`` fired first.

    If the caller itself is cancelled, ``task`` is cancelled and awaited
    before the cancellation propagates.
    """
    cancel_task = asyncio.create_task(cancel.wait())
    try:
        await asyncio.wait({task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        await _discard(task)
        raise
    finally:
        cancel_task.cancel()
    return task.done()


async def _discard(task: asyncio.Future[Any]) -> None:
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError, ProviderError):
        await task


async def _aclose(stream: AsyncIterator[Any]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000


def _hop_meta(hop: Hop) -> dict[str, Any]:
    return {"provider": hop.config.provider, "model": hop.config.model, "hop": hop.index}
