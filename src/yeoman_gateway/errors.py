"""Package specific exception hierarchy and failure classification."""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx


class GatewayError(Exception):
    """Base exception for yeoman_gateway package."""


class UnsupportedProviderError(GatewayError):
    """Raised when a provider is not on the allow-list."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"Provider '{provider}' is not available.")
        self.provider = provider


class TokenLimitError(GatewayError):
    """Raised before dispatch once today's token budget is spent."""

    def __init__(self, provider: str, tokens_used: int, limit: int) -> None:
        super().__init__(f"Daily token limit reached for {provider}: {tokens_used}/{limit} tokens used today.")
        self.provider = provider
        self.tokens_used = tokens_used
        self.limit = limit


class ProviderError(GatewayError):
    """Base class of the failure taxonomy every adapter normalizes into."""

    retryable = False
    fallback_eligible = False

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        suffix = f" (status {status_code})" if status_code is not None else ""
        super().__init__(f"{provider}: {message}{suffix}")
        self.provider = provider
        self.status_code = status_code


class ProviderUnavailableError(ProviderError):
    """Network failure, refused connection or 5xx."""

    retryable = True
    fallback_eligible = True


class InvalidResponseError(ProviderError):
    """Malformed payload or a 4xx that signals a bad request (e.g. unknown model)."""


class AuthenticationError(ProviderError):
    """Credentials were rejected (401/403)."""

    fallback_eligible = True


class RateLimitedError(ProviderError):
    """The backend answered 429."""

    retryable = True
    fallback_eligible = True

    def __init__(
        self,
        provider: str,
        message: str = "rate limited",
        status_code: int | None = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(provider, message, status_code=status_code)
        self.retry_after = retry_after


class FallbackExhaustedError(GatewayError):
    """Every hop of a fallback chain failed."""

    def __init__(self, hops: Sequence[tuple[str, str]], last_error: str) -> None:
        tried = ", ".join(f"{provider}/{model}" for provider, model in hops)
        super().__init__(f"All providers failed ({last_error}); tried: {tried}")
        self.hops = list(hops)
        self.last_error = last_error


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given either as seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(timezone.utc)).total_seconds()
    return max(seconds, 0.0)


def classify_status(
    provider: str,
    status_code: int,
    message: str = "",
    retry_after: float | None = None,
) -> ProviderError:
    """Map a non-2xx HTTP status onto the failure taxonomy."""
    message = message or httpx.codes.get_reason_phrase(status_code) or "request failed"
    if status_code in (401, 403):
        return AuthenticationError(provider, message, status_code=status_code)
    if status_code == 429:
        return RateLimitedError(provider, message, status_code=status_code, retry_after=retry_after)
    if status_code == 408 or status_code >= 500:
        return ProviderUnavailableError(provider, message, status_code=status_code)
    return InvalidResponseError(provider, message, status_code=status_code)


def classify_response(provider: str, response: httpx.Response, body: str | None = None) -> ProviderError:
    """Classify a failed response, reading the retry-after hint when present."""
    text = body if body is not None else response.text
    return classify_status(
        provider,
        response.status_code,
        _error_message(text) or response.reason_phrase,
        retry_after=parse_retry_after(response.headers.get("retry-after")),
    )


def classify_transport(provider: str, exc: httpx.HTTPError) -> ProviderError:
    """Map an httpx transport-level failure onto the failure taxonomy."""
    if isinstance(exc, httpx.DecodingError):
        return InvalidResponseError(provider, f"undecodable response: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_response(provider, exc.response)
    return ProviderUnavailableError(provider, str(exc) or type(exc).__name__)


def _error_message(body: str) -> str:
    # Most backends wrap the message as {"error": {"message": ...}} or {"error": "..."}.
    body = (body or "").strip()
    if not body.startswith("{"):
        return body[:500]
    try:
        data = json.loads(body)
    except ValueError:
        return body[:500]
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error)[:500]
    if isinstance(error, str):
        return error[:500]
    return body[:500]
