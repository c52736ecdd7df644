"""Error taxonomy for pipeline stages and provider calls.

Every stage error is a PipelineError subclass carrying a stable
``category`` string. The orchestrator records the category in the
step_failed event payload; only the human-readable message reaches
job.error_message.

Provider HTTP responses are classified here so adapters share one
mapping:
- 429                 -> RateLimitError (retried after a long fixed delay)
- 408, 5xx            -> ProviderTransientError (retried with backoff)
- other 4xx           -> ProviderTerminalError (never retried)
- transport failures  -> ProviderTransientError
"""

import functools
import logging
from typing import Any, Optional

import httpx
from tenacity import (
    RetryCallState,
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from reelforge.config import settings

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for all classified pipeline failures."""

    category = "internal"

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})


class InputValidationError(PipelineError, ValueError):
    """Bad request input. Raised before any job mutation."""

    category = "input_validation"


class ProviderTransientError(PipelineError):
    """Temporary provider failure worth retrying (5xx, network)."""

    category = "provider_transient"


class RateLimitError(ProviderTransientError):
    """Provider rejected the call with 429."""

    category = "rate_limited"


class ProviderTerminalError(PipelineError):
    """Provider refused or failed the generation; retrying will not help."""

    category = "provider_terminal"


class GenerationTimeoutError(PipelineError):
    """A generation did not reach a terminal state within its time budget."""

    category = "timeout"


class StateConsistencyError(PipelineError):
    """Persisted state contradicts what the pipeline requires."""

    category = "state_consistency"


class ConfigurationError(StateConsistencyError):
    """Missing or invalid provider configuration."""

    category = "configuration"


def error_category(exc: BaseException) -> str:
    """Return the taxonomy category for any exception."""
    if isinstance(exc, PipelineError):
        return exc.category
    return "internal"


# ---------------------------------------------------------------------------
# HTTP response classification
# ---------------------------------------------------------------------------
def raise_for_provider_status(response: httpx.Response, provider: str) -> None:
    """Raise the classified PipelineError for a non-2xx provider response."""
    if response.is_success:
        return

    status = response.status_code
    body = response.text[:500]
    details = {"provider": provider, "status_code": status, "body": body}

    if status == 429:
        raise RateLimitError(f"{provider} rate limited the request", details=details)
    if status == 408 or status >= 500:
        raise ProviderTransientError(
            f"{provider} unavailable ({status})", details=details
        )
    raise ProviderTerminalError(f"{provider} API error ({status}): {body}", details=details)


def _is_retriable(exc: BaseException) -> bool:
    """Return True only for transient errors worth retrying."""
    if isinstance(exc, ProviderTransientError):
        return True
    if isinstance(exc, httpx.TransportError):
        return True
    return False


def provider_backoff(retry_state: RetryCallState) -> float:
    """Wait strategy: long fixed delay for rate limits, exponential otherwise."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, RateLimitError):
        return settings.pipeline.rate_limit_delay_seconds
    exponential = wait_exponential(
        multiplier=settings.pipeline.retry_base_delay,
        min=settings.pipeline.retry_base_delay,
        max=settings.pipeline.retry_max_delay,
    )
    return exponential(retry_state)


def provider_retry(func):
    """Retry decorator for provider calls.

    Transient errors are retried up to settings.pipeline.retry_max_attempts;
    terminal errors propagate immediately. Transport errors that survive all
    attempts are wrapped as ProviderTransientError so the orchestrator still
    sees a classified failure.
    """
    retrying = retry(
        stop=stop_after_attempt(settings.pipeline.retry_max_attempts),
        wait=provider_backoff,
        retry=retry_if_exception(_is_retriable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )(func)

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await retrying(*args, **kwargs)
        except httpx.TransportError as e:
            raise ProviderTransientError(
                f"Network error calling provider: {type(e).__name__}: {e}"
            ) from e

    return wrapper
