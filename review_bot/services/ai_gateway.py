"""Gateway for the single outbound language model call of a review."""

import functools
import logging
from typing import Any

import httpx
from pydantic_ai import Agent, RunContext
from pydantic_ai.exceptions import ModelHTTPError, UserError
from pydantic_ai.models.openai import OpenAIResponsesModel
from pydantic_ai.providers.openai import OpenAIProvider

from review_bot.config.settings import Settings, settings
from review_bot.exceptions import (
    AiNonRetryableError,
    AiRetryableError,
    AiReviewError,
    AiUnavailableError,
)
from review_bot.utils.resilience import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    with_retry,
)

logger = logging.getLogger(__name__)

# Status codes that signal a transient condition despite being 4xx
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


def safe_message(error: BaseException, limit: int = 200) -> str:
    message = str(error) or type(error).__name__
    return message if len(message) <= limit else message[:limit] + "…"


def classify_model_error(error: Exception) -> AiReviewError:
    """Map a provider error onto the retryable / non-retryable split.

    - HTTP 4xx other than 408/429 and ``UserError`` (bad configuration or a
      malformed request) are non-retryable.
    - HTTP 408/429/5xx, timeouts, transport and OS errors are retryable, and
      so is anything unrecognized.
    """
    if isinstance(error, AiReviewError):
        return error

    if isinstance(error, ModelHTTPError):
        status = error.status_code
        message = f"Model HTTP {status}: {safe_message(error)}"
        if 400 <= status < 500 and status not in RETRYABLE_CLIENT_STATUSES:
            return AiNonRetryableError(message)
        return AiRetryableError(message)

    if isinstance(error, UserError):
        return AiNonRetryableError(f"Model request rejected: {safe_message(error)}")

    if isinstance(error, httpx.TimeoutException | TimeoutError):
        return AiRetryableError(f"Model call timed out: {safe_message(error)}")

    return AiRetryableError(f"{type(error).__name__}: {safe_message(error)}")


def is_retryable_ai_error(error: BaseException) -> bool:
    return isinstance(error, AiRetryableError)


def build_review_agent(config: Settings) -> Agent[str, str]:
    """Create the agent used for reviews.

    The system prompt is supplied per call through ``deps`` so one agent
    serves every review.
    """
    provider = OpenAIProvider(api_key=config.openai_api_key)
    model = OpenAIResponsesModel(config.openai_model, provider=provider)

    agent: Agent[str, str] = Agent(
        model=model,
        deps_type=str,
        output_type=str,
    )

    @agent.system_prompt
    def review_system_prompt(ctx: RunContext[str]) -> str:
        return ctx.deps

    return agent


def build_ai_breaker(config: Settings) -> CircuitBreaker:
    return CircuitBreaker(
        name="openai",
        window_size=config.ai_breaker_window_size,
        minimum_calls=config.ai_breaker_minimum_calls,
        failure_rate_threshold=config.ai_breaker_failure_rate_threshold,
        open_seconds=config.ai_breaker_open_seconds,
    )


class AiReviewGateway:
    """
    Wraps exactly one model call with classification, retry and a breaker.

    Non-retryable errors propagate unchanged and are not counted by the
    breaker. While the breaker is open the call fails fast with
    ``AiUnavailableError``.
    """

    def __init__(
        self,
        config: Settings,
        agent: Agent[str, str] | Any | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.config = config
        self._agent = agent
        self.breaker = breaker if breaker is not None else build_ai_breaker(config)

    @property
    def agent(self) -> Agent[str, str]:
        if self._agent is None:
            self._agent = build_review_agent(self.config)
        return self._agent

    async def ask(self, system_prompt: str, user_prompt: str) -> str:
        """Send one prompt pair and return the raw text answer.

        Raises:
            AiNonRetryableError: The provider rejected the request
            AiRetryableError: Transient failure that persisted through retries
            AiUnavailableError: The circuit breaker is open
        """
        try:
            return await with_retry(
                self._call_model,
                system_prompt,
                user_prompt,
                is_retryable=is_retryable_ai_error,
                max_attempts=self.config.ai_retry_attempts,
                backoff_seconds=self.config.ai_retry_backoff_seconds,
                breaker=self.breaker,
            )
        except CircuitBreakerOpenError as e:
            raise AiUnavailableError(f"AI service unavailable: {e}") from e

    async def _call_model(self, system_prompt: str, user_prompt: str) -> str:
        timeout = httpx.Timeout(
            self.config.openai_read_timeout,
            connect=self.config.openai_connect_timeout,
        )
        logger.debug(
            f"Calling model {self.config.openai_model} "
            f"(system={len(system_prompt)} chars, user={len(user_prompt)} chars)"
        )
        try:
            result = await self.agent.run(
                user_prompt,
                deps=system_prompt,
                model_settings={"timeout": timeout},
            )
        except Exception as e:
            classified = classify_model_error(e)
            logger.warning(f"Model call failed: {type(classified).__name__}: {classified}")
            if classified is e:
                raise
            raise classified from e

        return result.output or ""


@functools.lru_cache(maxsize=1)
def get_ai_gateway() -> AiReviewGateway:
    """Process-wide gateway so the breaker sees every review of this worker."""
    return AiReviewGateway(settings)
