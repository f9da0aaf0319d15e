"""Exception hierarchy for the review bot."""


class ReviewBotError(Exception):
    """Base class for errors raised by the review pipeline."""

    code = "REVIEW_BOT_ERROR"


class GitLabClientError(ReviewBotError):
    """A GitLab API call failed or returned an unexpected status."""

    code = "GITLAB_ERROR"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RagContextError(ReviewBotError):
    """Vector search failed. Never escapes the context assembler."""

    code = "RAG_ERROR"


class AiReviewError(ReviewBotError):
    """Base class for failures of the language model call."""

    code = "AI_ERROR"


class AiRetryableError(AiReviewError):
    """Transient model failure (timeouts, 408/429, 5xx, I/O)."""

    code = "AI_RETRYABLE"


class AiNonRetryableError(AiReviewError):
    """The model provider rejected the request; retrying cannot help."""

    code = "AI_NON_RETRYABLE"


class AiUnavailableError(AiReviewError):
    """The circuit breaker is open and the call was not attempted."""

    code = "AI_UNAVAILABLE"


class ReviewQueueFullError(ReviewBotError):
    """The review queue reached its maximum depth."""

    code = "QUEUE_FULL"


class WebhookValidationError(ReviewBotError):
    """An incoming webhook failed token or payload validation."""

    code = "WEBHOOK_INVALID"
