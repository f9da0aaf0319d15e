"""Utility modules for the review bot."""

from .diff_lines import compute_valid_new_lines
from .resilience import CircuitBreaker, CircuitBreakerOpenError, resilient, with_retry

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "compute_valid_new_lines",
    "resilient",
    "with_retry",
]
