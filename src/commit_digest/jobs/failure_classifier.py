"""Deterministic handler failure classification for dispatcher retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from commit_digest.jobs.errors import INSUFFICIENT_CREDITS_MESSAGE, JobExecutionError
from commit_digest.jobs.models import FailureClass

JOB_FAILURE_CLASSIFIER_VERSION = 1

_RESOURCE_EXHAUSTED_PATTERNS: tuple[str, ...] = (
    "insufficient credits",
    "insufficient_quota",
    "quota exceeded",
    "billing",
    "payment required",
)
_NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "output_token_limit",
    "finish_reason=length",
    "no summary generated",
    "unauthorized",
    "forbidden",
    "invalid api key",
    "404 not found",
    "status 404",
    "repository not found",
    "commit not found",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "status 429",
    "http 429",
    "429 too many",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "bad gateway",
    "service unavailable",
)
_TRANSIENT_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
)


@dataclass(slots=True)
class JobFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    error_message: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class == FailureClass.TRANSIENT

    def to_error_details(self, *, exception_type: str) -> dict[str, object]:
        """Serialize classifier diagnostics for ``error_details``."""

        return {
            "classifier_version": JOB_FAILURE_CLASSIFIER_VERSION,
            "exception_type": exception_type,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_handler_failure(error: BaseException) -> JobFailureClassification:
    """Classify a handler exception into a retry class.

    Typed ``JobExecutionError`` subclasses carry their own class. Anything
    else is matched against message patterns and falls back to transient,
    so unknown errors are retried until ``max_attempts``.
    """

    if isinstance(error, JobExecutionError):
        return JobFailureClassification(
            failure_class=error.failure_class,
            error_message=error.message,
            matched_rule="typed_error",
            matched_pattern=None,
        )

    message = str(error) or type(error).__name__
    haystack = message.lower()

    pattern = _first_match(haystack, _RESOURCE_EXHAUSTED_PATTERNS)
    if pattern is not None:
        return JobFailureClassification(
            failure_class=FailureClass.RESOURCE_EXHAUSTED,
            error_message=INSUFFICIENT_CREDITS_MESSAGE,
            matched_rule="resource_exhausted",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _NON_RETRYABLE_PATTERNS)
    if pattern is not None:
        return JobFailureClassification(
            failure_class=FailureClass.NON_RETRYABLE,
            error_message=message,
            matched_rule="non_retryable",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return JobFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            error_message=message,
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or isinstance(error, _TRANSIENT_EXCEPTION_TYPES):
        return JobFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            error_message=message,
            matched_rule=(
                "transient_exception_type"
                if isinstance(error, _TRANSIENT_EXCEPTION_TYPES) and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return JobFailureClassification(
        failure_class=FailureClass.TRANSIENT,
        error_message=message,
        matched_rule="fallback_transient",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
