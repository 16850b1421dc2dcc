"""Deterministic task failure classification for worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from upload_classifier.backend.base import ClassifierError, ClassifierOutputError
from upload_classifier.errors import ObjectNotFoundError
from upload_classifier.runtime.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

RETRYABLE_FAILURE_CLASSES = frozenset({FailureClass.TIMEOUT, FailureClass.BACKEND_TRANSIENT})

_TRANSIENT_STATUS_CODES: tuple[int, ...] = (408, 425, 429, 500, 502, 503, 504)

_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "model is loading",
)


@dataclass(slots=True)
class TaskFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_FAILURE_CLASSES

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_task_failure(error: BaseException) -> TaskFailureClassification:
    """Map an exception raised while running a task onto a retry class."""

    if isinstance(error, ObjectNotFoundError):
        return TaskFailureClassification(
            failure_class=FailureClass.OBJECT_MISSING,
            reason_code="object_missing",
            matched_rule="object_not_found",
        )
    if isinstance(error, TimeoutError):
        return TaskFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="backend_timeout",
            matched_rule="timeout",
        )
    if isinstance(error, ClassifierOutputError):
        return TaskFailureClassification(
            failure_class=FailureClass.OUTPUT_INVALID,
            reason_code="backend_output_invalid",
            matched_rule="output_invalid",
        )
    if isinstance(error, ClassifierError):
        return _classify_backend_error(error)
    if isinstance(error, ValueError):
        return TaskFailureClassification(
            failure_class=FailureClass.INPUT_CONTRACT_ERROR,
            reason_code="task_payload_invalid",
            matched_rule="input_contract",
        )
    return TaskFailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        reason_code="unexpected_error",
        matched_rule="fallback_non_retryable",
    )


def _classify_backend_error(error: ClassifierError) -> TaskFailureClassification:
    if error.retryable is not None:
        return TaskFailureClassification(
            failure_class=(
                FailureClass.BACKEND_TRANSIENT
                if error.retryable
                else FailureClass.BACKEND_NON_RETRYABLE
            ),
            reason_code="backend_declared",
            matched_rule="declared_retryable" if error.retryable else "declared_non_retryable",
        )

    haystack = str(error).lower()
    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None or error.status_code == 429:  # noqa: PLR2004
        return TaskFailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            reason_code="backend_rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or error.status_code in _TRANSIENT_STATUS_CODES:
        return TaskFailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            reason_code="backend_transient",
            matched_rule=(
                "transient_status_code"
                if error.status_code in _TRANSIENT_STATUS_CODES and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return TaskFailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        reason_code="backend_non_retryable",
        matched_rule="fallback_non_retryable",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
