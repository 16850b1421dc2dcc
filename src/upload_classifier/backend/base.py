"""Backend interface for classification task execution."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from upload_classifier.errors import UploadClassifierError


@dataclass(slots=True, frozen=True)
class ClassificationResult:
    """Label predicted for one object, with its confidence."""

    label: str
    score: float


class ClassifierError(UploadClassifierError):
    """Backend could not classify the object.

    ``retryable`` left as None lets the failure classifier decide from the
    status code and message.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class ClassifierOutputError(ClassifierError):
    """Backend answered, but the answer is not a usable classification."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class Classifier(Protocol):
    """Protocol implemented by inference backends."""

    def classify(self, content: bytes, content_type: str) -> ClassificationResult:
        """Classify object bytes."""
