"""Inference backends used by the classification worker."""

from upload_classifier.backend.base import (
    ClassificationResult,
    Classifier,
    ClassifierError,
    ClassifierOutputError,
)
from upload_classifier.backend.http_backend import HttpClassifier
from upload_classifier.backend.signature import SignatureClassifier

__all__ = [
    "ClassificationResult",
    "Classifier",
    "ClassifierError",
    "ClassifierOutputError",
    "HttpClassifier",
    "SignatureClassifier",
]
