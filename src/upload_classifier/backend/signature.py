"""Offline classifier that labels objects by their file signature."""

from __future__ import annotations

from upload_classifier.backend.base import ClassificationResult

_SIGNATURES: tuple[tuple[str, bytes], ...] = (
    ("png", b"\x89PNG\r\n\x1a\n"),
    ("jpeg", b"\xff\xd8\xff"),
    ("gif", b"GIF87a"),
    ("gif", b"GIF89a"),
)


class SignatureClassifier:
    """Deterministic backend for local runs and tests."""

    def classify(self, content: bytes, content_type: str) -> ClassificationResult:
        label = _match_signature(content)
        if label is not None:
            return ClassificationResult(label=label, score=1.0)
        if content_type.startswith("image/"):
            return ClassificationResult(label=content_type.removeprefix("image/"), score=0.5)
        return ClassificationResult(label="unknown", score=0.0)


def _match_signature(content: bytes) -> str | None:
    for label, magic in _SIGNATURES:
        if content.startswith(magic):
            return label
    if content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return "webp"
    return None
