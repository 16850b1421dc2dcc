"""HTTP inference backend with retries and timeout."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from upload_classifier import __version__
from upload_classifier.backend.base import (
    ClassificationResult,
    ClassifierError,
    ClassifierOutputError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_USER_AGENT = f"upload-classifier/{__version__}"
_ERROR_BODY_PREVIEW_CHARS = 200


class HttpClassifier:
    """Posts object bytes to an inference endpoint and reads back a label."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        endpoint_url: str,
        api_token: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.endpoint_url = endpoint_url
        headers = {"User-Agent": user_agent, "Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def classify(self, content: bytes, content_type: str) -> ClassificationResult:
        try:
            response = self._client.post(
                self.endpoint_url,
                content=content,
                headers={"Content-Type": content_type or "application/octet-stream"},
            )
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling classifier at %s", self.endpoint_url)
            raise TimeoutError(f"Classifier request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling classifier at %s: %s", self.endpoint_url, exc)
            raise ClassifierError(f"Classifier request failed: {exc}", retryable=True) from exc

        if not response.is_success:
            raise ClassifierError(
                f"HTTP {response.status_code}: {response.text[:_ERROR_BODY_PREVIEW_CHARS]}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ClassifierOutputError("Classifier response is not valid JSON.") from exc
        return parse_classification_payload(payload)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpClassifier:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def parse_classification_payload(payload: Any) -> ClassificationResult:
    """Accept one ``{"label", "score"}`` object or a list of them; the top score wins."""

    candidates = payload if isinstance(payload, list) else [payload]
    results = [_parse_candidate(candidate) for candidate in candidates]
    if not results:
        raise ClassifierOutputError("Classifier returned no predictions.")
    return max(results, key=lambda result: result.score)


def _parse_candidate(candidate: Any) -> ClassificationResult:
    if not isinstance(candidate, dict):
        raise ClassifierOutputError(f"Unexpected prediction entry: {candidate!r}")
    label = candidate.get("label")
    score = candidate.get("score")
    if not isinstance(label, str) or not label.strip():
        raise ClassifierOutputError("Prediction label must be a non-empty string.")
    if isinstance(score, bool) or not isinstance(score, int | float):
        raise ClassifierOutputError(f"Prediction score must be a number: {score!r}")
    return ClassificationResult(label=label.strip(), score=float(score))
