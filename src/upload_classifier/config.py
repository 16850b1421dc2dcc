"""Runtime configuration for event ingestion, task runtime and worker."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_CLASSIFIER_BACKENDS = ("signature", "http")
MIN_RUNTIME_CALL_TIMEOUT_SECONDS = 0.5


@dataclass(slots=True)
class RuntimeSettings:
    """Durable task runtime settings."""

    call_timeout_seconds: float = 10.0
    max_attempts: int = 3


@dataclass(slots=True)
class WorkerSettings:
    """Task worker polling and retry policy."""

    worker_id: str = field(default_factory=lambda: f"worker-{socket.gethostname()}")
    poll_interval_seconds: float = 2.0
    retry_base_seconds: int = 5
    retry_max_seconds: int = 300
    stale_attempt_seconds: int = 900


@dataclass(slots=True)
class ClassifierSettings:
    """Inference backend settings."""

    backend: str = "signature"
    endpoint_url: str | None = None
    api_token: str | None = None
    request_timeout_seconds: float = 30.0
    max_retries: int = 2


@dataclass(slots=True)
class DeliverySettings:
    """Batch delivery settings used by the redelivery flow."""

    max_redeliveries: int = 3
    redelivery_delay_seconds: float = 1.0
    drain_worker: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".upload_classifier.db")
    object_store_root: Path = Path("objects")
    sqlite_busy_timeout_ms: int = 5_000
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    classifier: ClassifierSettings = field(default_factory=ClassifierSettings)
    delivery: DeliverySettings = field(default_factory=DeliverySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        worker_defaults = WorkerSettings()
        return cls(
            db_path=db_path
            or Path(os.getenv("UPLOAD_CLASSIFIER_DB_PATH", ".upload_classifier.db")),
            object_store_root=Path(os.getenv("UPLOAD_CLASSIFIER_OBJECT_STORE_ROOT", "objects")),
            sqlite_busy_timeout_ms=int(
                os.getenv("UPLOAD_CLASSIFIER_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            runtime=RuntimeSettings(
                call_timeout_seconds=float(
                    os.getenv("UPLOAD_CLASSIFIER_RUNTIME_CALL_TIMEOUT_SECONDS", "10.0"),
                ),
                max_attempts=int(os.getenv("UPLOAD_CLASSIFIER_TASK_MAX_ATTEMPTS", "3")),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("UPLOAD_CLASSIFIER_WORKER_ID", worker_defaults.worker_id),
                poll_interval_seconds=float(
                    os.getenv("UPLOAD_CLASSIFIER_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                retry_base_seconds=int(os.getenv("UPLOAD_CLASSIFIER_RETRY_BASE_SECONDS", "5")),
                retry_max_seconds=int(os.getenv("UPLOAD_CLASSIFIER_RETRY_MAX_SECONDS", "300")),
                stale_attempt_seconds=int(
                    os.getenv("UPLOAD_CLASSIFIER_WORKER_STALE_ATTEMPT_SECONDS", "900"),
                ),
            ),
            classifier=ClassifierSettings(
                backend=os.getenv("UPLOAD_CLASSIFIER_BACKEND", "signature").strip().lower(),
                endpoint_url=os.getenv("UPLOAD_CLASSIFIER_ENDPOINT_URL") or None,
                api_token=os.getenv("UPLOAD_CLASSIFIER_API_TOKEN") or None,
                request_timeout_seconds=float(
                    os.getenv("UPLOAD_CLASSIFIER_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                max_retries=int(os.getenv("UPLOAD_CLASSIFIER_HTTP_MAX_RETRIES", "2")),
            ),
            delivery=DeliverySettings(
                max_redeliveries=int(os.getenv("UPLOAD_CLASSIFIER_MAX_REDELIVERIES", "3")),
                redelivery_delay_seconds=float(
                    os.getenv("UPLOAD_CLASSIFIER_REDELIVERY_DELAY_SECONDS", "1.0"),
                ),
                drain_worker=_env_bool("UPLOAD_CLASSIFIER_DRAIN_WORKER", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("UPLOAD_CLASSIFIER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.runtime.call_timeout_seconds < MIN_RUNTIME_CALL_TIMEOUT_SECONDS:
            raise ValueError(
                "UPLOAD_CLASSIFIER_RUNTIME_CALL_TIMEOUT_SECONDS must be "
                f">= {MIN_RUNTIME_CALL_TIMEOUT_SECONDS}.",
            )
        if self.runtime.max_attempts < 1:
            raise ValueError("UPLOAD_CLASSIFIER_TASK_MAX_ATTEMPTS must be >= 1.")
        if self.worker.retry_base_seconds < 0 or self.worker.retry_max_seconds < 0:
            raise ValueError("Retry backoff seconds must be >= 0.")
        if self.delivery.max_redeliveries < 0:
            raise ValueError("UPLOAD_CLASSIFIER_MAX_REDELIVERIES must be >= 0.")
        if self.classifier.backend not in SUPPORTED_CLASSIFIER_BACKENDS:
            raise ValueError(
                "Unsupported UPLOAD_CLASSIFIER_BACKEND: "
                f"{self.classifier.backend!r}. Expected one of "
                f"{', '.join(SUPPORTED_CLASSIFIER_BACKENDS)}.",
            )
        if self.classifier.backend == "http":
            _validate_endpoint_url(self.classifier.endpoint_url)


def _validate_endpoint_url(value: str | None) -> None:
    if not value:
        raise ValueError("UPLOAD_CLASSIFIER_ENDPOINT_URL is required for the http backend.")
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid classifier endpoint URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
