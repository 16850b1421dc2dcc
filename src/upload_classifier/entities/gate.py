"""Ordering gate: the single place where event freshness is decided."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from upload_classifier.entities.models import (
    DeleteFresh,
    EntityTaskState,
    Fresh,
    ObjectReference,
    Stale,
    split_entity_key,
)
from upload_classifier.entities.repository import EntityRepository
from upload_classifier.errors import EventValidationError

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_MICROSECOND = timedelta(microseconds=1)


def parse_ordering_marker(value: object) -> int:
    """Normalize an event marker into a comparable integer.

    Integers (and digit-only strings) are taken as sequence numbers.
    Timestamps (ISO-8601 strings or datetimes) become microseconds since
    the epoch; naive timestamps are read as UTC.
    """

    if isinstance(value, bool):
        raise EventValidationError(f"Ordering marker must not be a boolean: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise EventValidationError(f"Ordering marker must be >= 0: {value!r}")
        return value
    if isinstance(value, datetime):
        return _timestamp_marker(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise EventValidationError("Ordering marker is empty.")
        if text.isdigit():
            return int(text)
        if text.endswith(("Z", "z")):
            text = f"{text[:-1]}+00:00"
        try:
            return _timestamp_marker(datetime.fromisoformat(text))
        except ValueError as error:
            raise EventValidationError(f"Unparseable ordering marker: {value!r}") from error
    raise EventValidationError(f"Unsupported ordering marker type: {type(value).__name__}")


def _timestamp_marker(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return (value - _EPOCH) // _MICROSECOND


class OrderingGate:
    """Accepts inbound lifecycle events and commits fresh generations."""

    def __init__(self, repository: EntityRepository) -> None:
        self.repository = repository

    def accept(
        self,
        key: str,
        ordering_marker: object,
        correlation_token: str | None = None,
        *,
        reference: ObjectReference | None = None,
    ) -> Fresh | Stale:
        """Decide freshness and, when fresh, commit the new generation first."""

        marker = parse_ordering_marker(ordering_marker)
        _validate_key(key)
        current = self.repository.get_entity(key)
        if current is not None and marker <= current.ordering_marker:
            resume_generation_id = None
            if (
                marker == current.ordering_marker
                and current.task_state == EntityTaskState.LAUNCHING
            ):
                resume_generation_id = current.generation_id
            logger.debug(
                "Stale event for %s: marker=%d stored=%d resume=%s",
                key,
                marker,
                current.ordering_marker,
                resume_generation_id,
            )
            return Stale(
                ordering_marker=marker,
                stored_marker=current.ordering_marker,
                resume_generation_id=resume_generation_id,
            )

        generation_id = uuid4().hex
        committed = self.repository.upsert_fresh(
            key=key,
            ordering_marker=marker,
            generation_id=generation_id,
            reference=reference or ObjectReference(key=key),
            correlation_token=correlation_token,
        )
        if not committed:
            latest = self.repository.get_entity(key)
            logger.debug("Lost freshness race for %s at marker=%d", key, marker)
            return Stale(
                ordering_marker=marker,
                stored_marker=latest.ordering_marker if latest is not None else None,
            )
        logger.info("Fresh event for %s: marker=%d generation=%s", key, marker, generation_id)
        return Fresh(generation_id=generation_id, ordering_marker=marker)

    def accept_deletion(self, key: str, ordering_marker: object) -> DeleteFresh | Stale:
        """Deletion is fresh only when it is newer than an existing row."""

        marker = parse_ordering_marker(ordering_marker)
        _validate_key(key)
        current = self.repository.get_entity(key)
        if current is None or marker <= current.ordering_marker:
            return Stale(
                ordering_marker=marker,
                stored_marker=current.ordering_marker if current is not None else None,
            )
        return DeleteFresh(
            generation_id=current.generation_id,
            ordering_marker=marker,
            stored_marker=current.ordering_marker,
        )


def _validate_key(key: str) -> None:
    try:
        split_entity_key(key)
    except ValueError as error:
        raise EventValidationError(str(error)) from error
