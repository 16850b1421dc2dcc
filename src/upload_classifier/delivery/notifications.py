"""Object-store lifecycle notifications: parsing and validation."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from upload_classifier.entities.gate import parse_ordering_marker
from upload_classifier.entities.models import ObjectReference
from upload_classifier.errors import EventValidationError

NAME_PATTERN = re.compile(r"^[A-Za-z_-]+$")
TENANT_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class NotificationAction(str, Enum):
    """Object-store actions the adapter understands."""

    PUT_OBJECT = "PutObject"
    COPY_OBJECT = "CopyObject"
    COMPLETE_MULTIPART_UPLOAD = "CompleteMultipartUpload"
    DELETE_OBJECT = "DeleteObject"
    LIFECYCLE_DELETION = "LifecycleDeletion"

    @property
    def is_deletion(self) -> bool:
        return self in {NotificationAction.DELETE_OBJECT, NotificationAction.LIFECYCLE_DELETION}


@dataclass(slots=True, frozen=True)
class InboundEvent:
    """Validated lifecycle event for one entity."""

    key: str
    tenant_id: str
    name: str
    action: NotificationAction
    ordering_marker: int
    reference: ObjectReference
    correlation_token: str | None = None
    bucket: str | None = None
    account: str | None = None

    @property
    def is_deletion(self) -> bool:
        return self.action.is_deletion


def parse_notification(message: Mapping[str, Any] | str | bytes) -> InboundEvent:
    """Validate a raw notification; anything malformed raises EventValidationError."""

    data = _load(message)
    raw_action = data.get("action")
    try:
        action = NotificationAction(raw_action)
    except ValueError as error:
        raise EventValidationError(f"Unsupported notification action: {raw_action!r}") from error

    obj = data.get("object")
    if not isinstance(obj, Mapping):
        raise EventValidationError("Notification is missing the object block.")
    key = obj.get("key")
    if not isinstance(key, str):
        raise EventValidationError("Notification object key must be a string.")
    tenant_id, name = _split_object_key(key)

    if "eventTime" not in data:
        raise EventValidationError("Notification is missing eventTime.")
    ordering_marker = parse_ordering_marker(data["eventTime"])

    size = obj.get("size")
    if size is not None and (isinstance(size, bool) or not isinstance(size, int) or size < 0):
        raise EventValidationError(f"Object size must be a non-negative integer: {size!r}")
    etag = obj.get("eTag")
    correlation_token = data.get("correlationId") or etag
    return InboundEvent(
        key=key,
        tenant_id=tenant_id,
        name=name,
        action=action,
        ordering_marker=ordering_marker,
        reference=ObjectReference(
            key=key,
            size=size,
            etag=etag if isinstance(etag, str) else None,
        ),
        correlation_token=correlation_token if isinstance(correlation_token, str) else None,
        bucket=_optional_str(data.get("bucket")),
        account=_optional_str(data.get("account")),
    )


def _load(message: Mapping[str, Any] | str | bytes) -> Mapping[str, Any]:
    if isinstance(message, str | bytes):
        try:
            message = json.loads(message)
        except ValueError as error:
            raise EventValidationError(f"Notification is not valid JSON: {error}") from error
    if not isinstance(message, Mapping):
        raise EventValidationError("Notification must be a JSON object.")
    return message


def _split_object_key(key: str) -> tuple[str, str]:
    tenant_id, separator, name = key.partition("/")
    if not separator or not TENANT_PATTERN.fullmatch(tenant_id):
        raise EventValidationError(f"Object key must look like <tenant_id>/<name>: {key!r}")
    if not NAME_PATTERN.fullmatch(name):
        raise EventValidationError(f"Invalid object name in key {key!r}: expected [A-Za-z_-]+")
    return tenant_id, name


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) and value else None
