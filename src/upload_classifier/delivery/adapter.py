"""Delivery boundary: turn notifications into gate/controller calls and ack decisions.

A message is acknowledged only when the whole fresh path (or a confirmed
stale no-op) finished without an exception. Validation failures are
acknowledged too, since redelivering them can never succeed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from upload_classifier.delivery.notifications import InboundEvent, parse_notification
from upload_classifier.entities.gate import OrderingGate
from upload_classifier.entities.locks import KeyedLocks
from upload_classifier.entities.models import DeleteFresh, Fresh
from upload_classifier.entities.repository import EntityRepository
from upload_classifier.errors import (
    EventValidationError,
    InvariantViolation,
    TransientInfrastructureError,
)
from upload_classifier.objectstore import LocalObjectStore
from upload_classifier.runtime.lifecycle import TaskLifecycleController
from upload_classifier.runtime.models import TaskPayload

logger = logging.getLogger(__name__)

NotificationMessage = Mapping[str, Any] | str | bytes


class ProcessOutcome(str, Enum):
    """How an accepted event was handled."""

    LAUNCHED = "launched"
    RESUMED = "resumed"
    STALE = "stale"
    DELETED = "deleted"


@dataclass(slots=True, frozen=True)
class DeliveryDecision:
    """Acknowledgement verdict for one delivered message."""

    ack: bool
    outcome: ProcessOutcome | None = None
    error: str | None = None


class UploadEventProcessor:
    """Runs one validated event through gate and controller, serialized per key."""

    def __init__(
        self,
        *,
        entities: EntityRepository,
        controller: TaskLifecycleController,
        object_store: LocalObjectStore,
        locks: KeyedLocks,
    ) -> None:
        self.entities = entities
        self.gate = OrderingGate(entities)
        self.controller = controller
        self.object_store = object_store
        self.locks = locks

    def process(self, event: InboundEvent) -> ProcessOutcome:
        with self.locks.hold(event.key):
            if event.is_deletion:
                return self._process_deletion(event)
            return self._process_upload(event)

    def _process_upload(self, event: InboundEvent) -> ProcessOutcome:
        if not self.object_store.exists(event.reference.key):
            raise EventValidationError(f"Referenced object is missing: {event.reference.key}")

        decision = self.gate.accept(
            event.key,
            event.ordering_marker,
            event.correlation_token,
            reference=event.reference,
        )
        if isinstance(decision, Fresh):
            generation_id = decision.generation_id
            outcome = ProcessOutcome.LAUNCHED
        elif decision.resume_generation_id is not None:
            logger.info(
                "Resuming unconfirmed launch of %s generation=%s",
                event.key,
                decision.resume_generation_id,
            )
            generation_id = decision.resume_generation_id
            outcome = ProcessOutcome.RESUMED
        else:
            return ProcessOutcome.STALE

        self.controller.reset_and_launch(
            event.key,
            generation_id,
            TaskPayload(
                entity_key=event.key,
                generation_id=generation_id,
                object_key=event.reference.key,
                correlation_token=event.correlation_token,
            ),
        )
        return outcome

    def _process_deletion(self, event: InboundEvent) -> ProcessOutcome:
        decision = self.gate.accept_deletion(event.key, event.ordering_marker)
        if not isinstance(decision, DeleteFresh):
            return ProcessOutcome.STALE
        self.controller.cancel_for_entity(event.key)
        if not self.entities.delete_entity(key=event.key, ordering_marker=event.ordering_marker):
            return ProcessOutcome.STALE
        logger.info("Deleted %s at marker=%d", event.key, event.ordering_marker)
        return ProcessOutcome.DELETED


class DeliveryAdapter:
    """Maps processing results and errors onto acknowledgement decisions."""

    def __init__(self, processor: UploadEventProcessor) -> None:
        self.processor = processor

    def handle(self, message: NotificationMessage) -> DeliveryDecision:
        event: InboundEvent | None = None
        try:
            event = parse_notification(message)
            outcome = self.processor.process(event)
        except EventValidationError as error:
            logger.warning("Rejected notification: %s", error)
            if event is not None:
                self.processor.entities.add_entity_event(
                    key=event.key,
                    event_type="upload_rejected",
                    details={"error": str(error), "action": event.action.value},
                )
            return DeliveryDecision(ack=True, error=str(error))
        except InvariantViolation as error:
            logger.error("Invariant violation, withholding ack for redelivery: %s", error)
            return DeliveryDecision(ack=False, error=str(error))
        except TransientInfrastructureError as error:
            logger.warning("Transient failure, withholding ack for redelivery: %s", error)
            return DeliveryDecision(ack=False, error=str(error))
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected failure while processing notification")
            return DeliveryDecision(ack=False, error=f"{type(error).__name__}: {error}")

        logger.debug("Processed %s %s: %s", event.action.value, event.key, outcome.value)
        return DeliveryDecision(ack=True, outcome=outcome)

    def handle_batch(self, messages: Iterable[NotificationMessage]) -> list[DeliveryDecision]:
        return [self.handle(message) for message in messages]
