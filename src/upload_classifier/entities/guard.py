"""Result application guard for task completions."""

from __future__ import annotations

import logging

from upload_classifier.entities.locks import KeyedLocks
from upload_classifier.entities.models import Applied, DroppedStale, EntityTaskState, Outcome
from upload_classifier.entities.repository import EntityRepository

logger = logging.getLogger(__name__)


class ResultApplicationGuard:
    """Writes completions only while their generation is still current."""

    def __init__(self, repository: EntityRepository, *, locks: KeyedLocks | None = None) -> None:
        self.repository = repository
        self.locks = locks or KeyedLocks()

    def apply_outcome(
        self,
        key: str,
        generation_id: str,
        outcome: Outcome,
    ) -> Applied | DroppedStale:
        with self.locks.hold(key):
            if self.repository.apply_outcome(
                key=key,
                generation_id=generation_id,
                outcome=outcome,
            ):
                task_state = EntityTaskState.FAILED if outcome.is_error else EntityTaskState.APPLIED
                logger.info(
                    "Applied outcome for %s generation=%s state=%s",
                    key,
                    generation_id,
                    task_state.value,
                )
                return Applied(generation_id=generation_id, task_state=task_state)

            current = self.repository.get_entity(key)
            current_generation_id = current.generation_id if current is not None else None
            logger.info(
                "Dropped stale completion for %s generation=%s current=%s",
                key,
                generation_id,
                current_generation_id,
            )
            self.repository.add_entity_event(
                key=key,
                event_type="completion_dropped",
                generation_id=generation_id,
                details={"current_generation_id": current_generation_id},
            )
            return DroppedStale(
                generation_id=generation_id,
                current_generation_id=current_generation_id,
            )
