"""
Fire-and-forget side effects of approval transitions.

The approval workflow only observes its own local commit; follow-up work
(pushing to the CRM, creating a visit's companion task) is handed to the
Celery ``sync`` queue.  Dispatch failures are logged and never raised.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod

from connectors.models import SyncEntity

logger = logging.getLogger(__name__)


class SideEffectDispatcher(ABC):
    """Schedules background work after a state change."""

    @abstractmethod
    def schedule_push(self, entity: SyncEntity, record_id: uuid.UUID) -> None:
        pass

    @abstractmethod
    def schedule_companion_task(self, visit_target_id: uuid.UUID, actor_id: uuid.UUID) -> None:
        pass


class CelerySideEffectDispatcher(SideEffectDispatcher):
    """Dispatches side effects as Celery tasks on the ``sync`` queue."""

    def schedule_push(self, entity: SyncEntity, record_id: uuid.UUID) -> None:
        from workers.tasks.sync import push_record

        try:
            push_record.apply_async(args=[str(entity), str(record_id)], queue="sync")
        except Exception as exc:
            logger.error(
                "[SideEffects] Failed to schedule push for %s %s: %s",
                entity, record_id, exc,
                extra={"entity": str(entity), "record_id": str(record_id)},
            )
            return
        logger.info("[SideEffects] Scheduled push for %s %s", entity, record_id)

    def schedule_companion_task(self, visit_target_id: uuid.UUID, actor_id: uuid.UUID) -> None:
        from workers.tasks.sync import ensure_companion_task

        try:
            ensure_companion_task.apply_async(
                args=[str(visit_target_id), str(actor_id)], queue="sync"
            )
        except Exception as exc:
            logger.error(
                "[SideEffects] Failed to schedule companion task for visit target %s: %s",
                visit_target_id, exc,
                extra={"visit_target_id": str(visit_target_id)},
            )
            return
        logger.info(
            "[SideEffects] Scheduled companion task for visit target %s", visit_target_id
        )
