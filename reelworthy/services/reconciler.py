"""Garbage collection of cached videos after a sync run."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from .store import CatalogStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReconcileOutcome:
    """Whether cleanup ran and, if it was skipped, why."""

    performed: bool
    deleted: int = 0
    reason: str | None = None


class CacheReconciler:
    """Deletes cached videos that no fully synced source still lists."""

    def __init__(self, store: CatalogStore):
        self._store = store

    async def reconcile_if_complete(
        self,
        attempted: int,
        succeeded: int,
        retained_ids: Iterable[str],
    ) -> ReconcileOutcome:
        """Prune the cache only when the retained set is known to be complete.

        A run where any source failed, or whose retained set is empty, leaves
        the cache untouched: an incomplete set must never be read as "nothing
        is valid".
        """

        retained = set(retained_ids)
        if succeeded != attempted:
            logger.warning(
                "Skipping cache cleanup: only %s of %s sources synced successfully",
                succeeded,
                attempted,
            )
            return ReconcileOutcome(performed=False, reason="partial-failure")
        if not retained:
            logger.warning(
                "Skipping cache cleanup: retained set is empty, refusing to wipe the cache"
            )
            return ReconcileOutcome(performed=False, reason="empty-retained-set")

        deleted = await self._store.delete_items_not_in(retained)
        logger.info(
            "Cache cleanup retained %s videos and deleted %s", len(retained), deleted
        )
        return ReconcileOutcome(performed=True, deleted=deleted)
