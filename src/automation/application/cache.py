"""
Active Rule Snapshot Cache
==========================

Read-through cache of active rules for the orchestrator.

Each evaluation pass works on one immutable tuple of rules, so a management
edit that lands mid-pass never changes the rule list that pass iterates.
Mutations call `invalidate()`; the next pass reloads from the store.
"""

import asyncio
import time
from typing import Optional, Tuple

from src.automation.application.services import IRuleCache, IRuleRepository
from src.automation.domain import AutomationRule
from src.shared.infrastructure.logging import get_logger


logger = get_logger(__name__)


class RuleSnapshotCache(IRuleCache):
    """
    Versioned snapshot of active rules ordered by execution_order.

    Args:
        rule_repository: Rule store to load from
        ttl_seconds: Max age of a snapshot before reload (0 = until invalidated)
    """

    def __init__(self, rule_repository: IRuleRepository, ttl_seconds: int = 0):
        self._rule_repo = rule_repository
        self._ttl_seconds = ttl_seconds
        self._snapshot: Optional[Tuple[AutomationRule, ...]] = None
        self._loaded_at = 0.0
        self._version = 0
        self._lock = asyncio.Lock()

    @property
    def version(self) -> int:
        return self._version

    def invalidate(self) -> None:
        self._version += 1
        self._snapshot = None

    async def get_active_rules(self) -> Tuple[AutomationRule, ...]:
        snapshot = self._snapshot
        if snapshot is not None and not self._expired():
            return snapshot

        async with self._lock:
            if self._snapshot is not None and not self._expired():
                return self._snapshot

            version = self._version
            rules = await self._rule_repo.list_active()
            loaded = tuple(sorted(
                (r for r in rules if r.is_active),
                key=lambda r: (r.execution_order, r.created_at)
            ))

            # An invalidation during the load means this result may be stale;
            # serve it to the current caller but do not keep it.
            if version == self._version:
                self._snapshot = loaded
                self._loaded_at = time.monotonic()

            logger.debug(
                "Active rule snapshot loaded",
                extra={"rule_count": len(loaded), "snapshot_version": version}
            )
            return loaded

    def _expired(self) -> bool:
        if self._ttl_seconds <= 0:
            return False
        return time.monotonic() - self._loaded_at > self._ttl_seconds
