import logging
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .dedup_guard import DedupGuard
from .grid_math import MAX_LEVELS, GridTooDenseError, compute_nodes
from .models import Execution, MarketType
from .node_cache import NodeCache


logger = logging.getLogger(__name__)


class RegistryChange(Enum):
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"
    IGNORED = "ignored"


class ExecutionRegistry:
    """
    Active executions for one market, with their grid levels and dedup state.

    Every add, replace or removal goes through here so the NodeCache and the
    DedupGuard never drift from the execution set. Levels are computed from
    the execution bounds unless the caller supplies them (stored-level mode).
    With ``match_market`` off, executions are filtered by status alone, for
    tables that carry no market column.
    """

    def __init__(
        self,
        market: MarketType,
        node_cache: Optional[NodeCache] = None,
        dedup: Optional[DedupGuard] = None,
        max_levels: int = MAX_LEVELS,
        match_market: bool = True,
    ):
        self.market = market
        self.match_market = match_market
        self.nodes = node_cache if node_cache is not None else NodeCache()
        self.dedup = dedup if dedup is not None else DedupGuard()
        self.max_levels = max_levels
        self._executions: Dict[int, Execution] = {}

    def is_active(self, execution: Execution) -> bool:
        return execution.is_active_for(self.market, self.match_market)

    def get(self, execution_id: int) -> Optional[Execution]:
        return self._executions.get(execution_id)

    def all_active(self) -> List[Execution]:
        return list(self._executions.values())

    def __contains__(self, execution_id: int) -> bool:
        return execution_id in self._executions

    def __len__(self) -> int:
        return len(self._executions)

    def load_all(
        self,
        snapshot: Iterable[Execution],
        levels_by_id: Optional[Mapping[int, Sequence[Decimal]]] = None,
    ) -> int:
        """Replace the registry with the active part of ``snapshot``.

        Executions identical to the cached definition keep their levels and
        dedup state; everything else is recomputed. Returns the active count.
        """
        incoming: Dict[int, Execution] = {}
        for execution in snapshot:
            if self.is_active(execution):
                incoming[execution.id] = execution
            else:
                logger.debug("Snapshot execution %s skipped (inactive or foreign market)", execution.id)

        for execution_id in list(self._executions):
            if execution_id not in incoming:
                self._drop(execution_id)

        for execution_id, execution in incoming.items():
            levels = levels_by_id.get(execution_id, []) if levels_by_id is not None else None
            if self._unchanged(execution, levels):
                continue
            self._store(execution, levels)

        logger.info(
            "Loaded %s active executions for market %s", len(self._executions), self.market.value
        )
        return len(self._executions)

    def upsert(self, execution: Execution, levels: Optional[Sequence[Decimal]] = None) -> RegistryChange:
        was_present = execution.id in self._executions
        if not self.is_active(execution):
            if was_present:
                self._drop(execution.id)
                logger.info("Execution removed due to market/status change: %s", execution.id)
                return RegistryChange.REMOVED
            logger.info("Execution skipped (wrong market or stopped/paused): %s", execution.id)
            return RegistryChange.IGNORED

        self._store(execution, levels)
        logger.info(
            "Execution %s: %s (%s levels)",
            'updated' if was_present else 'added',
            execution.id,
            len(self.nodes.get(execution.id)),
        )
        return RegistryChange.UPDATED if was_present else RegistryChange.ADDED

    def remove(self, execution_id: int, market: Optional[str] = None) -> bool:
        """Drop an execution unless the removal belongs to another market.

        ``market`` is the market column of the deleted row; when it is absent
        the id alone decides, since only this market's executions are held.
        """
        if self.match_market and market is not None and str(market).lower() != self.market.value:
            logger.debug("Ignoring removal of %s for foreign market %s", execution_id, market)
            return False
        if execution_id not in self._executions:
            return False
        self._drop(execution_id)
        logger.info("Execution removed: %s", execution_id)
        return True

    def set_levels(self, execution_id: int, levels: Sequence[Decimal]) -> bool:
        """Replace the stored levels of an active execution and reset its dedup state."""
        if execution_id not in self._executions:
            return False
        self.nodes.set(execution_id, levels)
        self.dedup.clear_execution(execution_id)
        return True

    def _unchanged(self, execution: Execution, levels: Optional[Sequence[Decimal]]) -> bool:
        current = self._executions.get(execution.id)
        if current is None or current != execution:
            return False
        if levels is not None and self.nodes.get(execution.id) != sorted(set(levels)):
            return False
        return True

    def _store(self, execution: Execution, levels: Optional[Sequence[Decimal]]) -> None:
        if levels is None:
            levels = self._compute_levels(execution)
        self._executions[execution.id] = execution
        self.nodes.set(execution.id, levels)
        self.dedup.clear_execution(execution.id)

    def _compute_levels(self, execution: Execution) -> List[Decimal]:
        try:
            return compute_nodes(
                execution.lower_bound,
                execution.upper_bound,
                execution.interval_size,
                max_levels=self.max_levels,
            )
        except GridTooDenseError as exc:
            logger.warning("Execution %s has no usable grid: %s", execution.id, exc)
            return []

    def _drop(self, execution_id: int) -> None:
        self._executions.pop(execution_id, None)
        self.nodes.discard(execution_id)
        self.dedup.clear_execution(execution_id)
