from decimal import Decimal
from typing import Dict, Iterator, List, Sequence, Tuple


class NodeCache:
    """Ascending grid levels per execution id, written only by ExecutionRegistry."""

    def __init__(self):
        self._levels: Dict[int, List[Decimal]] = {}

    def set(self, execution_id: int, levels: Sequence[Decimal]) -> None:
        self._levels[execution_id] = sorted(set(levels))

    def get(self, execution_id: int) -> List[Decimal]:
        return self._levels.get(execution_id, [])

    def discard(self, execution_id: int) -> None:
        self._levels.pop(execution_id, None)

    def items(self) -> Iterator[Tuple[int, List[Decimal]]]:
        return iter(self._levels.items())

    def __contains__(self, execution_id: int) -> bool:
        return execution_id in self._levels

    def __len__(self) -> int:
        return len(self._levels)
