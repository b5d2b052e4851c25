from decimal import Decimal
from typing import Dict, Optional, Tuple

from .models import Direction


DedupKey = Tuple[int, Decimal]


class DedupGuard:
    """
    Remembers the last direction written for each (execution, level).

    A crossing is accepted only when its direction differs from the last one
    recorded for that level. Touching the same side again without a full
    recross is suppressed.
    """

    def __init__(self):
        self._last: Dict[DedupKey, Direction] = {}

    def accept(self, execution_id: int, level: Decimal, direction: Direction) -> bool:
        key = (execution_id, level)
        if self._last.get(key) is direction:
            return False
        self._last[key] = direction
        return True

    def last_direction(self, execution_id: int, level: Decimal) -> Optional[Direction]:
        return self._last.get((execution_id, level))

    def clear_execution(self, execution_id: int) -> int:
        stale = [key for key in self._last if key[0] == execution_id]
        for key in stale:
            del self._last[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._last)
