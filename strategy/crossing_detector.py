from decimal import Decimal
from typing import Iterable, List, Optional

from .models import Crossing, Direction


class CrossingDetector:
    """Find every level crossed between two consecutive prices."""

    def detect(
        self,
        previous_price: Optional[Decimal],
        current_price: Decimal,
        levels: Iterable[Decimal],
    ) -> List[Crossing]:
        if previous_price is None or previous_price == current_price:
            return []

        crossings: List[Crossing] = []
        # Every level is checked: a single gap tick may span several of them.
        for level in levels:
            if previous_price < level <= current_price:
                crossings.append(Crossing(level, Direction.ABOVE))
            elif previous_price > level >= current_price:
                crossings.append(Crossing(level, Direction.BELOW))

        if current_price < previous_price:
            crossings.reverse()
        return crossings
