from decimal import Decimal, ROUND_FLOOR
from typing import Any, List

from .models import to_decimal

MAX_LEVELS = 1_000_000


class GridTooDenseError(ValueError):
    pass


def compute_nodes(lower: Any, upper: Any, interval: Any, max_levels: int = MAX_LEVELS) -> List[Decimal]:
    """
    Grid levels for one execution, ascending and inclusive of both bounds.

    Levels are rebuilt per index as ``lower + k * interval`` in Decimal, so the
    result does not depend on accumulated rounding. Bounds may arrive in
    either order. A non-positive interval yields no levels; a grid with more
    than ``max_levels`` steps raises GridTooDenseError.
    """
    lower = to_decimal(lower)
    upper = to_decimal(upper)
    interval = to_decimal(interval)
    if interval <= 0:
        return []

    if lower > upper:
        lower, upper = upper, lower

    steps = int(((upper - lower) / interval).to_integral_value(rounding=ROUND_FLOOR))
    if steps > max_levels:
        raise GridTooDenseError(
            f"{steps} steps between {lower} and {upper} at interval {interval}"
        )
    nodes = [lower + interval * k for k in range(steps + 1)]

    # Division inexact at the context precision can overshoot by one step.
    while nodes and nodes[-1] > upper:
        nodes.pop()

    if not nodes or nodes[-1] != upper:
        nodes.append(upper)
    return nodes
