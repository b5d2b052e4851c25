import logging
from decimal import Decimal
from typing import List, Optional

from api.metrics import metrics
from .crossing_detector import CrossingDetector
from .execution_registry import ExecutionRegistry
from .models import Trigger


logger = logging.getLogger(__name__)


class TriggerEngine:
    """
    Tick-path state: the previous price plus the registry it evaluates against.

    ``process_price`` is synchronous and never awaits, so a tick is evaluated
    against one consistent view of the registry. A mutation applied between two
    ticks is visible from the next tick on.
    """

    def __init__(self, registry: ExecutionRegistry, detector: Optional[CrossingDetector] = None):
        self.registry = registry
        self.detector = detector or CrossingDetector()
        self.last_price: Optional[Decimal] = None

    def process_price(self, price: Decimal) -> List[Trigger]:
        metrics.record_tick(float(price))
        if self.last_price is None:
            self.last_price = price
            logger.info("Initializing last price: %s", price)
            return []

        previous = self.last_price
        self.last_price = price
        if previous == price:
            return []

        triggers: List[Trigger] = []
        for execution in self.registry.all_active():
            levels = self.registry.nodes.get(execution.id)
            for crossing in self.detector.detect(previous, price, levels):
                metrics.record_crossing(crossing.direction.value)
                if not self.registry.dedup.accept(execution.id, crossing.level, crossing.direction):
                    metrics.record_suppressed()
                    logger.debug(
                        "Repeat %s crossing suppressed: exec=%s node=%s",
                        crossing.direction.value,
                        execution.id,
                        crossing.level,
                    )
                    continue
                logger.info(
                    "Crossed %s: exec=%s node=%s price %s -> %s",
                    crossing.direction.value,
                    execution.id,
                    crossing.level,
                    previous,
                    price,
                )
                triggers.append(
                    Trigger(
                        execution_id=execution.id,
                        level=crossing.level,
                        direction=crossing.direction,
                        price_at_cross=price,
                        owner_id=execution.owner_id,
                        symbol=execution.symbol,
                    )
                )
        return triggers

    def reset_price(self) -> None:
        self.last_price = None
