import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional


logger = logging.getLogger(__name__)

INACTIVE_STATUSES = frozenset({'stopped', 'paused'})


class Direction(Enum):
    ABOVE = "ABOVE"
    BELOW = "BELOW"


class MarketType(Enum):
    MARGIN = "margin"
    FUTURE = "future"

    @classmethod
    def from_config(cls, raw: Optional[str]) -> 'MarketType':
        """Resolve the configured market selector, never raising."""
        if raw is None or str(raw).strip() == '':
            logger.warning("market_type not found in config, defaulting to %s", cls.MARGIN.value)
            return cls.MARGIN
        value = str(raw).strip().lower()
        for member in cls:
            if member.value == value:
                return member
        logger.warning("Unknown market_type %r, defaulting to %s", raw, cls.FUTURE.value)
        return cls.FUTURE


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal(0)
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a number: {value!r}") from exc


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            logger.debug("Unparseable created_at %r, using now", value)
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Execution:
    """One grid strategy row from the executions table."""

    id: int
    symbol: str
    lower_bound: Decimal
    upper_bound: Decimal
    interval_size: Decimal
    trade_amount: Decimal = Decimal(0)
    reference_price: Decimal = Decimal(0)
    owner_id: str = ''
    status: str = 'stopped'
    market: str = 'spot'
    margin_mode: str = 'isolated'
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc), compare=False)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> 'Execution':
        if record.get('id') is None:
            raise ValueError("execution record without id")
        status = record.get('status') or record.get('current_status') or 'stopped'
        return cls(
            id=int(record['id']),
            symbol=str(record.get('symbol') or ''),
            lower_bound=to_decimal(record.get('lower_limit')),
            upper_bound=to_decimal(record.get('upper_limit')),
            interval_size=to_decimal(record.get('interval_size')),
            trade_amount=to_decimal(record.get('trade_amount')),
            reference_price=to_decimal(record.get('sample_trade_price')),
            owner_id=str(record.get('user_id') or ''),
            status=str(status).lower(),
            market=str(record.get('market') or 'spot').lower(),
            margin_mode=str(record.get('margin_mode') or 'isolated'),
            created_at=_parse_timestamp(record.get('created_at')),
        )

    def is_active_for(self, market: MarketType, match_market: bool = True) -> bool:
        if self.status in INACTIVE_STATUSES:
            return False
        return not match_market or self.market == market.value


@dataclass(frozen=True)
class Crossing:
    level: Decimal
    direction: Direction


@dataclass
class Trigger:
    """A detected and accepted level crossing, ready to persist."""

    execution_id: int
    level: Decimal
    direction: Direction
    price_at_cross: Decimal
    owner_id: str
    symbol: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_record(self) -> Dict[str, Any]:
        return {
            'user_id': self.owner_id,
            'symbol': self.symbol,
            'trigger_type': self.direction.value,
            'trigger_price': float(self.price_at_cross),
            'execution_id': self.execution_id,
            'trigger_node': str(self.level),
        }
