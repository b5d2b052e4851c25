import logging
import re
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

import asyncpg

from strategy.models import INACTIVE_STATUSES, Execution, MarketType, to_decimal


logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$')

DEFAULT_TABLES = {
    'executions_table': 'grid_executions',
    'triggers_table': 'btc_price_triggers',
    'levels_table': 'gaussian_triggers',
    'level_hits_table': 'gaussian_triggers_triggered',
}


def _identifier(name: str, key: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid identifier for {key}: {name!r}")
    return name


def table_name(tables: Mapping[str, Any], key: str) -> str:
    return _identifier(str(tables.get(key) or DEFAULT_TABLES[key]), key)


def market_column(tables: Mapping[str, Any]) -> Optional[str]:
    """Market column of the executions table; an explicit null disables the market filter."""
    column = tables.get('market_column', 'market')
    return _identifier(str(column), 'market_column') if column else None


class ExecutionStore:
    """Read side of the backing store: executions and stored grid levels."""

    def __init__(self, db_config: Mapping[str, Any], tables: Optional[Mapping[str, Any]] = None):
        self.db_config = dict(db_config or {})
        self.tables = dict(tables or {})
        self.executions_table = table_name(self.tables, 'executions_table')
        self.levels_table = table_name(self.tables, 'levels_table')
        self.status_column = _identifier(str(self.tables.get('status_column') or 'status'), 'status_column')
        self.market_column = market_column(self.tables)
        self.pool: Optional[asyncpg.Pool] = None

    def _connect_kwargs(self) -> Dict[str, Any]:
        cfg = self.db_config
        return {
            'host': cfg.get('host') or None,
            'port': int(cfg.get('port') or 5432),
            'database': cfg.get('database'),
            'user': cfg.get('user'),
            'password': cfg.get('password') or None,
        }

    async def initialize(self):
        if self.pool is not None:
            return
        self.pool = await asyncpg.create_pool(
            **self._connect_kwargs(),
            min_size=int(self.db_config.get('min_pool_size', 1)),
            max_size=int(self.db_config.get('max_pool_size', 5)),
        )

    async def close(self):
        pool, self.pool = self.pool, None
        if pool:
            await pool.close()

    async def listen_connection(self) -> asyncpg.Connection:
        """Dedicated connection for LISTEN; pooled connections are reset on release."""
        return await asyncpg.connect(**self._connect_kwargs())

    async def load_active_executions(self, market: MarketType) -> List[Execution]:
        inactive = ', '.join(f"'{status}'" for status in sorted(INACTIVE_STATUSES))
        query = f"SELECT * FROM {self.executions_table} WHERE {self.status_column} NOT IN ({inactive})"
        args = []
        if self.market_column:
            query += f" AND {self.market_column} = $1"
            args.append(market.value)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *args)

        executions: List[Execution] = []
        for row in rows:
            try:
                executions.append(Execution.from_record(dict(row)))
            except (KeyError, ValueError) as exc:
                logger.warning("Skipping malformed execution row %s: %s", row.get('id'), exc)
        if not executions:
            logger.info("No active executions found for market type %s.", market.value)
        return executions

    async def fetch_active_levels(self, execution_id: int) -> List[Decimal]:
        query = (
            f"SELECT price FROM {self.levels_table} "
            "WHERE grid_execution_id = $1 AND current_status = 'active'"
        )
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, execution_id)
        return sorted(to_decimal(row['price']) for row in rows)

    async def fetch_levels_for(self, execution_ids: Iterable[int]) -> Dict[int, List[Decimal]]:
        ids = list(execution_ids)
        levels: Dict[int, List[Decimal]] = {execution_id: [] for execution_id in ids}
        if not ids:
            return levels
        query = (
            f"SELECT grid_execution_id, price FROM {self.levels_table} "
            "WHERE grid_execution_id = ANY($1::bigint[]) AND current_status = 'active'"
        )
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, ids)
        for row in rows:
            levels.setdefault(int(row['grid_execution_id']), []).append(to_decimal(row['price']))
        for values in levels.values():
            values.sort()
        return levels
