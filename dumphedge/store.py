# dumphedge/store.py
import os
from typing import Dict, List, Optional

import aiofiles
from aiocsv import AsyncDictReader

from .logger import AsyncAuditLogger
from .models import CycleStatus, LegInfo, Side, TradeCycle

LEG_FIELDS = ["order_id", "side", "shares", "entry_price", "total_cost", "filled_at"]

COLUMNS = (
    ["id", "round_slug", "status"]
    + [f"leg1_{f}" for f in LEG_FIELDS]
    + [f"leg2_{f}" for f in LEG_FIELDS]
    + ["profit", "guaranteed_profit", "created_at", "updated_at", "error"]
)


def _leg_to_row(leg: Optional[LegInfo]) -> List:
    if leg is None:
        return [""] * len(LEG_FIELDS)
    return [leg.order_id, leg.side.value, leg.shares, leg.entry_price, leg.total_cost, leg.filled_at]


def _leg_from_row(row: Dict[str, str], prefix: str) -> Optional[LegInfo]:
    if not row.get(f"{prefix}_order_id"):
        return None
    return LegInfo(
        order_id=row[f"{prefix}_order_id"],
        side=Side(row[f"{prefix}_side"]),
        shares=float(row[f"{prefix}_shares"]),
        entry_price=float(row[f"{prefix}_entry_price"]),
        total_cost=float(row[f"{prefix}_total_cost"]),
        filled_at=float(row[f"{prefix}_filled_at"]),
    )


def _opt_float(value: str) -> Optional[float]:
    return float(value) if value not in ("", None) else None


def cycle_to_row(cycle: TradeCycle) -> List:
    return (
        [cycle.id, cycle.round_slug, cycle.status.value]
        + _leg_to_row(cycle.leg1)
        + _leg_to_row(cycle.leg2)
        + [
            "" if cycle.profit is None else cycle.profit,
            "" if cycle.guaranteed_profit is None else cycle.guaranteed_profit,
            cycle.created_at,
            cycle.updated_at,
            cycle.error or "",
        ]
    )


def cycle_from_row(row: Dict[str, str]) -> TradeCycle:
    return TradeCycle(
        id=row["id"],
        round_slug=row["round_slug"],
        status=CycleStatus(row["status"]),
        leg1=_leg_from_row(row, "leg1"),
        leg2=_leg_from_row(row, "leg2"),
        profit=_opt_float(row["profit"]),
        guaranteed_profit=_opt_float(row["guaranteed_profit"]),
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]),
        error=row["error"] or None,
    )


class TradeStore:
    """
    Cycle persistence keyed by cycle id.
    Every checkpoint appends a full row; on load the last row per id wins,
    which makes create/update an idempotent upsert.
    """
    def __init__(self, filepath: str, logger):
        self.filepath = filepath
        self.logger = logger
        self._writer = AsyncAuditLogger(filepath, header=COLUMNS)
        self.latest: Dict[str, List] = {}

    async def start(self):
        await self._writer.start()

    async def stop(self):
        await self._writer.stop()

    async def flush(self):
        await self._writer.flush()

    def _upsert(self, cycle: TradeCycle):
        row = cycle_to_row(cycle)
        if self.latest.get(cycle.id) == row:
            return
        self.latest[cycle.id] = row
        self._writer.write(row)

    def create_trade_cycle(self, cycle: TradeCycle):
        self._upsert(cycle)

    def update_trade_cycle(self, cycle: TradeCycle):
        self._upsert(cycle)

    async def load(self) -> Dict[str, TradeCycle]:
        """Reads the file back, keeping the latest row for each cycle id."""
        cycles: Dict[str, TradeCycle] = {}
        if not os.path.exists(self.filepath):
            return cycles
        async with aiofiles.open(self.filepath, mode='r', newline='') as f:
            async for row in AsyncDictReader(f):
                try:
                    cycles[row["id"]] = cycle_from_row(row)
                except (KeyError, ValueError) as e:
                    self.logger.warning(f"Skipping malformed cycle row: {e}")
        return cycles

    async def stats(self) -> dict:
        cycles = await self.load()
        closed = [c for c in cycles.values() if c.profit is not None]
        return {
            "cycles": len(cycles),
            "completed": sum(1 for c in cycles.values() if c.status is CycleStatus.COMPLETED),
            "expired": sum(1 for c in cycles.values() if c.status is CycleStatus.ROUND_EXPIRED),
            "errors": sum(1 for c in cycles.values() if c.status is CycleStatus.ERROR),
            "total_profit": sum(c.profit for c in closed),
        }
