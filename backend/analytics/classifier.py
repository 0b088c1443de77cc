from __future__ import annotations

from typing import Dict, List, Sequence

import numpy as np
import pandas as pd

from .timekeeping import DEFAULT_CLOCK, ClockConfig, to_absolute_instant
from .trades import Trade, TradeGroups

# ---------------------------------------------------------------------
# Outcome buckets per instrument:
#   winners    profit >  tolerance
#   breakeven  -tolerance <= profit <= tolerance
#   losers     profit < -tolerance
# Duplicate winners (same open time + open price) collapse into the
# most profitable one.
# ---------------------------------------------------------------------

DEDUPE_KEY = ["open_time_raw", "open_price"]


def _frame(trades: Sequence[Trade], clock: ClockConfig) -> pd.DataFrame:
    """One row per trade, indexed by the trade's position in ``trades``."""
    return pd.DataFrame(
        {
            "item": [t.item for t in trades],
            "open_time_raw": [t.open_time_raw for t in trades],
            "open_price": [t.open_price for t in trades],
            "profit": [t.profit for t in trades],
            "open_instant": pd.to_datetime(
                [to_absolute_instant(t.open_time_raw, clock) for t in trades], utc=True
            ),
        }
    )


def sort_by_open(trades: Sequence[Trade], clock: ClockConfig = DEFAULT_CLOCK) -> List[Trade]:
    """Stable sort by true (UTC) open instant."""
    trades = list(trades)
    if not trades:
        return []
    order = _frame(trades, clock).sort_values("open_instant", kind="stable").index
    return [trades[i] for i in order]


def dedupe_winners(winners: Sequence[Trade], clock: ClockConfig = DEFAULT_CLOCK) -> List[Trade]:
    """Keep the highest-profit winner per (open time, open price), ordered by open instant.

    On equal profit the earlier entry wins.
    """
    winners = list(winners)
    if not winners:
        return []

    df = _frame(winners, clock)
    best = df.sort_values("profit", ascending=False, kind="stable").drop_duplicates(DEDUPE_KEY, keep="first")
    kept = df[df.index.isin(best.index)].sort_values("open_instant", kind="stable")
    return [winners[i] for i in kept.index]


def classify_trades(
    trades: Sequence[Trade],
    tolerance: float = 0.0,
    clock: ClockConfig = DEFAULT_CLOCK,
) -> Dict[str, TradeGroups]:
    """Group trades by item into winners / breakeven / losers.

    Returns an empty dict when there is nothing to classify. Raises
    MalformedTimestamp if any open time can't be read.
    """
    if tolerance < 0:
        raise ValueError(f"Break-even tolerance must be >= 0, got {tolerance}")

    trades = sort_by_open(trades, clock)
    if not trades:
        return {}

    df = _frame(trades, clock)
    df["outcome"] = np.select(
        [df["profit"] > tolerance, df["profit"] < -tolerance],
        ["winners", "losers"],
        default="breakeven",
    )

    grouped: Dict[str, TradeGroups] = {}
    for item, rows in df.groupby("item", sort=False):
        groups = TradeGroups()
        for outcome, bucket in rows.groupby("outcome", sort=False):
            setattr(groups, outcome, [trades[i] for i in bucket.index])
        groups.winners = dedupe_winners(groups.winners, clock)
        grouped[item] = groups

    return grouped
