"""Closed-trade records extracted from an MT4 statement."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

TradeSide = str  # "buy" | "sell"

SIDES = ("buy", "sell")


@dataclass(frozen=True)
class Trade:
    ticket: str
    open_time_raw: str
    type: TradeSide
    size: float
    item: str
    open_price: float
    close_time_raw: str
    close_price: float
    profit: float


@dataclass
class TradeGroups:
    """Trades of one instrument split by outcome."""

    winners: List[Trade] = field(default_factory=list)
    breakeven: List[Trade] = field(default_factory=list)
    losers: List[Trade] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.winners) + len(self.breakeven) + len(self.losers)
