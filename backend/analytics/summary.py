"""Per-instrument summaries handed to the API and the CLI."""

from typing import Any, Dict

from .pine import generate_script
from .timekeeping import DEFAULT_CLOCK, ClockConfig
from .trades import Trade, TradeGroups

NO_TRADES_MESSAGE = "No valid closed transactions were found in the report."


def caption(item: str, groups: TradeGroups) -> str:
    return f"{item.upper()} · {len(groups)} trades"


def _trade_row(trade: Trade) -> Dict[str, Any]:
    return {
        "ticket": trade.ticket,
        "type": trade.type,
        "open_time": trade.open_time_raw,
        "open_price": trade.open_price,
        "close_time": trade.close_time_raw,
        "close_price": trade.close_price,
        "profit": round(trade.profit, 2),
    }


def summarize_groups(grouped: Dict[str, TradeGroups], clock: ClockConfig = DEFAULT_CLOCK) -> Dict[str, Any]:
    """JSON-serializable view of the classified trades, scripts included."""
    out = {}
    for item, groups in grouped.items():
        out[item] = {
            "symbol": item.upper(),
            "caption": caption(item, groups),
            "total": len(groups),
            "counts": {
                "winners": len(groups.winners),
                "breakeven": len(groups.breakeven),
                "losers": len(groups.losers),
            },
            "winners": [_trade_row(t) for t in groups.winners],
            "breakeven": [_trade_row(t) for t in groups.breakeven],
            "losers": [_trade_row(t) for t in groups.losers],
            "script": generate_script(item, groups, clock),
        }
    return out
