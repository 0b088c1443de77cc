"""Pine Script v5 generation for the trades of one instrument.

Statements are built as plain records first (``Label``, ``Line``, ``Comment``)
and only turned into Pine syntax by ``render_statement``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Union

from .timekeeping import DEFAULT_CLOCK, ClockConfig, DisplayTimestamp, to_display
from .trades import Trade, TradeGroups

INDENT = "    "

HEADER = """//@version=5
indicator("{title} Trades from Report", overlay=true, scale=scale.price)

// --- INPUTS ---
var string size_tiny = "tiny"
var string size_small = "small"
var string size_normal = "normal"
var string size_large = "large"
var string size_huge = "huge"
var iconSize = input.string(size_normal, "Icon Size", options=[size_tiny, size_small, size_normal, size_large, size_huge])

if barstate.islast
"""

WINNER_STYLE, WINNER_COLOR = "diamond", "green"
BREAKEVEN_STYLE, BREAKEVEN_COLOR = "circle", "blue"
LOSER_COLOR = "red"
LOSER_STYLES = {"buy": "arrowup", "sell": "arrowdown"}


@dataclass(frozen=True)
class Comment:
    text: str


@dataclass(frozen=True)
class Label:
    at: DisplayTimestamp
    price: float
    style: str
    color: str
    tooltip: str


@dataclass(frozen=True)
class Line:
    start: DisplayTimestamp
    start_price: float
    end: DisplayTimestamp
    end_price: float
    # line.new has no tooltip argument; kept so the trade's drawings stay linked
    tooltip: str
    color: str = "white"
    transparency: int = 50
    style: str = "dotted"


Statement = Union[Comment, Label, Line]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def tooltip_for(trade: Trade) -> str:
    """Tooltip text, already escaped for a Pine string literal."""
    # "\n" here is Pine's line-break escape, not a Python newline
    return f"Ticket: {_escape(trade.ticket)}\\nType: {_escape(trade.type)}\\nProfit: {trade.profit:.2f}"


def build_statements(groups: TradeGroups, clock: ClockConfig = DEFAULT_CLOCK) -> List[Statement]:
    """Drawing statements for winners, then breakeven, then losers."""
    out: List[Statement] = []

    for trade in groups.winners:
        opened = to_display(trade.open_time_raw, clock)
        closed = to_display(trade.close_time_raw, clock)
        tip = tooltip_for(trade)
        out += [
            Comment(f"Winner: {trade.ticket}"),
            Label(opened, trade.open_price, WINNER_STYLE, WINNER_COLOR, tip),
            Label(closed, trade.close_price, WINNER_STYLE, WINNER_COLOR, tip),
            Line(opened, trade.open_price, closed, trade.close_price, tip),
        ]

    for trade in groups.breakeven:
        out += [
            Comment(f"Break Even: {trade.ticket}"),
            Label(to_display(trade.open_time_raw, clock), trade.open_price, BREAKEVEN_STYLE, BREAKEVEN_COLOR,
                  tooltip_for(trade)),
        ]

    for trade in groups.losers:
        out += [
            Comment(f"Loser: {trade.ticket}"),
            Label(to_display(trade.open_time_raw, clock), trade.open_price, LOSER_STYLES[trade.type], LOSER_COLOR,
                  tooltip_for(trade)),
        ]

    return out


def _number(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else repr(value)


def _string(escaped: str) -> str:
    return f'"{escaped}"'


def _timestamp(ts: DisplayTimestamp) -> str:
    return f"timestamp({ts.year}, {ts.month}, {ts.day}, {ts.hours}, {ts.minutes})"


def render_statement(stmt: Statement) -> str:
    """One line of Pine (without indentation)."""
    if isinstance(stmt, Comment):
        return f"// {stmt.text}"
    if isinstance(stmt, Label):
        return (
            f"label.new({_timestamp(stmt.at)}, {_number(stmt.price)}, style=label.style_{stmt.style}, "
            f"color=color.new(color.{stmt.color}, 20), textcolor=color.{stmt.color}, size=iconSize, "
            f"tooltip={_string(stmt.tooltip)}, xloc=xloc.bar_time, yloc=yloc.price)"
        )
    if isinstance(stmt, Line):
        return (
            f"line.new({_timestamp(stmt.start)}, {_number(stmt.start_price)}, "
            f"{_timestamp(stmt.end)}, {_number(stmt.end_price)}, "
            f"color=color.new(color.{stmt.color}, {stmt.transparency}), style=line.style_{stmt.style}, "
            f"width=1, xloc=xloc.bar_time, yloc=yloc.price)"
        )
    raise TypeError(f"Unknown statement: {stmt!r}")


def generate_script(item: str, groups: TradeGroups, clock: ClockConfig = DEFAULT_CLOCK) -> str:
    """Complete indicator script drawing every trade of ``item``."""
    body = "".join(f"{INDENT}{render_statement(s)}\n" for s in build_statements(groups, clock))
    return HEADER.format(title=item.upper()) + body
