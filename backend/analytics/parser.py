import logging
import math
from typing import Iterator, List, Optional, Union

from bs4 import BeautifulSoup

from .timekeeping import to_absolute_instant
from .trades import SIDES, Trade

logger = logging.getLogger(__name__)

CLOSED_MARKER = "Closed Transactions:"
END_MARKERS = ("Open Trades:", "Working Orders:")

# Closed Transactions layout:
# Ticket | Open Time | Type | Size | Item | Price | S/L | T/P | Close Time | Price | Commission | Taxes | Swap | Profit
TRADE_ROW_CELLS = 14
COLUMNS = {
    "ticket": 0,
    "open_time_raw": 1,
    "type": 2,
    "size": 3,
    "item": 4,
    "open_price": 5,
    "close_time_raw": 8,
    "close_price": 9,
    "profit": 13,
}

REPORT_EXTENSIONS = (".htm", ".html")
FALLBACK_ENCODINGS = ("utf-8", "cp1252")


def _to_float(text: str) -> float:
    """Lenient number parse: thousands spaces are dropped, garbage and nan/inf become 0."""
    cleaned = "".join(text.split())
    try:
        value = float(cleaned)
    except ValueError:
        return 0.0
    return value if math.isfinite(value) else 0.0


def iter_closed_rows(html: Union[str, BeautifulSoup]) -> Iterator[List[str]]:
    """Yield the cell texts of every row inside the Closed Transactions section.

    Scanning stops for good at the first Open Trades / Working Orders row.
    """
    soup = html if isinstance(html, BeautifulSoup) else BeautifulSoup(html, "lxml")
    inside = False
    for row in soup.find_all("tr"):
        cells = [td.get_text() for td in row.find_all("td")]
        if cells and CLOSED_MARKER in cells[0]:
            inside = True
            continue
        if cells and any(marker in cells[0] for marker in END_MARKERS):
            break
        if inside:
            yield cells


def row_to_trade(cells: List[str]) -> Optional[Trade]:
    """Map one candidate row to a Trade, or None when the row isn't a closed buy/sell."""
    if len(cells) != TRADE_ROW_CELLS:
        return None

    side = cells[COLUMNS["type"]].strip().lower()
    if side not in SIDES:
        # balance, cancelled orders and the totals row share the layout
        return None

    item = cells[COLUMNS["item"]].strip().lower()
    if not item:
        return None

    open_time_raw = cells[COLUMNS["open_time_raw"]].strip()
    close_time_raw = cells[COLUMNS["close_time_raw"]].strip()
    # MalformedTimestamp is a ValueError: the row gets logged and skipped
    to_absolute_instant(open_time_raw)
    to_absolute_instant(close_time_raw)

    return Trade(
        ticket=cells[COLUMNS["ticket"]].strip(),
        open_time_raw=open_time_raw,
        type=side,
        size=_to_float(cells[COLUMNS["size"]]),
        item=item,
        open_price=_to_float(cells[COLUMNS["open_price"]]),
        close_time_raw=close_time_raw,
        close_price=_to_float(cells[COLUMNS["close_price"]]),
        profit=_to_float(cells[COLUMNS["profit"]]),
    )


def parse_report(html: str) -> List[Trade]:
    """Extract closed trades from an MT4 HTML statement, in document order."""
    trades = []
    for cells in iter_closed_rows(html):
        try:
            trade = row_to_trade(cells)
        except (IndexError, TypeError, ValueError) as e:
            logger.warning("Skipping a row due to parsing error: %s (cells=%r)", e, cells)
            continue
        if trade is not None:
            trades.append(trade)

    logger.info("Extracted %d closed trades from report", len(trades))
    return trades


def decode_report(content: bytes) -> str:
    """Decode statement bytes; MT4 saves reports as UTF-16, UTF-8 or cp1252."""
    if content.startswith((b"\xff\xfe", b"\xfe\xff")):
        return content.decode("utf-16")
    if content.startswith(b"\xef\xbb\xbf"):
        return content.decode("utf-8-sig")

    for encoding in FALLBACK_ENCODINGS:
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ValueError("Could not decode the report. Save it as UTF-8 or UTF-16 HTML.")


def parse_report_file(uploaded_file) -> List[Trade]:
    """Parse an uploaded MT4 statement (.htm / .html) into trades.

    Anything with ``name`` and ``read()`` works: Django uploads, open files.
    """
    name = getattr(uploaded_file, "name", "").lower()
    if not name.endswith(REPORT_EXTENSIONS):
        raise ValueError("Unsupported file type. Please upload the MT4 statement as .htm or .html.")

    content = uploaded_file.read()
    if isinstance(content, bytes):
        content = decode_report(content)
    return parse_report(content)
