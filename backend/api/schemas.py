"""Response shapes of the convert endpoint (kept as plain examples)."""

CONVERT_RESPONSE_EXAMPLE = {
    "tolerance": 0.0,
    "n_trades": 1,
    "items": {
        "eurusd": {
            "symbol": "EURUSD",
            "caption": "EURUSD · 1 trades",
            "total": 1,
            "counts": {"winners": 1, "breakeven": 0, "losers": 0},
            "winners": [
                {
                    "ticket": "100001",
                    "type": "buy",
                    "open_time": "2024.01.10 10:00:00",
                    "open_price": 1.1,
                    "close_time": "2024.01.10 11:00:00",
                    "close_price": 1.105,
                    "profit": 50.0,
                }
            ],
            "breakeven": [],
            "losers": [],
            "script": "//@version=5\n...",
        }
    },
}

CONVERT_RESPONSE_KEYS = ["tolerance", "n_trades", "items"]
ITEM_KEYS = ["symbol", "caption", "total", "counts", "winners", "breakeven", "losers", "script"]
