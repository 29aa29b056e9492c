"""
Symbol and topic conventions shared by the ingester, the bus client and order execution.

Prices travel and are cached under the base symbol (BTC); the ledger stores
the full trading pair (BTCUSDT).
"""

from typing import Optional

DEFAULT_QUOTE = "USDT"


def to_base_symbol(symbol: str, quote: str = DEFAULT_QUOTE) -> str:
    """Strip one trailing quote suffix: BTCUSDT -> BTC."""
    symbol = symbol.strip().upper()
    if quote and symbol.endswith(quote) and len(symbol) > len(quote):
        return symbol[:-len(quote)]
    return symbol


def to_trading_pair(symbol: str, quote: str = DEFAULT_QUOTE) -> str:
    """Append the quote suffix when missing: doge -> DOGEUSDT."""
    symbol = symbol.strip().upper()
    if symbol.endswith(quote):
        return symbol
    return f"{symbol}{quote}"


def price_topic(namespace: str, base_symbol: str) -> str:
    return f"{namespace}/market/{base_symbol}"


def subscription_pattern(namespace: str) -> str:
    """Broker pattern for every tracked symbol."""
    return f"{namespace}/market/*"


def symbol_from_topic(namespace: str, topic: str) -> Optional[str]:
    """
    Extract the symbol from a price topic.

    Returns None unless the topic is exactly <namespace>/market/<segment>
    with a single non-empty segment.
    """
    prefix = f"{namespace}/market/"
    if not topic.startswith(prefix):
        return None
    symbol = topic[len(prefix):]
    if not symbol or "/" in symbol:
        return None
    return symbol
