from pydantic import BaseModel
from typing import Optional


def _to_float(raw: object, default: float = 0.0) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


class AssetQuote(BaseModel):
    """Live price snapshot for one asset"""

    id: str
    symbol: str
    name: str = ""
    price: float
    change_24h: float = 0.0  # %
    market_cap: Optional[float] = None

    @classmethod
    def from_coingecko_response(cls, data: dict) -> "AssetQuote":
        """Parse one row of the CoinGecko /coins/markets payload"""
        market_cap = data.get("market_cap")
        return cls(
            id=str(data.get("id") or data.get("symbol") or ""),
            symbol=str(data.get("symbol") or "").upper(),
            name=str(data.get("name") or ""),
            price=_to_float(data.get("current_price", data.get("price"))),
            change_24h=_to_float(
                data.get(
                    "price_change_percentage_24h",
                    data.get("change24h", data.get("change_24h")),
                )
            ),
            market_cap=_to_float(market_cap) if market_cap is not None else None,
        )


class SentimentSnapshot(BaseModel):
    """Global news sentiment, ``sentiment_score`` on a 0-1 scale"""

    sentiment_score: float
    trending_narratives: list[str] = []


def find_quote(quotes: list[AssetQuote], symbol: str) -> Optional[AssetQuote]:
    """Case-insensitive symbol lookup; first match wins."""
    wanted = (symbol or "").strip().upper()
    if not wanted:
        return None
    for quote in quotes:
        if quote.symbol.upper() == wanted:
            return quote
    return None
