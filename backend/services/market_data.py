"""Live market snapshot: asset quotes plus an optional global sentiment score."""

from __future__ import annotations

from typing import Any, Optional

import httpx

from models.market import AssetQuote, SentimentSnapshot
from utils.logger import get_logger

logger = get_logger("market_data")


class MarketDataError(RuntimeError):
    """The live quote endpoint could not be reached or returned garbage."""


class MarketDataService:
    def __init__(
        self,
        quotes_url: str,
        sentiment_url: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.quotes_url = quotes_url
        self.sentiment_url = sentiment_url
        self.timeout = timeout

    async def _get_json(self, url: str) -> Any:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
            return response.json()

    async def fetch_quotes(self) -> list[AssetQuote]:
        """CoinGecko ``/coins/markets`` rows as quotes. Rows without a price are dropped."""
        try:
            payload = await self._get_json(self.quotes_url)
        except (httpx.HTTPError, ValueError) as exc:
            raise MarketDataError(f"Market data request failed: {exc}") from exc

        if isinstance(payload, dict):
            payload = payload.get("data") or payload.get("assets")
        if not isinstance(payload, list):
            raise MarketDataError("Market data response is not a list of assets")

        quotes: list[AssetQuote] = []
        for row in payload:
            if not isinstance(row, dict):
                continue
            quote = AssetQuote.from_coingecko_response(row)
            if not quote.symbol or quote.price <= 0:
                continue
            quotes.append(quote)
        logger.debug("Fetched live quotes", count=len(quotes))
        return quotes

    async def fetch_sentiment(self) -> Optional[SentimentSnapshot]:
        """Global sentiment, or None when unconfigured or unavailable."""
        if not self.sentiment_url:
            return None
        try:
            payload = await self._get_json(self.sentiment_url)
            return SentimentSnapshot.model_validate(payload)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Sentiment feed unavailable", error=str(exc))
            return None
