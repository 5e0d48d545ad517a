"""Historical archive ingestion.

Raw archive rows arrive with spreadsheet-style headers ("Daily Change",
"Intensity Score", ...). This module is the only place that knows about
those headers: it maps each row onto a typed ``HistoryEntry`` so the store
never handles untyped data.
"""

from __future__ import annotations

import asyncio
import csv
import math
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

import httpx

from models.history import HistoryEntry
from utils.logger import get_logger

logger = get_logger("history_feed")


class HistoryFeedError(RuntimeError):
    """The upstream archive could not be fetched or read."""


# Accepted source headers per HistoryEntry field, in lookup order.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "date": ("Date", "date"),
    "price": ("Price", "price"),
    "daily_change": ("Daily Change", "dailyChange", "daily_change"),
    "volatility": ("Volatility", "volatility"),
    "volume_change": ("Volume Change", "volumeChange", "volume_change"),
    "event_type": ("Event Type", "eventType", "event_type"),
    "direction": ("Direction", "direction"),
    "intensity_score": ("Intensity Score", "intensityScore", "intensity_score"),
    "status": ("Status", "status"),
}

_NUMERIC_FIELDS = ("daily_change", "volatility", "volume_change", "intensity_score")
_TEXT_FIELDS = ("event_type", "direction", "status")
_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%Y/%m/%d", "%d.%m.%Y", "%b %d, %Y")


def _lookup(row: Mapping[str, Any], field: str) -> Any:
    for header in FIELD_ALIASES[field]:
        if header in row:
            return row[header]
    return None


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_date(value: Any) -> date:
    """Parse the archive's date cell into a calendar day."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognized date: {value!r}")


def parse_number(value: Any, default: float = 0.0) -> float:
    """Parse a numeric cell; blanks become ``default``, garbage raises."""
    if _is_blank(value):
        return default
    if isinstance(value, bool):
        raise ValueError(f"Boolean is not a number: {value!r}")
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().replace(",", "").replace("%", "").replace("$", "")
        number = float(text)
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"Non-finite number: {value!r}")
    return number


def map_history_row(row: Mapping[str, Any]) -> Optional[HistoryEntry]:
    """Map one raw row; returns None (with a warning) when it cannot be used."""
    raw_date = _lookup(row, "date")
    raw_price = _lookup(row, "price")
    if _is_blank(raw_date) or _is_blank(raw_price):
        logger.warning("Skipping history row without date or price", row=dict(row))
        return None

    try:
        fields: dict[str, Any] = {
            "date": parse_date(raw_date),
            "price": parse_number(raw_price),
        }
        for name in _NUMERIC_FIELDS:
            fields[name] = parse_number(_lookup(row, name))
        for name in _TEXT_FIELDS:
            raw = _lookup(row, name)
            fields[name] = "" if raw is None else str(raw).strip()
        return HistoryEntry(**fields)
    except (TypeError, ValueError) as exc:
        logger.warning("Skipping malformed history row", row=dict(row), error=str(exc))
        return None


def map_history_rows(rows: Iterable[Mapping[str, Any]]) -> list[HistoryEntry]:
    entries: list[HistoryEntry] = []
    dropped = 0
    for row in rows:
        entry = map_history_row(row) if isinstance(row, Mapping) else None
        if entry is None:
            dropped += 1
            continue
        entries.append(entry)
    if dropped:
        logger.warning("Dropped unusable history rows", dropped=dropped, kept=len(entries))
    return entries


class HistoryFeed:
    """Fetches raw archive rows from a JSON endpoint or a local CSV file."""

    def __init__(
        self,
        url: Optional[str] = None,
        csv_path: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.url = url
        self.csv_path = csv_path
        self.timeout = timeout

    async def fetch_rows(self) -> list[dict[str, Any]]:
        if self.url:
            return await self._fetch_url()
        if self.csv_path:
            return await asyncio.to_thread(self._read_csv)
        raise HistoryFeedError("No history feed configured (set HISTORY_FEED_URL or HISTORY_CSV_PATH)")

    async def _fetch_url(self) -> list[dict[str, Any]]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.url)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise HistoryFeedError(f"History feed request failed: {exc}") from exc

        if isinstance(payload, dict):
            payload = payload.get("data", payload.get("rows"))
        if not isinstance(payload, list):
            raise HistoryFeedError("History feed returned no row list")
        logger.info("Fetched history rows", source=self.url, rows=len(payload))
        return payload

    def _read_csv(self) -> list[dict[str, Any]]:
        path = Path(self.csv_path)
        try:
            with path.open(newline="", encoding="utf-8-sig") as handle:
                rows = list(csv.DictReader(handle))
        except (OSError, csv.Error, UnicodeDecodeError) as exc:
            raise HistoryFeedError(f"Cannot read history CSV {path}: {exc}") from exc
        logger.info("Read history rows", source=str(path), rows=len(rows))
        return rows
