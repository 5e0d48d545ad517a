"""In-memory store for the daily historical archive.

Loaded once per session, then read-only. Entries are kept in one date-sorted
list (for index based slicing and backtests) plus a by-date index for O(1)
day lookups. A query for a date that is not in the index returns an empty
result rather than raising.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Iterable, Mapping, Optional, Union

from models.history import (
    ChartSeries,
    DateRange,
    HistoryEntry,
    SliceDirection,
    SurroundingEvents,
)
from services.history_feed import HistoryFeed, map_history_rows, parse_date
from utils.logger import get_logger

logger = get_logger("history_store")

DateLike = Union[date, str]


class TimeSeriesStore:
    """Date-sorted archive with range, day, neighbor and window queries."""

    def __init__(self, significant_intensity: float = 5.0):
        self.significant_intensity = significant_intensity
        self._history: list[HistoryEntry] = []
        self._by_date: dict[date, list[HistoryEntry]] = {}
        self._first_index: dict[date, int] = {}

    # ---------------------------------------------------------------- loading

    def load(self, raw_rows: Iterable[Mapping[str, Any]]) -> int:
        """Replace the store contents with the usable rows; returns the count kept."""
        return self.load_entries(map_history_rows(raw_rows))

    def load_entries(self, entries: Iterable[HistoryEntry]) -> int:
        by_date: dict[date, list[HistoryEntry]] = {}
        for entry in entries:
            by_date.setdefault(entry.date, []).append(entry)

        # sorted() is stable: same-day entries keep their feed order.
        history = sorted(
            (entry for day_entries in by_date.values() for entry in day_entries),
            key=lambda e: e.date,
        )
        first_index: dict[date, int] = {}
        for idx, entry in enumerate(history):
            first_index.setdefault(entry.date, idx)

        self._history = history
        self._by_date = by_date
        self._first_index = first_index

        logger.info(
            "History loaded",
            entries=len(history),
            days=len(by_date),
            start=str(history[0].date) if history else None,
            end=str(history[-1].date) if history else None,
        )
        return len(history)

    async def load_from_feed(self, feed: HistoryFeed) -> int:
        """Fetch and load; a failed fetch propagates as ``HistoryFeedError``."""
        rows = await feed.fetch_rows()
        return self.load(rows)

    # ---------------------------------------------------------------- queries

    @property
    def is_loaded(self) -> bool:
        return bool(self._history)

    def __len__(self) -> int:
        return len(self._history)

    def entries(self) -> list[HistoryEntry]:
        return list(self._history)

    def date_range(self) -> DateRange:
        if not self._history:
            return DateRange()
        return DateRange(min=self._history[0].date, max=self._history[-1].date)

    def entries_on(self, day: DateLike) -> list[HistoryEntry]:
        key = self._coerce_date(day)
        if key is None:
            return []
        return list(self._by_date.get(key, []))

    def neighbors(self, day: DateLike, count: int) -> SurroundingEvents:
        """Up to ``count`` significant events strictly before and after ``day``."""
        key = self._coerce_date(day)
        if key is None or key not in self._by_date or count <= 0:
            return SurroundingEvents()

        significant = [e for e in self._history if e.intensity_score > self.significant_intensity]
        before = [e for e in significant if e.date < key]
        after = [e for e in significant if e.date > key]
        return SurroundingEvents(before=before[-count:], after=after[:count])

    def slice(self, day: DateLike, count: int, direction: Union[SliceDirection, str]) -> list[HistoryEntry]:
        """Contiguous run of ``count`` entries before/after the anchor, anchor included."""
        key = self._coerce_date(day)
        if key is None or key not in self._first_index:
            return []
        direction = SliceDirection(direction)
        count = max(0, count)
        anchor = self._first_index[key]
        if direction == SliceDirection.BEFORE:
            return self._history[max(0, anchor - count) : anchor + 1]
        return self._history[anchor : min(len(self._history), anchor + count + 1)]

    def window_around(self, day: DateLike, window_days: int) -> ChartSeries:
        """One price per calendar day within ``window_days`` of ``day``."""
        key = self._coerce_date(day)
        if key is None or key not in self._by_date:
            return ChartSeries()

        window_days = max(0, window_days)
        start = key - timedelta(days=window_days)
        end = key + timedelta(days=window_days)

        labels: list[date] = []
        prices: list[float] = []
        current = start
        while current <= end:
            day_entries = self._by_date.get(current)
            if day_entries:
                labels.append(current)
                prices.append(day_entries[0].price)
            current += timedelta(days=1)
        return ChartSeries(labels=labels, prices=prices)

    @staticmethod
    def _coerce_date(day: DateLike) -> Optional[date]:
        if isinstance(day, date) and not isinstance(day, datetime):
            return day
        try:
            return parse_date(day)
        except (TypeError, ValueError):
            return None
