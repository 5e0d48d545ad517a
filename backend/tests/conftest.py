"""Shared fixtures for PatternLab backend tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest

from models.experiment import LearningPattern, TradeDirection
from models.market import AssetQuote
from services.kv_store import InMemoryKeyValueStore


# ---------------------------------------------------------------------------
# Raw archive rows (spreadsheet-style headers, as the feed delivers them)
# ---------------------------------------------------------------------------


@pytest.fixture
def raw_history_rows():
    """Eight daily rows; 2024-01-02 is the only day with Daily Change above 3."""
    return [
        {"Date": "2024-01-01", "Price": "100", "Daily Change": "0", "Intensity Score": "2"},
        {"Date": "2024-01-02", "Price": "105", "Daily Change": "5", "Intensity Score": "7",
         "Event Type": "ETF Approval", "Direction": "POSITIVE", "Status": "EVENT DETECTED"},
        {"Date": "2024-01-03", "Price": "104", "Daily Change": "-0.95", "Intensity Score": "1"},
        {"Date": "2024-01-04", "Price": "106", "Daily Change": "1.92", "Intensity Score": "6"},
        {"Date": "2024-01-05", "Price": "107", "Daily Change": "0.94", "Intensity Score": "3"},
        {"Date": "2024-01-06", "Price": "110", "Daily Change": "2.8", "Intensity Score": "8"},
        {"Date": "2024-01-07", "Price": "115", "Daily Change": "2.73", "Intensity Score": "4"},
        {"Date": "2024-01-08", "Price": "120", "Daily Change": "2.6", "Intensity Score": "9"},
    ]


# ---------------------------------------------------------------------------
# Live market fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def live_assets():
    return [
        AssetQuote(id="bitcoin", symbol="BTC", name="Bitcoin", price=60000.0, change_24h=6.5),
        AssetQuote(id="ethereum", symbol="ETH", name="Ethereum", price=3000.0, change_24h=-2.0),
        AssetQuote(id="solana", symbol="SOL", name="Solana", price=150.0, change_24h=1.0),
    ]


@pytest.fixture
def learning_pattern():
    return LearningPattern(
        id="p1",
        title="BTC strength lifts ETH",
        description="ETH follows BTC breakouts within a day",
        category="Correlation",
        confidence=72.0,
        observation_count=14,
        trigger_asset="BTC",
        affected_asset="eth",
        trade_direction=TradeDirection.BUY,
    )


@pytest.fixture
def kv_store():
    return InMemoryKeyValueStore()
