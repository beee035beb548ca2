from __future__ import annotations

import pytest

from core.quote_store import QuoteSnapshotStore
from tests.factories import NOW_MS


@pytest.fixture
def store() -> QuoteSnapshotStore:
    return QuoteSnapshotStore()


@pytest.fixture
def now_ms() -> int:
    return NOW_MS
