"""Tests for the inventory lifecycle tracker."""

import asyncio
from datetime import datetime, timezone

import pytest

from scanmatch.config import Settings
from scanmatch.services.errors import (
    AlreadyReceivedError,
    NotReceivedError,
    PersistenceError,
    ValidationError,
)
from scanmatch.services.inventory import (
    AGING_BUCKETS,
    InventoryStatus,
    InventoryTracker,
    aging_bucket,
    days_between,
    report_to_csv,
)
from scanmatch.services.store import InMemoryRowStore


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryRowStore()


@pytest.fixture
def tracker(store, clock):
    return InventoryTracker(store, settings=Settings(_env_file=None), now=clock)


def run(coro):
    return asyncio.run(coro)


class TestLifecycle:
    """Unreceived -> Received -> Disposed."""

    def test_receive_then_dispose(self, tracker, store):
        record = run(tracker.receive("2M1"))
        assert record.barcode == "2M1"
        assert record.status == InventoryStatus.ACTIVE

        with pytest.raises(AlreadyReceivedError) as exc:
            run(tracker.receive("2M1"))
        assert exc.value.message == "Already received: 2M1"

        disposed = run(tracker.dispose("2M1"))
        assert disposed.status == InventoryStatus.DISPOSED

        with pytest.raises(NotReceivedError) as exc:
            run(tracker.dispose("2M1"))
        assert exc.value.message == "Not received or already disposed: 2M1"
        assert len(store.rows("inventory")) == 1

    def test_disposed_is_terminal(self, tracker):
        run(tracker.receive("2M1"))
        run(tracker.dispose("2M1"))
        with pytest.raises(AlreadyReceivedError) as exc:
            run(tracker.receive("2M1"))
        assert exc.value.message == "Already received and disposed: 2M1"

    def test_dispose_unknown(self, tracker):
        with pytest.raises(NotReceivedError):
            run(tracker.dispose("2M9"))

    def test_barcode_normalized(self, tracker, store):
        run(tracker.receive(" 2m-1 "))
        row = store.rows("inventory")[0]
        assert row["barcode"] == "2M1"
        assert row["prefixes"] == "1M,2M"
        assert row["disposed_at"] is None
        assert row["received_at"] == "2026-01-10T09:00:00+00:00"

    def test_validation(self, tracker, store):
        with pytest.raises(ValidationError) as exc:
            run(tracker.receive("   "))
        assert exc.value.message == "Empty barcode"
        with pytest.raises(ValidationError) as exc:
            run(tracker.receive("3M1"))
        assert exc.value.message == "Skipped: 3M1 (prefix mismatch)"
        assert store.calls == []

    def test_persistence_error_propagates(self, tracker, store):
        store.fail_next(1, after=1)
        with pytest.raises(PersistenceError):
            run(tracker.receive("2M1"))
        assert store.rows("inventory") == []


class TestReport:
    """Days in stock and aging."""

    @pytest.fixture
    def seeded(self, store, clock):
        clock.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        rows = [
            {"barcode": "2MA", "received_at": "2026-01-01T00:00:00+00:00", "disposed_at": None},
            {"barcode": "2MB", "received_at": "2025-12-01T00:00:00+00:00", "disposed_at": None},
            {"barcode": "2MC", "received_at": "2026-02-19T12:00:00+00:00", "disposed_at": None},
            {"barcode": "2MD", "received_at": "2025-11-01T00:00:00+00:00", "disposed_at": None},
            {"barcode": "2ME", "received_at": "2026-02-01T00:00:00+00:00",
             "disposed_at": "2026-03-01T08:00:00+00:00"},
            {"barcode": "2MF", "received_at": "2026-02-02T00:00:00+00:00",
             "disposed_at": "2026-02-20T00:00:00+00:00"},
        ]

        async def insert_all():
            for row in rows:
                await store.insert("inventory", row)

        run(insert_all())

    def test_counts_and_aging(self, tracker, seeded):
        report = run(tracker.report())
        assert report.total == 6
        assert report.active == 4
        assert report.disposed == 2
        assert report.disposed_today == 1
        assert list(report.aging) == list(AGING_BUCKETS)
        assert report.aging == {"0-30 days": 1, "31-60 days": 1, "61-90 days": 1, "90+ days": 1}

    def test_rows_newest_first_with_days(self, tracker, seeded):
        report = run(tracker.report())
        assert [r.barcode for r in report.rows] == ["2MC", "2MF", "2ME", "2MA", "2MB", "2MD"]
        days = {r.barcode: r.days_in_stock for r in report.rows}
        assert days["2MA"] == 59
        assert days["2MB"] == 90
        assert days["2MC"] == 10
        assert days["2ME"] == 28
        assert days["2MF"] == 18

    def test_status_filter(self, tracker, seeded):
        active = run(tracker.report("active"))
        assert {r.barcode for r in active.rows} == {"2MA", "2MB", "2MC", "2MD"}
        assert active.total == 6
        disposed = run(tracker.report("disposed"))
        assert {r.barcode for r in disposed.rows} == {"2ME", "2MF"}

    def test_csv(self, tracker, clock):
        run(tracker.receive("2M1"))
        report = run(tracker.report())
        text = report_to_csv(report)
        assert text.startswith(chr(0xFEFF) + "barcode,received_at,disposed_at,days_in_stock,status\n")
        assert text.endswith('"2M1","2026-01-10 09:00","","0","Active"\n')

    def test_csv_disposed_row(self, tracker, clock):
        run(tracker.receive("2M1"))
        clock.now = datetime(2026, 1, 12, 10, 30, tzinfo=timezone.utc)
        run(tracker.dispose("2M1"))
        text = report_to_csv(run(tracker.report()))
        assert '"2M1","2026-01-10 09:00","2026-01-12 10:30","2","Disposed"' in text


class TestHelpers:
    def test_days_between_floors(self):
        start = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert days_between(start, datetime(2026, 1, 2, 11, 59, tzinfo=timezone.utc)) == 0
        assert days_between(start, datetime(2026, 1, 2, 12, 0, tzinfo=timezone.utc)) == 1

    @pytest.mark.parametrize("days,bucket", [
        (0, "0-30 days"),
        (30, "0-30 days"),
        (31, "31-60 days"),
        (60, "31-60 days"),
        (61, "61-90 days"),
        (90, "61-90 days"),
        (91, "90+ days"),
    ])
    def test_aging_bucket(self, days, bucket):
        assert aging_bucket(days) == bucket
