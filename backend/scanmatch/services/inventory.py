"""Inventory receive/dispose lifecycle and stock reporting.

Each barcode moves Unreceived -> Received -> Disposed. Disposed is
terminal: a disposed barcode cannot be received again.
"""

import csv
import io
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Any
from dataclasses import dataclass, field
from enum import Enum

from .barcode import normalize_barcode, PrefixFilter
from .errors import ValidationError, AlreadyReceivedError, NotReceivedError
from .store import RowStore
from ..config import Settings, get_settings

logger = logging.getLogger(__name__)

CSV_HEADER = ["barcode", "received_at", "disposed_at", "days_in_stock", "status"]
AGING_BUCKETS = ("0-30 days", "31-60 days", "61-90 days", "90+ days")
SECONDS_PER_DAY = 86400


class InventoryStatus(str, Enum):
    ACTIVE = "Active"
    DISPOSED = "Disposed"


@dataclass
class InventoryRecord:
    """One stored lifecycle row."""
    id: Any
    barcode: str
    received_at: datetime
    disposed_at: Optional[datetime] = None
    prefixes: Optional[str] = None

    @property
    def status(self) -> InventoryStatus:
        return InventoryStatus.DISPOSED if self.disposed_at else InventoryStatus.ACTIVE


@dataclass
class InventoryReportRow:
    barcode: str
    received_at: datetime
    disposed_at: Optional[datetime]
    days_in_stock: int
    status: InventoryStatus


@dataclass
class InventoryReport:
    generated_at: datetime
    rows: List[InventoryReportRow] = field(default_factory=list)
    total: int = 0
    active: int = 0
    disposed: int = 0
    disposed_today: int = 0
    aging: Dict[str, int] = field(default_factory=dict)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Store timestamp (ISO string or datetime) as an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_between(start: datetime, end: datetime) -> int:
    """Whole days elapsed, floored."""
    return int((end - start).total_seconds() // SECONDS_PER_DAY)


def aging_bucket(days: int) -> str:
    if days <= 30:
        return AGING_BUCKETS[0]
    if days <= 60:
        return AGING_BUCKETS[1]
    if days <= 90:
        return AGING_BUCKETS[2]
    return AGING_BUCKETS[3]


def _record(row: Dict[str, Any]) -> InventoryRecord:
    return InventoryRecord(
        id=row.get("id"),
        barcode=row.get("barcode") or "",
        received_at=parse_timestamp(row.get("received_at")),
        disposed_at=parse_timestamp(row.get("disposed_at")),
        prefixes=row.get("prefixes"),
    )


class InventoryTracker:
    """Receive and dispose scans against the inventory table."""

    def __init__(
        self,
        store: RowStore,
        settings: Optional[Settings] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        prefixes: Optional[str] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.now = now
        self.prefix_filter = PrefixFilter(
            prefixes if prefixes is not None else self.settings.inventory_prefixes
        )

    @property
    def table(self) -> str:
        return self.settings.inventory_table

    def _validate(self, raw: str) -> str:
        code = normalize_barcode(raw)
        if not code:
            raise ValidationError("Empty barcode")
        if not self.prefix_filter.accepts(code):
            raise ValidationError(f"Skipped: {code} (prefix mismatch)", f"allowed: {self.prefix_filter.label}")
        return code

    async def receive(self, raw: str) -> InventoryRecord:
        """
        Record a barcode as received.

        Raises:
            ValidationError: empty or wrong prefix
            AlreadyReceivedError: a row already exists (active or disposed)
            PersistenceError: store call failed
        """
        code = self._validate(raw)
        existing = await self.store.select(
            self.table, columns="id,barcode,received_at,disposed_at", filters={"barcode": code}
        )
        if any(row.get("disposed_at") is None for row in existing):
            raise AlreadyReceivedError(f"Already received: {code}")
        if existing:
            raise AlreadyReceivedError(f"Already received and disposed: {code}")

        now = self.now().isoformat()
        row = await self.store.insert(self.table, {
            "barcode": code,
            "received_at": now,
            "disposed_at": None,
            "updated_at": now,
            "prefixes": self.prefix_filter.label,
        })
        logger.info(f"Received {code}")
        return _record(row)

    async def dispose(self, raw: str) -> InventoryRecord:
        """
        Mark the active record for a barcode as disposed.

        Raises:
            ValidationError: empty or wrong prefix
            NotReceivedError: no active record
            PersistenceError: store call failed
        """
        code = self._validate(raw)
        active = await self.store.select(
            self.table,
            columns="id,barcode,received_at,disposed_at,prefixes",
            filters={"barcode": code, "disposed_at": None},
        )
        if not active:
            raise NotReceivedError(f"Not received or already disposed: {code}")

        now = self.now().isoformat()
        updated = await self.store.update(
            self.table, {"disposed_at": now, "updated_at": now}, filters={"id": active[0]["id"]}
        )
        row = updated[0] if updated else {**active[0], "disposed_at": now}
        logger.info(f"Disposed {code}")
        return _record(row)

    async def report(self, status_filter: str = "all") -> InventoryReport:
        """
        Stock report with days in stock and aging of active items.

        Args:
            status_filter: "all", "active" or "disposed" (rows only; counts cover everything)
        """
        now = self.now()
        rows = await self.store.select(
            self.table,
            columns="id,barcode,received_at,disposed_at,prefixes",
            order_by="received_at",
            descending=True,
        )
        report = InventoryReport(generated_at=now, aging=OrderedDict((b, 0) for b in AGING_BUCKETS))

        for record in (_record(row) for row in rows):
            if record.received_at is None:
                continue
            end = record.disposed_at or now
            report_row = InventoryReportRow(
                barcode=record.barcode,
                received_at=record.received_at,
                disposed_at=record.disposed_at,
                days_in_stock=days_between(record.received_at, end),
                status=record.status,
            )
            report.total += 1
            if record.status == InventoryStatus.ACTIVE:
                report.active += 1
                report.aging[aging_bucket(report_row.days_in_stock)] += 1
            else:
                report.disposed += 1
                if record.disposed_at.astimezone(now.tzinfo).date() == now.date():
                    report.disposed_today += 1

            if status_filter == "active" and record.status != InventoryStatus.ACTIVE:
                continue
            if status_filter == "disposed" and record.status != InventoryStatus.DISPOSED:
                continue
            report.rows.append(report_row)

        return report


def _format_ts(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else ""


def report_to_csv(report: InventoryReport) -> str:
    """Spreadsheet-friendly CSV: BOM, plain header, every value quoted."""
    out = io.StringIO()
    out.write(chr(0xFEFF))
    out.write(",".join(CSV_HEADER) + "\n")
    writer = csv.writer(out, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for row in report.rows:
        writer.writerow([
            row.barcode,
            _format_ts(row.received_at),
            _format_ts(row.disposed_at),
            str(row.days_in_stock),
            row.status.value,
        ])
    return out.getvalue()
