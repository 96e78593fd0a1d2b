"""Reconciliation of scanned codes against the expected manifest.

A ScanSession owns the in-memory view of one working session: the
expected codes loaded from the store, the codes scanned so far and the
writes that have not reached the store yet. Matched, unmatched and
missing are always derived from (expected, seen); they are never read
back from the store.
"""

from typing import Optional, List, Dict, Iterable, Callable
from dataclasses import dataclass, field
from enum import Enum
import csv
import io
import logging
import time
import uuid

from .barcode import normalize_barcode, PrefixFilter, suffix_matches
from .errors import PersistenceError
from .similarity import SimilarityMatcher, CorrectionProposal
from .store import RowStore
from ..config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOptions:
    """Everything that varies between stations, in one place."""
    allowed_prefixes: List[str] = field(default_factory=lambda: ["2M"])
    target_length: int = 14
    similarity_threshold: float = 0.7
    top_n: int = 5
    suffix_length: int = 3

    @classmethod
    def from_settings(cls, settings: Settings, prefixes: Optional[str] = None) -> "ReconcileOptions":
        prefix_filter = PrefixFilter(prefixes if prefixes is not None else settings.allowed_prefixes)
        return cls(
            allowed_prefixes=prefix_filter.prefixes,
            target_length=settings.target_code_length,
            similarity_threshold=settings.similarity_threshold,
            top_n=settings.similarity_top_n,
            suffix_length=settings.suffix_length,
        )


class ScanStatus(str, Enum):
    """Outcome of a single scan."""
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    EMPTY = "empty"
    PREFIX_MISMATCH = "prefix-mismatch"
    DUPLICATE = "duplicate"


class Partition(str, Enum):
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    MISSING = "missing"


@dataclass
class ScanOutcome:
    """Result of add_scan."""
    status: ScanStatus
    code: str
    message: str
    reason: Optional[SkipReason] = None
    persisted: bool = False
    error: Optional[str] = None


@dataclass
class PartitionView:
    matched: List[str]
    unmatched: List[str]
    missing: List[str]


@dataclass
class UnifiedEntry:
    code: str
    status: Partition
    unsynced: bool = False


@dataclass
class SyncResult:
    """Result of a bulk write to the scan table."""
    success: bool
    count: int
    message: str


@dataclass
class CorrectionResult:
    """Result of applying a similarity correction."""
    success: bool
    missing_code: str
    unmatched_code: str
    new_expected_code: Optional[str]
    steps_completed: List[str]
    message: str

    @property
    def partial(self) -> bool:
        return not self.success and bool(self.steps_completed)


@dataclass
class SetComparison:
    """Full-set diff of an expected list against a scanned list."""
    matched: List[str]
    missing: List[str]
    unexpected: List[str]


@dataclass
class PendingWrite:
    key: str
    row: Dict
    attempts: int = 0
    next_attempt_at: float = 0.0
    last_error: Optional[str] = None


class PendingWriteQueue:
    """
    Scan rows that failed to persist, retried with exponential backoff.

    The delay before the next attempt is base * 2**attempts, capped at
    max_seconds.
    """

    def __init__(
        self,
        base_seconds: float = 1.0,
        max_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.clock = clock
        self._writes: Dict[str, PendingWrite] = {}

    def __len__(self) -> int:
        return len(self._writes)

    def __contains__(self, key: str) -> bool:
        return key in self._writes

    def delay_for(self, attempts: int) -> float:
        return min(self.base_seconds * (2 ** attempts), self.max_seconds)

    def add(self, key: str, row: Dict, error: Optional[str] = None) -> PendingWrite:
        """Queue (or re-queue) a write after a failed attempt."""
        write = self._writes.get(key)
        if write is None:
            write = PendingWrite(key=key, row=dict(row))
            self._writes[key] = write
        else:
            write.row = dict(row)
        write.last_error = error
        write.next_attempt_at = self.clock() + self.delay_for(write.attempts)
        return write

    def due(self, now: Optional[float] = None) -> List[PendingWrite]:
        now = self.clock() if now is None else now
        return [w for w in self._writes.values() if w.next_attempt_at <= now]

    def mark_synced(self, key: str) -> None:
        self._writes.pop(key, None)

    def mark_failed(self, key: str, error: str) -> None:
        write = self._writes.get(key)
        if write is None:
            return
        write.attempts += 1
        write.last_error = error
        write.next_attempt_at = self.clock() + self.delay_for(write.attempts)

    def get(self, key: str) -> Optional[PendingWrite]:
        return self._writes.get(key)

    def clear(self) -> None:
        self._writes.clear()

    @property
    def unsynced(self) -> List[str]:
        """Codes whose scan row is not yet durable."""
        return sorted(self._writes)


def compare_sets(expected: Iterable[str], scanned: Iterable[str]) -> SetComparison:
    """Diff two code lists after normalization. Each output list is sorted."""
    expected_set = {c for c in (normalize_barcode(x) for x in expected) if c}
    scanned_set = {c for c in (normalize_barcode(x) for x in scanned) if c}
    return SetComparison(
        matched=sorted(expected_set & scanned_set),
        missing=sorted(expected_set - scanned_set),
        unexpected=sorted(scanned_set - expected_set),
    )


def to_csv(rows: Iterable[str]) -> str:
    """Single-column CSV export of a partition."""
    out = io.StringIO()
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow(["barcode"])
    for code in sorted(rows):
        writer.writerow([code])
    return out.getvalue()


class ScanSession:
    """
    One operator's working session against the current manifest epoch.

    Scans are classified immediately against the cached expected set and
    persisted optimistically; failed writes go to the pending queue and
    are retried by flush_pending().
    """

    def __init__(
        self,
        store: RowStore,
        options: Optional[ReconcileOptions] = None,
        settings: Optional[Settings] = None,
        session_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.options = options or ReconcileOptions.from_settings(self.settings)
        self.session_id = session_id or uuid.uuid4().hex
        self.prefix_filter = PrefixFilter(self.options.allowed_prefixes)
        self.matcher = SimilarityMatcher(
            threshold=self.options.similarity_threshold,
            top_n=self.options.top_n,
            suffix_length=self.options.suffix_length,
            target_length=self.options.target_length,
        )
        self.pending = PendingWriteQueue(
            base_seconds=self.settings.retry_base_seconds,
            max_seconds=self.settings.retry_max_seconds,
            clock=clock,
        )
        self.expected: List[str] = []
        self._expected_set: set = set()
        self.seen: set = set()
        self._scanned: List[str] = []
        self.matched: List[str] = []
        self.unmatched: List[str] = []
        self.status = "Ready"

    @property
    def ocr_table(self) -> str:
        return self.settings.ocr_results_table

    @property
    def scan_table(self) -> str:
        return self.settings.scan_items_table

    # --- expected set ---

    def set_expected(self, codes: Iterable[str]) -> None:
        """Replace the expected cache (normalized, prefix filtered, sorted)."""
        normalized = {normalize_barcode(c) for c in codes}
        self._expected_set = {c for c in normalized if self.prefix_filter.accepts(c)}
        self.expected = sorted(self._expected_set)
        self.partition()

    async def load_expected(self) -> str:
        """Reload the expected set from the store. Never touches seen."""
        try:
            rows = await self.store.select(self.ocr_table, columns="text")
        except PersistenceError as e:
            logger.warning(f"Session {self.session_id}: loading expected codes failed: {e}")
            self.status = f"Failed to load expected codes: {e}"
            return self.status

        self.set_expected(row.get("text") for row in rows)
        self.status = f"Loaded {len(self.expected)} expected codes"
        logger.info(f"Session {self.session_id}: {self.status}")
        return self.status

    # --- scanning ---

    async def add_scan(self, raw: str) -> ScanOutcome:
        """
        Classify and persist one scanned value.

        Skips (empty, prefix mismatch, duplicate) change nothing and make
        no store call.
        """
        code = normalize_barcode(raw)
        if not code:
            return ScanOutcome(ScanStatus.SKIPPED, code, "Skipped: empty", reason=SkipReason.EMPTY)
        if not self.prefix_filter.accepts(code):
            return ScanOutcome(
                ScanStatus.SKIPPED, code, f"Skipped: {code} (prefix mismatch)", reason=SkipReason.PREFIX_MISMATCH
            )
        if code in self.seen:
            return ScanOutcome(
                ScanStatus.SKIPPED, code, f"Skipped: {code} (duplicate)", reason=SkipReason.DUPLICATE
            )

        # Marked before any await so a second submission is always a duplicate
        self.seen.add(code)
        self._scanned.append(code)
        if code in self._expected_set:
            self.matched.append(code)
            status = ScanStatus.MATCHED
        else:
            self.unmatched.append(code)
            status = ScanStatus.UNMATCHED

        row = self._scan_row(code)
        try:
            await self.store.upsert(self.scan_table, [row], on_conflict="session_id,text")
        except PersistenceError as e:
            self.pending.add(code, row, str(e))
            logger.warning(f"Session {self.session_id}: saving scan {code} failed, queued for retry: {e}")
            return ScanOutcome(
                status, code, f"{status.value.capitalize()}: {code} (not saved: {e})", error=str(e)
            )

        return ScanOutcome(status, code, f"{status.value.capitalize()}: {code}", persisted=True)

    def _scan_row(self, code: str) -> Dict:
        return {
            "session_id": self.session_id,
            "text": code,
            "prefixes": self.prefix_filter.label,
            "matched": code in self._expected_set,
        }

    # --- derived views ---

    @property
    def missing(self) -> List[str]:
        """Expected codes not yet seen."""
        return [c for c in self.expected if c not in self.seen]

    def classify(self, code: str) -> Optional[Partition]:
        code = normalize_barcode(code)
        if code in self.seen:
            return Partition.MATCHED if code in self._expected_set else Partition.UNMATCHED
        if code in self._expected_set:
            return Partition.MISSING
        return None

    def partition(self) -> PartitionView:
        """Recompute matched/unmatched from seen and the current expected set."""
        self.matched = [c for c in self._scanned if c in self._expected_set]
        self.unmatched = [c for c in self._scanned if c not in self._expected_set]
        return PartitionView(matched=list(self.matched), unmatched=list(self.unmatched), missing=self.missing)

    def unified_list(self, query: Optional[str] = None) -> List[UnifiedEntry]:
        """Unmatched first, then missing, then matched; optional suffix filter."""
        entries = []
        for status, codes in (
            (Partition.UNMATCHED, self.unmatched),
            (Partition.MISSING, self.missing),
            (Partition.MATCHED, self.matched),
        ):
            for code in codes:
                if query and not suffix_matches(code, query, self.options.suffix_length):
                    continue
                entries.append(UnifiedEntry(code=code, status=status, unsynced=code in self.pending))
        return entries

    def clear(self) -> None:
        """Forget this session's scans. Expected cache and storage are untouched."""
        self.seen.clear()
        self._scanned.clear()
        self.matched.clear()
        self.unmatched.clear()
        self.status = "Cleared"

    # --- bulk persistence ---

    async def upload_batch(self) -> SyncResult:
        """Upsert every scanned code with its current classification."""
        codes = list(dict.fromkeys(self.matched + self.unmatched))
        if not codes:
            return SyncResult(success=True, count=0, message="Nothing to upload")

        rows = [self._scan_row(code) for code in codes]
        try:
            await self.store.upsert(self.scan_table, rows, on_conflict="session_id,text")
        except PersistenceError as e:
            for row in rows:
                self.pending.add(row["text"], row, str(e))
            logger.warning(f"Session {self.session_id}: batch upload of {len(rows)} scans failed: {e}")
            return SyncResult(success=False, count=0, message=f"Upload failed: {e}")

        for code in codes:
            self.pending.mark_synced(code)
        message = f"Uploaded {len(rows)} scans"
        logger.info(f"Session {self.session_id}: {message}")
        return SyncResult(success=True, count=len(rows), message=message)

    async def flush_pending(self, force: bool = False) -> SyncResult:
        """Retry queued writes whose backoff has elapsed (all of them with force)."""
        due = self.pending.due(float("inf") if force else None)
        if not due:
            return SyncResult(success=True, count=0, message="Nothing pending")

        # Classification may have changed since the write was queued
        rows = [{**w.row, "matched": w.key in self._expected_set} for w in due]
        try:
            await self.store.upsert(self.scan_table, rows, on_conflict="session_id,text")
        except PersistenceError as e:
            for write in due:
                self.pending.mark_failed(write.key, str(e))
            logger.warning(f"Session {self.session_id}: retry of {len(due)} scans failed: {e}")
            return SyncResult(success=False, count=0, message=f"Retry failed: {e}")

        for write in due:
            self.pending.mark_synced(write.key)
        logger.info(f"Session {self.session_id}: synced {len(due)} pending scans")
        return SyncResult(success=True, count=len(due), message=f"Synced {len(due)} scans")

    async def load_scanned(self) -> str:
        """Restore this session's stored scans into seen and reclassify."""
        try:
            rows = await self.store.select(
                self.scan_table, columns="text", filters={"session_id": self.session_id}, order_by="id"
            )
        except PersistenceError as e:
            logger.warning(f"Session {self.session_id}: loading scans failed: {e}")
            self.status = f"Failed to load scans: {e}"
            return self.status

        restored = 0
        for row in rows:
            code = normalize_barcode(row.get("text"))
            if code and self.prefix_filter.accepts(code) and code not in self.seen:
                self.seen.add(code)
                self._scanned.append(code)
                restored += 1
        self.partition()
        self.status = f"Restored {restored} scans"
        return self.status

    async def clear_scan_store(self) -> str:
        """Delete this session's stored scans, then reload the expected set."""
        try:
            removed = await self.store.delete(self.scan_table, filters={"session_id": self.session_id})
        except PersistenceError as e:
            logger.warning(f"Session {self.session_id}: clearing scan store failed: {e}")
            self.status = f"Failed to clear scans: {e}"
            return self.status

        self.clear()
        self.pending.clear()
        reload_status = await self.load_expected()
        if reload_status.startswith("Failed"):
            self.status = f"Deleted {removed} stored scans, but {reload_status[0].lower()}{reload_status[1:]}"
        else:
            self.status = f"Deleted {removed} stored scans. {reload_status}"
        return self.status

    # --- corrections ---

    def propose_corrections(self, extended: bool = False) -> List[CorrectionProposal]:
        """Advisory similarity candidates for every unmatched code."""
        if extended:
            return self.matcher.propose(self.unmatched, self.missing, expected=self.expected, seen=self.seen)
        return self.matcher.propose(self.unmatched, self.missing)

    async def apply_correction(self, missing_code: str, unmatched_code: str) -> CorrectionResult:
        """
        Accept the scanned code as the truth for a missing expected code.

        Independent store writes (a fourth one removes the untruncated scan
        row when the code was cut to the target length); a failure stops the
        sequence and the result lists the steps already applied. The
        in-memory view only changes once every step succeeds.
        """
        missing_code = normalize_barcode(missing_code)
        unmatched_code = normalize_barcode(unmatched_code)
        steps: List[str] = []

        if missing_code not in self._expected_set or missing_code in self.seen:
            return CorrectionResult(False, missing_code, unmatched_code, None, steps,
                                    f"Not a missing code: {missing_code}")
        if unmatched_code not in self.unmatched:
            return CorrectionResult(False, missing_code, unmatched_code, None, steps,
                                    f"Not an unmatched code: {unmatched_code}")

        new_code = self.matcher.normalize_to_length(unmatched_code)
        try:
            await self.store.delete(self.ocr_table, filters={"text": missing_code})
            steps.append("deleted_expected")
            await self.store.upsert(
                self.ocr_table,
                [{"text": new_code, "prefixes": self.prefix_filter.label, "confidence": 100}],
                on_conflict="text",
            )
            steps.append("inserted_expected")
            scan_row = {**self._scan_row(new_code), "matched": True}
            await self.store.upsert(self.scan_table, [scan_row], on_conflict="session_id,text")
            steps.append("marked_scan_matched")
            if new_code != unmatched_code:
                # Otherwise load_scanned() would restore the untruncated code as unmatched
                await self.store.delete(
                    self.scan_table, filters={"session_id": self.session_id, "text": unmatched_code}
                )
                steps.append("removed_untruncated_scan")
        except PersistenceError as e:
            done = ", ".join(steps) if steps else "none"
            logger.warning(
                f"Session {self.session_id}: correction {missing_code} -> {new_code} failed "
                f"after steps [{done}]: {e}"
            )
            message = f"Correction failed: {e}"
            if steps:
                message = f"Correction partially applied (completed: {done}): {e}"
            return CorrectionResult(False, missing_code, unmatched_code, new_code, steps, message)

        self._expected_set.discard(missing_code)
        self._expected_set.add(new_code)
        self.expected = sorted(self._expected_set)
        if new_code != unmatched_code:
            self.seen.discard(unmatched_code)
            if new_code in self.seen:
                self._scanned = [c for c in self._scanned if c != unmatched_code]
            else:
                self._scanned = [new_code if c == unmatched_code else c for c in self._scanned]
            self.seen.add(new_code)
        self.pending.mark_synced(unmatched_code)
        self.partition()

        logger.info(f"Session {self.session_id}: corrected {missing_code} -> {new_code}")
        return CorrectionResult(True, missing_code, unmatched_code, new_code, steps,
                                f"Replaced {missing_code} with {new_code}")

    def counts(self) -> Dict[str, int]:
        return {
            "expected": len(self.expected),
            "matched": len(self.matched),
            "unmatched": len(self.unmatched),
            "missing": len(self.missing),
            "unsynced": len(self.pending),
        }
