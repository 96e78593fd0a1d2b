"""Expected-set replacement (manifest epochs).

Uploading a manifest replaces the whole expected set: the old rows are
deleted, the new ones are written in batches and then read back. The
store has no transactions, so a failure part way through is reported
with exactly what was already done.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple, Dict, Any
from dataclasses import dataclass, field

from .barcode import normalize_barcode, PrefixFilter
from .errors import ManifestReplaceNotConfirmed, PersistenceError
from .store import RowStore
from ..config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class ManifestEntry:
    """One code proposed for the expected set."""
    text: str
    confidence: float = 0.0


@dataclass
class ManifestUploadReport:
    """What a replace_expected call actually did."""
    success: bool
    epoch: Optional[str]
    message: str
    received: int = 0
    uploaded: int = 0
    batches: int = 0
    stored_count: int = 0
    duplicates: List[str] = field(default_factory=list)
    empty: List[str] = field(default_factory=list)
    missing_in_store: List[str] = field(default_factory=list)
    expected_cleared: bool = False
    scans_cleared: bool = False
    partial: bool = False


def _entry_fields(item: Any) -> Tuple[str, float]:
    if isinstance(item, str):
        return item, 0.0
    if isinstance(item, dict):
        return item.get("text") or item.get("code") or "", float(item.get("confidence") or 0.0)
    text = getattr(item, "text", None) or getattr(item, "code", None) or ""
    return text, float(getattr(item, "confidence", 0.0) or 0.0)


class ManifestUploader:
    """Replaces the expected set in the store, one epoch at a time."""

    def __init__(
        self,
        store: RowStore,
        settings: Optional[Settings] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.now = now

    @property
    def table(self) -> str:
        return self.settings.ocr_results_table

    def epoch_label(self) -> str:
        return self.now().strftime("epoch-%Y%m%dT%H%M%SZ")

    def prepare(self, entries: Iterable[Any]) -> Tuple[List[Tuple[str, float]], List[str], List[str]]:
        """
        Normalize and de-duplicate entries.

        Returns:
            Tuple of (payload as (code, confidence), duplicate codes, raw values that normalized to empty)
        """
        payload: List[Tuple[str, float]] = []
        seen = set()
        duplicates: List[str] = []
        empty: List[str] = []
        for item in entries:
            raw, confidence = _entry_fields(item)
            code = normalize_barcode(raw)
            if not code:
                empty.append(raw)
                continue
            if code in seen:
                duplicates.append(code)
                continue
            seen.add(code)
            payload.append((code, confidence))
        return payload, duplicates, empty

    async def replace_expected(
        self,
        entries: Iterable[Any],
        prefixes: Iterable[str] = (),
        *,
        confirm: bool = False,
        clear_scans: bool = False,
    ) -> ManifestUploadReport:
        """
        Discard the current expected set and load a new one.

        Args:
            entries: Codes (strings, ManifestEntry or extraction candidates)
            prefixes: Prefix filter active at capture time, stored as provenance
            confirm: Must be True; the operation is destructive
            clear_scans: Also delete every stored scan row

        Raises:
            ManifestReplaceNotConfirmed: confirm was not given
        """
        if not confirm:
            raise ManifestReplaceNotConfirmed(
                "Replacing the expected set deletes every stored expected code",
                "pass confirm=True to proceed",
            )

        entries = list(entries)
        payload, duplicates, empty = self.prepare(entries)
        report = ManifestUploadReport(
            success=False,
            epoch=None,
            message="",
            received=len(entries),
            duplicates=duplicates,
            empty=empty,
        )
        if not payload:
            report.message = "Nothing to upload: no codes after normalization"
            return report

        epoch = self.epoch_label()
        report.epoch = epoch
        label = PrefixFilter(prefixes).label

        try:
            await self.store.delete(self.table)
        except PersistenceError as e:
            logger.warning(f"Manifest {epoch}: clearing expected set failed: {e}")
            report.message = f"Failed to clear expected set, nothing changed: {e}"
            return report
        report.expected_cleared = True

        if clear_scans:
            try:
                await self.store.delete(self.settings.scan_items_table)
            except PersistenceError as e:
                logger.warning(f"Manifest {epoch}: expected set cleared but clearing scans failed: {e}")
                report.partial = True
                report.message = f"Expected set cleared but stored scans were not: {e}"
                return report
            report.scans_cleared = True

        batch_size = max(self.settings.manifest_batch_size, 1)
        for start in range(0, len(payload), batch_size):
            chunk = payload[start:start + batch_size]
            rows: List[Dict[str, Any]] = [
                {"text": code, "confidence": confidence, "prefixes": label, "name": epoch}
                for code, confidence in chunk
            ]
            try:
                await self.store.upsert(self.table, rows, on_conflict="text")
            except PersistenceError as e:
                logger.warning(
                    f"Manifest {epoch}: batch {report.batches + 1} failed after {report.uploaded} rows: {e}"
                )
                report.partial = True
                report.message = f"Uploaded {report.uploaded} of {len(payload)} codes before failure: {e}"
                return report
            report.batches += 1
            report.uploaded += len(rows)
            logger.info(f"Manifest {epoch}: batch {report.batches} uploaded ({len(rows)} rows)")

        report.success = True
        try:
            stored = await self.store.select(self.table, columns="text")
        except PersistenceError as e:
            logger.warning(f"Manifest {epoch}: verification read failed: {e}")
            report.message = f"Uploaded {report.uploaded} codes as {epoch} (not verified: {e})"
            return report

        stored_texts = {row.get("text") for row in stored}
        report.stored_count = len(stored_texts)
        report.missing_in_store = [code for code, _ in payload if code not in stored_texts]

        parts = [f"Uploaded {report.uploaded} codes in {report.batches} batch(es) as {epoch}"]
        if duplicates:
            parts.append(f"{len(duplicates)} duplicate(s) skipped")
        if empty:
            parts.append(f"{len(empty)} empty value(s) skipped")
        if report.missing_in_store:
            report.success = False
            parts.append(f"{len(report.missing_in_store)} code(s) missing from the store after upload")
        report.message = "; ".join(parts)
        logger.info(f"Manifest {epoch}: {report.message}")
        return report

    async def clear_all(self, *, confirm: bool = False) -> Tuple[bool, str]:
        """Delete every expected and scanned row."""
        if not confirm:
            raise ManifestReplaceNotConfirmed(
                "Clearing deletes every stored expected code and scan",
                "pass confirm=True to proceed",
            )
        try:
            removed_expected = await self.store.delete(self.table)
        except PersistenceError as e:
            return False, f"Failed to clear expected set, nothing changed: {e}"
        try:
            removed_scans = await self.store.delete(self.settings.scan_items_table)
        except PersistenceError as e:
            return False, f"Deleted {removed_expected} expected codes but stored scans were not cleared: {e}"
        logger.info(f"Cleared {removed_expected} expected codes and {removed_scans} scans")
        return True, f"Deleted {removed_expected} expected codes and {removed_scans} scans"
