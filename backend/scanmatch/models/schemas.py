"""Pydantic schemas for API requests and responses."""

from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional


class PartitionStatus(str, Enum):
    """Where a code sits relative to the expected and scanned sets."""
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    MISSING = "missing"


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "success": False,
                "error": "duplicate key value violates unique constraint",
                "detail": "Key (text)=(2M000000000001) already exists.",
            }
        }


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    ocr_ready: bool
    store_backend: str
    store_reachable: bool = True
    expected_count: Optional[int] = None


# --- OCR / manifest ---

class CodeCandidate(BaseModel):
    code: str
    confidence: float = Field(0.0, ge=0.0, le=100.0)
    source: str
    page: int = 1


class ExtractionStats(BaseModel):
    """Line statistics shown in the upload status panel."""
    strategy: str
    pages: int
    total_lines: int
    empty_lines: int
    rejected_lines: int
    rejected_examples: list[str] = []


class ExtractResponse(BaseModel):
    """Response for OCR code extraction."""
    success: bool
    candidates: list[CodeCandidate] = []
    stats: Optional[ExtractionStats] = None
    message: Optional[str] = None
    error: Optional[str] = None
    processing_time_ms: int = 0


class ManifestEntry(BaseModel):
    text: str
    confidence: float = Field(0.0, ge=0.0, le=100.0)


class ReplaceExpectedRequest(BaseModel):
    """Replace the whole expected set (destructive)."""
    candidates: list[ManifestEntry]
    prefixes: str = ""
    confirm: bool = Field(False, description="Must be true; the previous expected set is deleted")
    clear_scans: bool = Field(False, description="Also delete every stored scan")

    class Config:
        json_schema_extra = {
            "example": {
                "candidates": [{"text": "2M000000000001", "confidence": 91.5}],
                "prefixes": "2M",
                "confirm": True,
                "clear_scans": False,
            }
        }


class ManifestReportResponse(BaseModel):
    success: bool
    epoch: Optional[str] = None
    message: str
    received: int = 0
    uploaded: int = 0
    batches: int = 0
    stored_count: int = 0
    duplicates: list[str] = []
    empty: list[str] = []
    missing_in_store: list[str] = []
    partial: bool = False


class ClearAllRequest(BaseModel):
    confirm: bool = False


class StatusResponse(BaseModel):
    success: bool
    message: str


class ExpectedResponse(BaseModel):
    count: int
    codes: list[str]


# --- sessions ---

class CreateSessionRequest(BaseModel):
    prefixes: Optional[str] = Field(None, description="Comma separated prefixes, e.g. '2M'")
    session_id: Optional[str] = Field(None, description="Station-chosen id; generated when omitted")


class SessionCounts(BaseModel):
    expected: int
    matched: int
    unmatched: int
    missing: int
    unsynced: int


class UnifiedItem(BaseModel):
    code: str
    status: PartitionStatus
    unsynced: bool = False


class SessionResponse(BaseModel):
    """Unified view of a scan session."""
    session_id: str
    prefixes: str
    status: str
    counts: SessionCounts
    items: list[UnifiedItem] = []
    unsynced: list[str] = []


class ScanRequest(BaseModel):
    barcode: str = Field(..., description="Raw scanner or camera input")


class ScanResponse(BaseModel):
    status: str
    code: str
    message: str
    reason: Optional[str] = None
    persisted: bool = False
    error: Optional[str] = None
    counts: SessionCounts


class SyncResponse(BaseModel):
    success: bool
    count: int
    message: str
    counts: SessionCounts


class SimilarityCandidate(BaseModel):
    code: str
    similarity: float = Field(ge=0.0, le=1.0)
    rule: str
    explanation: str


class CorrectionProposal(BaseModel):
    unmatched_code: str
    missing_candidates: list[SimilarityCandidate] = []
    scanned_candidates: list[SimilarityCandidate] = []


class CorrectionsResponse(BaseModel):
    session_id: str
    extended: bool
    proposals: list[CorrectionProposal]


class ApplyCorrectionRequest(BaseModel):
    missing_code: str
    unmatched_code: str


class CorrectionResponse(BaseModel):
    success: bool
    partial: bool = False
    new_expected_code: Optional[str] = None
    steps_completed: list[str] = []
    message: str
    counts: SessionCounts


# --- compare ---

class CompareResponse(BaseModel):
    matched: list[str]
    missing: list[str]
    unexpected: list[str]


# --- inventory ---

class InventoryScanRequest(BaseModel):
    barcode: str


class InventoryRecordResponse(BaseModel):
    success: bool
    barcode: Optional[str] = None
    received_at: Optional[datetime] = None
    disposed_at: Optional[datetime] = None
    message: Optional[str] = None
    error: Optional[str] = None


class InventoryRow(BaseModel):
    barcode: str
    received_at: datetime
    disposed_at: Optional[datetime] = None
    days_in_stock: int
    status: str


class InventoryReportResponse(BaseModel):
    generated_at: datetime
    total: int
    active: int
    disposed: int
    disposed_today: int
    aging: dict[str, int]
    rows: list[InventoryRow]
