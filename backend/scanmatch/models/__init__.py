"""Pydantic models for request/response schemas."""

from .schemas import (
    PartitionStatus,
    ErrorResponse,
    HealthResponse,
    CodeCandidate,
    ExtractionStats,
    ExtractResponse,
    ManifestEntry,
    ReplaceExpectedRequest,
    ManifestReportResponse,
    ClearAllRequest,
    StatusResponse,
    ExpectedResponse,
    CreateSessionRequest,
    SessionCounts,
    UnifiedItem,
    SessionResponse,
    ScanRequest,
    ScanResponse,
    SyncResponse,
    SimilarityCandidate,
    CorrectionProposal,
    CorrectionsResponse,
    ApplyCorrectionRequest,
    CorrectionResponse,
    CompareResponse,
    InventoryScanRequest,
    InventoryRecordResponse,
    InventoryRow,
    InventoryReportResponse,
)

__all__ = [
    "PartitionStatus",
    "ErrorResponse",
    "HealthResponse",
    "CodeCandidate",
    "ExtractionStats",
    "ExtractResponse",
    "ManifestEntry",
    "ReplaceExpectedRequest",
    "ManifestReportResponse",
    "ClearAllRequest",
    "StatusResponse",
    "ExpectedResponse",
    "CreateSessionRequest",
    "SessionCounts",
    "UnifiedItem",
    "SessionResponse",
    "ScanRequest",
    "ScanResponse",
    "SyncResponse",
    "SimilarityCandidate",
    "CorrectionProposal",
    "CorrectionsResponse",
    "ApplyCorrectionRequest",
    "CorrectionResponse",
    "CompareResponse",
    "InventoryScanRequest",
    "InventoryRecordResponse",
    "InventoryRow",
    "InventoryReportResponse",
]
