"""Services for recognition, extraction, reconciliation, similarity and inventory."""

from .barcode import normalize_barcode, parse_prefixes, PrefixFilter, suffix_matches
from .postprocess import repair_ocr_text
from .errors import (
    ScanMatchError,
    ValidationError,
    DuplicateError,
    PersistenceError,
    PreconditionError,
    AlreadyReceivedError,
    NotReceivedError,
    RecognitionError,
    ManifestReplaceNotConfirmed,
)
from .preprocessing import ImagePreprocessor, PageImage
from .ocr import OCRService, RecognitionResult, OCRLine, OCRWord
from .extraction import CodeExtractor, CodeCandidate, ExtractionResult, ExtractionStrategy
from .store import RowStore, InMemoryRowStore, PostgrestRowStore, build_store, default_unique_keys
from .similarity import score_similarity, SimilarityMatcher, SimilarityScore, CorrectionProposal
from .reconciliation import (
    ReconcileOptions,
    ScanSession,
    ScanOutcome,
    ScanStatus,
    SkipReason,
    Partition,
    PendingWriteQueue,
    CorrectionResult,
    compare_sets,
    to_csv,
)
from .manifest import ManifestUploader, ManifestEntry, ManifestUploadReport
from .inventory import InventoryTracker, InventoryReport, report_to_csv
from .sessions import SessionRegistry, AutoPersister

__all__ = [
    "normalize_barcode",
    "parse_prefixes",
    "PrefixFilter",
    "suffix_matches",
    "repair_ocr_text",
    "ScanMatchError",
    "ValidationError",
    "DuplicateError",
    "PersistenceError",
    "PreconditionError",
    "AlreadyReceivedError",
    "NotReceivedError",
    "RecognitionError",
    "ManifestReplaceNotConfirmed",
    "ImagePreprocessor",
    "PageImage",
    "OCRService",
    "RecognitionResult",
    "OCRLine",
    "OCRWord",
    "CodeExtractor",
    "CodeCandidate",
    "ExtractionResult",
    "ExtractionStrategy",
    "RowStore",
    "InMemoryRowStore",
    "PostgrestRowStore",
    "build_store",
    "default_unique_keys",
    "score_similarity",
    "SimilarityMatcher",
    "SimilarityScore",
    "CorrectionProposal",
    "ReconcileOptions",
    "ScanSession",
    "ScanOutcome",
    "ScanStatus",
    "SkipReason",
    "Partition",
    "PendingWriteQueue",
    "CorrectionResult",
    "compare_sets",
    "to_csv",
    "ManifestUploader",
    "ManifestEntry",
    "ManifestUploadReport",
    "InventoryTracker",
    "InventoryReport",
    "report_to_csv",
    "SessionRegistry",
    "AutoPersister",
]
