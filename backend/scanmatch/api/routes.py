"""API route definitions."""

import time
from fastapi import APIRouter, Depends, UploadFile, File, Form, HTTPException, Query
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool
from typing import Optional
import logging

from ..models import (
    ErrorResponse,
    HealthResponse,
    CodeCandidate,
    ExtractionStats,
    ExtractResponse,
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
from ..services import (
    ImagePreprocessor,
    OCRService,
    CodeExtractor,
    ExtractionResult,
    RowStore,
    build_store,
    ManifestUploader,
    ManifestReplaceNotConfirmed,
    InventoryTracker,
    SessionRegistry,
    ScanSession,
    DuplicateError,
    PersistenceError,
    PreconditionError,
    RecognitionError,
    ValidationError,
    normalize_barcode,
    compare_sets,
    to_csv,
    report_to_csv,
)
from ..config import get_settings
from .. import __version__

logger = logging.getLogger(__name__)
router = APIRouter()

# Initialize services
settings = get_settings()
preprocessor = ImagePreprocessor()
ocr_service = OCRService()
store = build_store(settings)
registry = SessionRegistry(store, settings)

STORE_ERROR_RESPONSES = {502: {"model": ErrorResponse, "description": "Row store failure"}}


def get_store() -> RowStore:
    return store


def get_registry() -> SessionRegistry:
    return registry


def get_uploader(row_store: RowStore = Depends(get_store)) -> ManifestUploader:
    return ManifestUploader(row_store)


def get_tracker(row_store: RowStore = Depends(get_store)) -> InventoryTracker:
    return InventoryTracker(row_store)


def store_error(e: PersistenceError) -> HTTPException:
    logger.warning(f"Store failure: {e}")
    return HTTPException(status_code=502, detail=str(e))


def get_session(session_id: str, sessions: SessionRegistry = Depends(get_registry)) -> ScanSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    return session


def session_counts(session: ScanSession) -> SessionCounts:
    return SessionCounts(**session.counts())


def session_view(session: ScanSession, q: Optional[str] = None) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        prefixes=session.prefix_filter.label,
        status=session.status,
        counts=session_counts(session),
        items=[
            UnifiedItem(code=e.code, status=e.status.value, unsynced=e.unsynced)
            for e in session.unified_list(q)
        ],
        unsynced=session.pending.unsynced,
    )


@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(row_store: RowStore = Depends(get_store)):
    """Check API health, OCR readiness and row store reachability."""
    try:
        expected_count = await row_store.count(settings.ocr_results_table)
    except PersistenceError as e:
        logger.warning(f"Health check: store unreachable: {e}")
        expected_count = None
    return HealthResponse(
        status="healthy" if expected_count is not None else "degraded",
        version=__version__,
        ocr_ready=ocr_service.is_ready,
        store_backend=settings.store_backend,
        store_reachable=expected_count is not None,
        expected_count=expected_count,
    )


# --- OCR ---

@router.post(
    "/ocr/extract",
    response_model=ExtractResponse,
    responses={400: {"model": ErrorResponse, "description": "Invalid input"}},
    tags=["OCR"],
)
async def extract_codes(
    file: UploadFile = File(..., description="Manifest image or PDF"),
    prefixes: Optional[str] = Form(None, description="Comma separated prefixes, e.g. '2M'"),
):
    """
    Recognize a manifest and extract candidate codes from every page.

    Candidates are not stored; send them to /expected/replace once reviewed.
    """
    start_time = time.time()

    try:
        data = await file.read()
    except Exception as e:
        logger.error(f"Failed to read uploaded file: {e}")
        raise HTTPException(status_code=400, detail="Failed to read uploaded file")

    filename = file.filename or "unknown"
    is_valid, error_msg = preprocessor.validate_image(data, filename)
    if not is_valid:
        return ExtractResponse(success=False, error=error_msg)

    if not ocr_service.is_ready:
        return ExtractResponse(
            success=False,
            error="OCR service not ready. Please try again in a moment."
        )

    try:
        pages = await run_in_threadpool(preprocessor.load_pages, data, filename)
        extractor = CodeExtractor(prefixes=prefixes)
        merged: Optional[ExtractionResult] = None
        for page in pages:
            enhanced = await run_in_threadpool(preprocessor.enhance_contrast, page.image)
            recognized = await run_in_threadpool(ocr_service.recognize, enhanced)
            page_result = await run_in_threadpool(extractor.extract, recognized, page.page_number)
            merged = page_result if merged is None else merged.merge(page_result)
    except RecognitionError as e:
        return ExtractResponse(
            success=False,
            error=str(e),
            processing_time_ms=int((time.time() - start_time) * 1000),
        )
    except Exception as e:
        logger.exception(f"Error processing upload: {e}")
        raise HTTPException(status_code=500, detail=f"Error processing upload: {str(e)}")

    total_ms = int((time.time() - start_time) * 1000)
    if merged is None:
        return ExtractResponse(success=False, error="Document has no pages", processing_time_ms=total_ms)

    logger.info(f"Extracted {len(merged.candidates)} codes from {merged.pages} page(s) in {total_ms}ms")
    return ExtractResponse(
        success=True,
        candidates=[
            CodeCandidate(code=c.code, confidence=c.confidence, source=c.source.value, page=c.page)
            for c in merged.candidates
        ],
        stats=ExtractionStats(
            strategy=merged.strategy.value,
            pages=merged.pages,
            total_lines=merged.total_lines,
            empty_lines=merged.empty_lines,
            rejected_lines=merged.rejected_lines,
            rejected_examples=merged.rejected_examples,
        ),
        message=merged.message,
        processing_time_ms=total_ms,
    )


# --- expected set ---

@router.post(
    "/expected/replace",
    response_model=ManifestReportResponse,
    responses={409: {"model": ErrorResponse, "description": "Not confirmed"}},
    tags=["Expected"],
)
async def replace_expected(request: ReplaceExpectedRequest, uploader: ManifestUploader = Depends(get_uploader)):
    """Start a new manifest epoch: delete the expected set and upload the given codes."""
    try:
        report = await uploader.replace_expected(
            [c.model_dump() for c in request.candidates],
            request.prefixes,
            confirm=request.confirm,
            clear_scans=request.clear_scans,
        )
    except ManifestReplaceNotConfirmed as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ManifestReportResponse(
        success=report.success,
        epoch=report.epoch,
        message=report.message,
        received=report.received,
        uploaded=report.uploaded,
        batches=report.batches,
        stored_count=report.stored_count,
        duplicates=report.duplicates,
        empty=report.empty,
        missing_in_store=report.missing_in_store,
        partial=report.partial,
    )


@router.post("/expected/clear", response_model=StatusResponse, tags=["Expected"])
async def clear_expected(request: ClearAllRequest, uploader: ManifestUploader = Depends(get_uploader)):
    """Delete every expected code and every stored scan."""
    try:
        success, message = await uploader.clear_all(confirm=request.confirm)
    except ManifestReplaceNotConfirmed as e:
        raise HTTPException(status_code=409, detail=str(e))
    return StatusResponse(success=success, message=message)


@router.get("/expected", response_model=ExpectedResponse, responses=STORE_ERROR_RESPONSES, tags=["Expected"])
async def list_expected(row_store: RowStore = Depends(get_store)):
    """Current expected set, normalized and sorted."""
    try:
        rows = await row_store.select(settings.ocr_results_table, columns="text")
    except PersistenceError as e:
        raise store_error(e)
    codes = sorted({c for c in (normalize_barcode(r.get("text")) for r in rows) if c})
    return ExpectedResponse(count=len(codes), codes=codes)


# --- sessions ---

@router.post("/sessions", response_model=SessionResponse, tags=["Sessions"])
async def create_session(request: CreateSessionRequest, sessions: SessionRegistry = Depends(get_registry)):
    """Open a scan session and load the expected set into it."""
    try:
        session = sessions.create(prefixes=request.prefixes, session_id=request.session_id)
    except DuplicateError as e:
        raise HTTPException(status_code=409, detail=e.message)
    await session.load_expected()
    return session_view(session)


@router.delete(
    "/sessions/{session_id}",
    response_model=SyncResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown session"}, **STORE_ERROR_RESPONSES},
    tags=["Sessions"],
)
async def close_session(session: ScanSession = Depends(get_session),
                        sessions: SessionRegistry = Depends(get_registry)):
    """Write every pending scan, then release the session."""
    result = await sessions.release(session.session_id)
    if not result.success:
        raise HTTPException(status_code=502, detail=result.message)
    return SyncResponse(
        success=True, count=result.count, message=f"Closed session {session.session_id}",
        counts=session_counts(session),
    )


@router.get("/sessions/{session_id}", response_model=SessionResponse, tags=["Sessions"])
async def get_session_view(
    session: ScanSession = Depends(get_session),
    q: Optional[str] = Query(None, description="Filter by the last characters of the code"),
):
    """Unified list: unmatched, then missing, then matched."""
    return session_view(session, q)


@router.post("/sessions/{session_id}/scans", response_model=ScanResponse, tags=["Sessions"])
async def add_scan(request: ScanRequest, session: ScanSession = Depends(get_session)):
    """Classify one scan. Skips and store failures are reported in the body."""
    outcome = await session.add_scan(request.barcode)
    return ScanResponse(
        status=outcome.status.value,
        code=outcome.code,
        message=outcome.message,
        reason=outcome.reason.value if outcome.reason else None,
        persisted=outcome.persisted,
        error=outcome.error,
        counts=session_counts(session),
    )


@router.post("/sessions/{session_id}/refresh", response_model=SessionResponse, tags=["Sessions"])
async def refresh_session(session: ScanSession = Depends(get_session)):
    """Reload the expected set and restore this session's stored scans."""
    await session.load_expected()
    await session.load_scanned()
    return session_view(session)


@router.post("/sessions/{session_id}/upload", response_model=SyncResponse, tags=["Sessions"])
async def upload_session(session: ScanSession = Depends(get_session)):
    """Write every scanned code with its current classification."""
    result = await session.upload_batch()
    return SyncResponse(
        success=result.success, count=result.count, message=result.message, counts=session_counts(session)
    )


@router.post("/sessions/{session_id}/clear", response_model=SessionResponse, tags=["Sessions"])
async def clear_session(session: ScanSession = Depends(get_session)):
    """Forget scans in memory; stored rows are kept."""
    session.clear()
    return session_view(session)


@router.delete("/sessions/{session_id}/scans", response_model=SessionResponse, tags=["Sessions"])
async def clear_session_store(session: ScanSession = Depends(get_session)):
    """Delete this session's stored scans and reload the expected set."""
    await session.clear_scan_store()
    return session_view(session)


@router.get("/sessions/{session_id}/corrections", response_model=CorrectionsResponse, tags=["Corrections"])
async def list_corrections(session: ScanSession = Depends(get_session), extended: bool = False):
    """Similarity candidates for every unmatched code (read only)."""
    proposals = session.propose_corrections(extended=extended)
    return CorrectionsResponse(
        session_id=session.session_id,
        extended=extended,
        proposals=[
            CorrectionProposal(
                unmatched_code=p.unmatched_code,
                missing_candidates=[
                    SimilarityCandidate(code=c.code, similarity=c.similarity, rule=c.rule.value,
                                        explanation=c.explanation)
                    for c in p.missing_candidates
                ],
                scanned_candidates=[
                    SimilarityCandidate(code=c.code, similarity=c.similarity, rule=c.rule.value,
                                        explanation=c.explanation)
                    for c in p.scanned_candidates
                ],
            )
            for p in proposals
        ],
    )


@router.post("/sessions/{session_id}/corrections", response_model=CorrectionResponse, tags=["Corrections"])
async def apply_correction(request: ApplyCorrectionRequest, session: ScanSession = Depends(get_session)):
    """Replace a missing expected code with the scanned code."""
    result = await session.apply_correction(request.missing_code, request.unmatched_code)
    return CorrectionResponse(
        success=result.success,
        partial=result.partial,
        new_expected_code=result.new_expected_code,
        steps_completed=result.steps_completed,
        message=result.message,
        counts=session_counts(session),
    )


# --- compare ---

async def _compare(row_store: RowStore, session_id: Optional[str]):
    expected = await row_store.select(settings.ocr_results_table, columns="text")
    filters = {"session_id": session_id} if session_id else None
    scanned = await row_store.select(settings.scan_items_table, columns="text", filters=filters)
    return compare_sets((r.get("text") for r in expected), (r.get("text") for r in scanned))


@router.get("/compare", response_model=CompareResponse, responses=STORE_ERROR_RESPONSES, tags=["Compare"])
async def compare(
    session_id: Optional[str] = Query(None, description="Restrict scans to one session"),
    row_store: RowStore = Depends(get_store),
):
    """Full-set diff of the stored expected set against stored scans."""
    try:
        result = await _compare(row_store, session_id)
    except PersistenceError as e:
        raise store_error(e)
    return CompareResponse(matched=result.matched, missing=result.missing, unexpected=result.unexpected)


@router.get("/compare/{partition}.csv", responses=STORE_ERROR_RESPONSES, tags=["Compare"])
async def compare_csv(
    partition: str,
    session_id: Optional[str] = Query(None),
    row_store: RowStore = Depends(get_store),
):
    """Download one partition of the diff as CSV."""
    if partition not in ("matched", "missing", "unexpected"):
        raise HTTPException(status_code=404, detail=f"Unknown partition: {partition}")
    try:
        result = await _compare(row_store, session_id)
    except PersistenceError as e:
        raise store_error(e)
    return Response(
        content=to_csv(getattr(result, partition)),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{partition}.csv"'},
    )


# --- inventory ---

def _record_response(record, message: str) -> InventoryRecordResponse:
    return InventoryRecordResponse(
        success=True,
        barcode=record.barcode,
        received_at=record.received_at,
        disposed_at=record.disposed_at,
        message=message,
    )


@router.post(
    "/inventory/receive",
    response_model=InventoryRecordResponse,
    responses={409: {"model": ErrorResponse, "description": "Already received"}, **STORE_ERROR_RESPONSES},
    tags=["Inventory"],
)
async def receive(request: InventoryScanRequest, tracker: InventoryTracker = Depends(get_tracker)):
    try:
        record = await tracker.receive(request.barcode)
    except ValidationError as e:
        return InventoryRecordResponse(success=False, error=str(e))
    except PreconditionError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except PersistenceError as e:
        raise store_error(e)
    return _record_response(record, f"Received: {record.barcode}")


@router.post(
    "/inventory/dispose",
    response_model=InventoryRecordResponse,
    responses={409: {"model": ErrorResponse, "description": "Not received"}, **STORE_ERROR_RESPONSES},
    tags=["Inventory"],
)
async def dispose(request: InventoryScanRequest, tracker: InventoryTracker = Depends(get_tracker)):
    try:
        record = await tracker.dispose(request.barcode)
    except ValidationError as e:
        return InventoryRecordResponse(success=False, error=str(e))
    except PreconditionError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except PersistenceError as e:
        raise store_error(e)
    return _record_response(record, f"Disposed: {record.barcode}")


@router.get(
    "/inventory/report",
    response_model=InventoryReportResponse,
    responses=STORE_ERROR_RESPONSES,
    tags=["Inventory"],
)
async def inventory_report(
    status: str = Query("all", pattern="^(all|active|disposed)$"),
    tracker: InventoryTracker = Depends(get_tracker),
):
    try:
        report = await tracker.report(status)
    except PersistenceError as e:
        raise store_error(e)
    return InventoryReportResponse(
        generated_at=report.generated_at,
        total=report.total,
        active=report.active,
        disposed=report.disposed,
        disposed_today=report.disposed_today,
        aging=dict(report.aging),
        rows=[
            InventoryRow(
                barcode=r.barcode,
                received_at=r.received_at,
                disposed_at=r.disposed_at,
                days_in_stock=r.days_in_stock,
                status=r.status.value,
            )
            for r in report.rows
        ],
    )


@router.get("/inventory/report.csv", responses=STORE_ERROR_RESPONSES, tags=["Inventory"])
async def inventory_report_csv(
    status: str = Query("all", pattern="^(all|active|disposed)$"),
    tracker: InventoryTracker = Depends(get_tracker),
):
    try:
        report = await tracker.report(status)
    except PersistenceError as e:
        raise store_error(e)
    filename = f"inventory_report_{report.generated_at.strftime('%Y-%m-%d')}.csv"
    return Response(
        content=report_to_csv(report),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
