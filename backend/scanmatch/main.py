"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router
from .api import routes
from .services import OCRService, AutoPersister
from .config import get_settings
from . import __version__

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - handles startup and shutdown."""
    logger.info("Starting Scan Reconciliation API...")
    settings = get_settings()

    # Initialize OCR engine on startup (keep warm)
    ocr_service = OCRService()
    if ocr_service.initialize():
        logger.info("OCR engine initialized and ready")
    else:
        logger.warning("OCR engine failed to initialize - manifest OCR unavailable")

    persister = AutoPersister(routes.registry, settings.autosave_interval_seconds)
    persister.start()
    app.state.persister = persister

    logger.info(f"API ready - Version {__version__} (store: {settings.store_backend})")

    yield

    logger.info("Shutting down Scan Reconciliation API...")
    await persister.stop()
    await routes.registry.flush_all()
    await routes.store.aclose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="""
## Warehouse Scan Reconciliation API

Compares scanned barcodes against an expected manifest recognized from
printed documents, and tracks inventory receipt and disposal.

### Features
- **Manifest OCR**: Extract codes from images and multi-page PDFs
- **Expected set epochs**: Confirmed, batched replacement of the manifest
- **Scan sessions**: Matched / unmatched / missing classification
- **Corrections**: Similarity candidates for probable OCR misreads
- **Inventory**: Receive, dispose and aging reports (CSV export)

### Quick Start
1. Use `/health` to check API status
2. Use `/ocr/extract` then `/expected/replace` to load a manifest
3. Use `/sessions` to open a scan session and post scans to it
        """,
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api/v1")

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "message": "Scan Reconciliation API",
            "version": __version__,
            "docs": "/docs"
        }

    return app


# Create app instance
app = create_app()
