"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App settings
    app_name: str = "Scan Reconciliation API"
    debug: bool = False

    # CORS - Allow all origins for the station browsers (restrict in production)
    cors_origins: list[str] = ["*"]

    # Upload limits
    max_upload_size_mb: int = 20  # Multi-page PDF manifests can be large
    min_image_dimension: int = 100  # Below this the recognizer finds nothing useful
    allowed_extensions: set = {"png", "jpg", "jpeg", "webp", "pdf"}

    # OCR settings
    ocr_languages: list[str] = ["ko", "en"]
    ocr_max_concurrent: int = 1  # CPU-bound, no benefit from concurrency
    contrast_factor: float = 2.0
    pdf_render_scale: float = 3.0  # 72dpi * 3 = 216dpi per page
    word_line_tolerance_px: int = 6
    word_window_size: int = 4
    # 0 = aggressive B->8 repair always applied
    ocr_aggressive_repair_min_confidence: float = 0.0

    # Reconciliation defaults
    allowed_prefixes: str = "2M"
    inventory_prefixes: str = "1M,2M"
    target_code_length: int = 14
    similarity_threshold: float = 0.7
    similarity_top_n: int = 5
    suffix_length: int = 3

    # Row store
    store_backend: str = "memory"  # "memory" or "postgrest"
    postgrest_url: str = ""
    postgrest_api_key: str | None = None
    store_timeout_seconds: float = 10.0
    ocr_results_table: str = "ocr_results"
    scan_items_table: str = "scan_items"
    inventory_table: str = "inventory"
    manifest_batch_size: int = 500  # Hosted REST endpoints cap request rows

    # Auto-persist / retry
    autosave_interval_seconds: float = 5.0
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 60.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
