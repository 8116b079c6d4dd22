"""Configuration management for the field expense system.

Loads and validates YAML configuration with sensible defaults
for capture, signature, recognition, storage, and report settings.
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class CaptureConfig(BaseModel):
    """Configuration for the document capture controller."""

    oversampling: int = 3
    settle_delay_ms: int = 250
    jpeg_quality: int = 85
    device_index: int = 0
    requested_width: int = 4096
    requested_height: int = 2160
    viewport_width: int = 1080
    viewport_height: int = 1920
    guide_width_ratio: float = 0.85
    guide_height_ratio: float = 0.6
    guide_max_width: float = 450
    guide_max_height: float = 600


class SignatureConfig(BaseModel):
    """Configuration for the signature drawing surface."""

    width: int = 600
    height: int = 192
    stroke_color: str = "#0f172a"
    line_width: int = 3
    jpeg_quality: int = 90


class RecognitionConfig(BaseModel):
    """Configuration for the receipt recognition collaborator."""

    model: str = "gpt-4o-mini"
    api_key_env: str = "OPENAI_API_KEY"
    timeout_s: float = 60.0
    default_currency: str = "PHP"
    default_category: str = "Miscellaneous"


class StorageConfig(BaseModel):
    """Configuration for durable metadata and receipt image storage."""

    data_dir: str = "data"
    entries_file: str = "ledger_entries.json"
    metadata_file: str = "report_metadata.json"
    blob_dir: str = "receipts"


class ReportConfig(BaseModel):
    """Configuration for liquidation report assembly."""

    company_name: str = "ComWorks Inc."
    company_address: str = "2/F CWI Corporate Center 1050 Quezon Ave., Quezon City"
    company_tin: str = "007-665-198-000"
    output_dir: str = "reports"
    currency_label: str = "PHP"
    address_placeholder: str = "Verified Branch"


class AppConfig(BaseModel):
    """Top-level application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    max_pending_drafts: int = 20
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    signature: SignatureConfig = Field(default_factory=SignatureConfig)
    recognition: RecognitionConfig = Field(default_factory=RecognitionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)
    log_level: str = "INFO"
    log_file: str | None = None


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.
            Defaults to configs/config.yaml.

    Returns:
        Validated application configuration.
    """
    if path is None:
        path = Path("configs/config.yaml")

    if path.exists():
        logger.info("Loading configuration from %s", path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        return AppConfig(**raw)

    logger.info("No config file found at %s, using defaults", path)
    return AppConfig()
