"""Shared test fixtures for the field expense test suite."""

import asyncio
from pathlib import Path

import numpy as np
import pytest
from helpers import FakeService, RecordingBlobStore, SequentialIds, make_image_bytes

from fieldexpense.ledger.store import LedgerStore
from fieldexpense.recognition.adapter import RecognitionAdapter
from fieldexpense.report.assembler import ReportAssembler
from fieldexpense.storage.blob_store import BlobPayload
from fieldexpense.storage.metadata_store import MetadataStore
from fieldexpense.utils.config import (
    AppConfig,
    CaptureConfig,
    ReportConfig,
    StorageConfig,
)
from fieldexpense.workflow import ExpenseWorkflow

RECOGNIZED_RECEIPT = {
    "title": "Jollibee Quezon Ave",
    "date": "2024-03-15",
    "amount": 245.5,
    "currency": "PHP",
    "category": "Food",
    "issuerAddress": "Quezon Ave, Quezon City",
    "explanation": "Team lunch",
}


@pytest.fixture
def sample_frame() -> np.ndarray:
    """Create a synthetic 4096x2160 BGR video frame."""
    frame = np.zeros((2160, 4096, 3), dtype=np.uint8)
    frame[:, :, 1] = 128
    return frame


@pytest.fixture
def capture_config() -> CaptureConfig:
    return CaptureConfig(settle_delay_ms=0)


@pytest.fixture
def jpeg_payload() -> BlobPayload:
    return BlobPayload(make_image_bytes("JPEG"), "image/jpeg")


@pytest.fixture
def png_payload() -> BlobPayload:
    return BlobPayload(make_image_bytes("PNG"), "image/png")


@pytest.fixture
def blob_store() -> RecordingBlobStore:
    return RecordingBlobStore()


@pytest.fixture
def metadata_store(tmp_path: Path) -> MetadataStore:
    return MetadataStore(tmp_path / "data")


@pytest.fixture
def ledger(
    metadata_store: MetadataStore, blob_store: RecordingBlobStore
) -> LedgerStore:
    """Create an unloaded ledger store with deterministic ids."""
    return LedgerStore(metadata_store, blob_store, id_factory=SequentialIds())


@pytest.fixture
def recognition_service() -> FakeService:
    return FakeService(dict(RECOGNIZED_RECEIPT))


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Application config rooted in a temporary directory."""
    return AppConfig(
        capture=CaptureConfig(settle_delay_ms=0),
        storage=StorageConfig(data_dir=str(tmp_path / "data")),
        report=ReportConfig(output_dir=str(tmp_path / "reports")),
    )


@pytest.fixture
def workflow(
    ledger: LedgerStore,
    blob_store: RecordingBlobStore,
    recognition_service: FakeService,
    app_config: AppConfig,
) -> ExpenseWorkflow:
    """Create a started workflow over in-memory payload storage."""
    adapter = RecognitionAdapter(recognition_service, app_config.recognition)
    assembler = ReportAssembler(app_config.report, blob_store)
    wf = ExpenseWorkflow(ledger, adapter, assembler, app_config)
    asyncio.run(wf.start())
    return wf


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_dir(project_root: Path) -> Path:
    """Return the configs directory path."""
    return project_root / "configs"
