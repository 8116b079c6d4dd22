"""FastAPI application for the field expense liquidation service.

Provides REST endpoints for receipt scanning, ledger management, report
metadata, claimant signatures, report export, and health checks.
"""

import os
from typing import Annotated

from fastapi import Depends, FastAPI, File, HTTPException, Query, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from fieldexpense.ledger.models import (
    EntryDraft,
    ExpenseCategory,
    LedgerEntry,
    ReportMetadata,
)
from fieldexpense.ledger.store import EntryNotFoundError, LedgerClearedError
from fieldexpense.report.assembler import ReportAssemblyError, ReportValidationError
from fieldexpense.signature.rasterizer import PointerEvent, SignaturePad
from fieldexpense.storage.blob_store import BlobStoreError
from fieldexpense.utils.config import load_config
from fieldexpense.utils.logger import get_logger
from fieldexpense.workflow import (
    SIGNATURE_VIEW,
    DraftNotFoundError,
    ExpenseWorkflow,
    ExportInProgressError,
    PendingDraft,
    build_workflow,
)

from .schemas import (
    ClearResponse,
    DraftResponse,
    EntryUpdateRequest,
    ExpenseListResponse,
    HealthResponse,
    MetadataUpdateRequest,
    ReportErrorDetail,
    SignatureRequest,
)

logger = get_logger(__name__)

VERSION = "1.0.0"

app = FastAPI(
    title="Field Expense Liquidation API",
    description="Scan receipts, keep an expense ledger, and export signed reports",
    version=VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_ALLOWED_CONTENT_TYPES = {
    "image/png",
    "image/jpeg",
    "image/webp",
    "application/octet-stream",
}

_workflow: ExpenseWorkflow | None = None


async def get_workflow() -> ExpenseWorkflow:
    """Return the shared workflow, loading the ledger on first use."""
    global _workflow
    if _workflow is None:
        _workflow = build_workflow(load_config())
    await _workflow.start()
    return _workflow


WorkflowDep = Annotated[ExpenseWorkflow, Depends(get_workflow)]


def _draft_response(pending: PendingDraft) -> DraftResponse:
    return DraftResponse(
        draft_id=pending.draft_id,
        draft=pending.draft,
        recognized=pending.recognized,
        has_receipt=pending.receipt is not None,
        error=pending.error,
    )


@app.get("/health", response_model=HealthResponse)
async def health_check(workflow: WorkflowDep) -> HealthResponse:
    """Return system health status."""
    return HealthResponse(
        status="healthy",
        version=VERSION,
        ledger_loaded=workflow.ledger.is_loaded,
        entry_count=len(workflow.ledger.entries),
        recognition_configured=bool(
            os.getenv(workflow.config.recognition.api_key_env)
        ),
    )


@app.get("/expenses", response_model=ExpenseListResponse)
async def list_expenses(
    workflow: WorkflowDep,
    category: Annotated[ExpenseCategory | None, Query()] = None,
) -> ExpenseListResponse:
    """List ledger entries, newest first, optionally for one category."""
    ledger = workflow.ledger
    return ExpenseListResponse(
        entries=ledger.filter(category),
        total_spent=ledger.total_spent(),
        category_totals={k.value: v for k, v in ledger.category_totals().items()},
    )


@app.post("/expenses", response_model=LedgerEntry, status_code=201)
async def create_expense(draft: EntryDraft, workflow: WorkflowDep) -> LedgerEntry:
    """Record a manually entered expense without a receipt image."""
    pending = workflow.manual_draft()
    return await workflow.confirm(pending.draft_id, draft.model_dump())


@app.post("/expenses/scan", response_model=DraftResponse)
async def scan_receipt(
    file: Annotated[UploadFile, File(...)],
    workflow: WorkflowDep,
) -> DraftResponse:
    """Recognize an uploaded receipt image into a draft entry.

    Args:
        file: Uploaded receipt image (PNG, JPEG, or WEBP).

    Returns:
        The draft, to be confirmed through ``/drafts/{draft_id}/confirm``.
        When recognition fails the response is a 422 whose detail still
        carries a manual draft holding the image.
    """
    if file.content_type and file.content_type not in _ALLOWED_CONTENT_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type: {file.content_type}",
        )

    content = await file.read()
    try:
        pending = await workflow.upload(content, file.content_type or "image/jpeg")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if pending is None:
        raise HTTPException(status_code=409, detail="Scan view closed")

    response = _draft_response(pending)
    if not pending.recognized:
        raise HTTPException(
            status_code=422,
            detail={
                "message": "Recognition failed, please enter the details manually",
                "draft": response.model_dump(mode="json"),
            },
        )
    return response


@app.get("/drafts/{draft_id}", response_model=DraftResponse)
async def get_draft(draft_id: str, workflow: WorkflowDep) -> DraftResponse:
    try:
        return _draft_response(workflow.get_draft(draft_id))
    except DraftNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"No draft {draft_id}") from exc


@app.post("/drafts/{draft_id}/confirm", response_model=LedgerEntry, status_code=201)
async def confirm_draft(
    draft_id: str,
    workflow: WorkflowDep,
    edits: EntryUpdateRequest | None = None,
) -> LedgerEntry:
    """Confirm a draft, with optional corrections, into the ledger."""
    changes = edits.model_dump(exclude_unset=True) if edits else {}
    try:
        return await workflow.confirm(draft_id, changes)
    except DraftNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"No draft {draft_id}") from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except LedgerClearedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except BlobStoreError as exc:
        logger.error("Could not store receipt for draft %s: %s", draft_id, exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.delete("/drafts/{draft_id}", status_code=204)
async def discard_draft(draft_id: str, workflow: WorkflowDep) -> Response:
    workflow.discard_draft(draft_id)
    return Response(status_code=204)


@app.patch("/expenses/{entry_id}", response_model=LedgerEntry)
async def update_expense(
    entry_id: str, changes: EntryUpdateRequest, workflow: WorkflowDep
) -> LedgerEntry:
    try:
        return await workflow.ledger.update(
            entry_id, changes.model_dump(exclude_unset=True)
        )
    except EntryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.delete("/expenses/{entry_id}", status_code=204)
async def delete_expense(entry_id: str, workflow: WorkflowDep) -> Response:
    try:
        await workflow.ledger.delete(entry_id)
    except EntryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/expenses/{entry_id}/receipt")
async def get_receipt(entry_id: str, workflow: WorkflowDep) -> Response:
    """Return the stored proof image of an entry."""
    try:
        entry = workflow.ledger.get(entry_id)
    except EntryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    payload = None
    if entry.receipt_ref:
        try:
            payload = await workflow.ledger.blob_store.get(entry.receipt_ref)
        except BlobStoreError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
    if payload is None:
        raise HTTPException(status_code=404, detail=f"No receipt for {entry_id}")
    return Response(content=payload.data, media_type=payload.mime_type)


@app.get("/metadata", response_model=ReportMetadata)
async def get_metadata(workflow: WorkflowDep) -> ReportMetadata:
    return workflow.ledger.metadata


@app.put("/metadata", response_model=ReportMetadata)
async def update_metadata(
    changes: MetadataUpdateRequest, workflow: WorkflowDep
) -> ReportMetadata:
    return await workflow.ledger.update_metadata(
        changes.model_dump(exclude_unset=True)
    )


@app.post("/signature", response_model=ReportMetadata)
async def save_signature(
    request: SignatureRequest, workflow: WorkflowDep
) -> ReportMetadata:
    """Rasterize recorded pointer events into the claimant signature."""
    token = workflow.guard.open(SIGNATURE_VIEW)
    pad = SignaturePad(workflow.config.signature)
    for event in request.events:
        pad.handle_event(PointerEvent(event.type, event.x, event.y))

    try:
        metadata = await workflow.save_signature(pad, token)
    except ReportValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail=ReportErrorDetail(reason=exc.reason, prompt=exc.prompt).model_dump(),
        ) from exc
    except LedgerClearedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if metadata is None:
        raise HTTPException(status_code=409, detail="Signature view closed")
    return metadata


@app.post("/report")
async def export_report(workflow: WorkflowDep) -> Response:
    """Assemble the liquidation report and return it as a PDF download."""
    try:
        result = await workflow.generate_report()
    except ReportValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail=ReportErrorDetail(reason=exc.reason, prompt=exc.prompt).model_dump(),
        ) from exc
    except ExportInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ReportAssemblyError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    document = result.document
    return Response(
        content=document.content,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{document.filename}"',
            "X-Page-Count": str(document.page_count),
        },
    )


@app.post("/clear", response_model=ClearResponse)
async def clear_all(workflow: WorkflowDep) -> ClearResponse:
    """Delete every entry, reset metadata, and purge stored images."""
    await workflow.ledger.clear_all()
    return ClearResponse(status="cleared", entry_count=len(workflow.ledger.entries))
