"""The invoice-processing workflow: from uploaded document to stored invoice."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING
from uuid import UUID

from invoice_flow import repository
from invoice_flow.errors import ExtractionFailedError, InvoiceFlowError, WorkflowError
from invoice_flow.models import ExtractionResult, Invoice, InvoiceStatus
from invoice_flow.rules import decide_status
from invoice_flow.store import validate_upload

if TYPE_CHECKING:
    from invoice_flow.adapters.base import ExtractionAdapter
    from invoice_flow.models import SubmissionMetadata, UploadedFile
    from invoice_flow.store import FileStore
    from invoice_flow.workflow import WorkflowContext

logger = logging.getLogger(__name__)

WORKFLOW_NAME = "process_invoice"


@dataclass(frozen=True)
class ProcessingDeps:
    """Collaborators the workflow calls out to."""

    store: FileStore
    adapter: ExtractionAdapter


def process_invoice(
    ctx: WorkflowContext,
    deps: ProcessingDeps,
    upload: UploadedFile,
    metadata: SubmissionMetadata | None = None,
) -> Invoice:
    """Validate, store, extract, classify and persist one uploaded invoice.

    Steps 1-4 may touch the filesystem or the extraction service and are
    checkpointed; steps 5-7 are database transactions. Nothing is written to
    the invoice tables until extraction has succeeded.
    """
    ctx.step("validate_file", validate_upload, upload, retryable=False)

    file_path = ctx.step(
        "save_file",
        deps.store.save,
        upload.filename,
        upload.data,
        upload.mime_type,
        result_type=str,
    )

    extraction = ctx.step(
        "extract",
        _extract,
        ctx,
        deps.adapter,
        upload,
        result_type=ExtractionResult,
        retryable=False,
    )

    status = ctx.step(
        "decide_status",
        decide_status,
        extraction.invoice,
        extraction.confidence,
        result_type=InvoiceStatus,
    )

    invoice_id = ctx.transaction(
        "create_invoice",
        _create_invoice,
        extraction,
        status,
        file_path,
        metadata,
        result_type=UUID,
    )

    ctx.transaction(
        "create_line_items",
        repository.insert_line_items,
        invoice_id,
        extraction.invoice.line_items,
        result_type=int,
    )

    invoice = ctx.transaction(
        "read_invoice", repository.get_invoice, invoice_id, result_type=Invoice | None
    )
    if invoice is None:
        msg = f"Invoice {invoice_id} vanished after creation"
        raise WorkflowError(msg)

    logger.info("Invoice processing completed: %s, status: %s", invoice.id, invoice.status)
    return invoice


def _extract(
    ctx: WorkflowContext, adapter: ExtractionAdapter, upload: UploadedFile
) -> ExtractionResult:
    """Call the adapter with retries; only its own failures become EXTRACTION_FAILED."""
    try:
        for attempt in ctx.engine.retry_policy.retrying():
            with attempt:
                result = adapter.extract(upload.data, upload.mime_type)
    except InvoiceFlowError:
        raise
    except Exception as exc:
        msg = f"Extraction of {upload.filename} failed: {exc}"
        raise ExtractionFailedError(msg) from exc
    return result


def _create_invoice(
    conn: object,
    extraction: ExtractionResult,
    status: InvoiceStatus,
    file_path: str,
    metadata: SubmissionMetadata | None,
) -> UUID:
    return repository.insert_invoice(
        conn,  # type: ignore[arg-type]
        extracted=extraction.invoice,
        status=status,
        file_path=file_path,
        confidence=extraction.confidence,
        metadata=metadata,
    )
