"""End-to-end tests for InvoiceService against PostgreSQL.

Run with TEST_DATABASE_URL pointing at a disposable database.
"""

from __future__ import annotations

import threading
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock
from uuid import UUID

import pytest

from invoice_flow.adapters.fixture import FixtureExtractionAdapter
from invoice_flow.db import transaction
from invoice_flow.errors import (
    ExtractionFailedError,
    InsufficientPermissionsError,
    InvalidStatusTransitionError,
    NotFoundError,
    ValidationError,
)
from invoice_flow.models import (
    ExtractionResult,
    InvoiceStatus,
    SubmissionMetadata,
    TransitionAction,
    UploadedFile,
    User,
    UserRole,
)
from invoice_flow.service import InvoiceService
from invoice_flow.store import LocalFileStore
from invoice_flow.workflow import (
    ERROR,
    SUCCESS,
    PostgresWorkflowStore,
    RetryPolicy,
    WorkflowEngine,
)

if TYPE_CHECKING:
    from pathlib import Path

    from psycopg_pool import ConnectionPool

    from invoice_flow.adapters.base import ExtractionAdapter
    from invoice_flow.models import ExtractedInvoice, ExtractionConfidence

pytestmark = pytest.mark.integration

NO_BACKOFF = RetryPolicy(max_attempts=2, backoff_seconds=0, max_backoff_seconds=0)


def _service(
    pool: ConnectionPool, root: Path, adapter: ExtractionAdapter | None = None
) -> InvoiceService:
    return InvoiceService(
        pool,
        LocalFileStore(root),
        adapter or FixtureExtractionAdapter(),
        WorkflowEngine(PostgresWorkflowStore(pool), NO_BACKOFF),
    )


def _count(pool: ConnectionPool, table: str) -> int:
    with transaction(pool) as conn:
        row = conn.execute(f"SELECT count(*) AS n FROM {table}").fetchone()  # noqa: S608
    return row["n"]  # type: ignore[index,no-any-return]


def _user(service: InvoiceService, role: UserRole, name: str) -> User:
    return service.create_user(
        {"email": f"{name}@example.com", "name": name.title(), "role": role.value}
    )


@pytest.fixture
def invoice_service(db_pool: ConnectionPool, store_root: Path) -> InvoiceService:
    return _service(db_pool, store_root)


@pytest.fixture
def approval_service(db_pool: ConnectionPool, store_root: Path) -> InvoiceService:
    """Service whose extractions are confident enough to skip review."""
    return _service(db_pool, store_root, FixtureExtractionAdapter(overall_confidence=0.97))


class TestSubmission:
    def test_creates_invoice(
        self, invoice_service: InvoiceService, sample_upload: UploadedFile, store_root: Path
    ) -> None:
        invoice = invoice_service.submit_invoice(sample_upload)

        assert invoice.status is InvoiceStatus.NEEDS_REVIEW
        assert invoice.total_amount == Decimal("1080.00")
        assert invoice.currency == "USD"
        assert invoice.extraction_confidence is not None
        assert invoice.extraction_confidence.overall_confidence == 0.93
        assert [item.line_number for item in invoice.line_items] == [1]
        assert (store_root / invoice.file_path).read_bytes() == sample_upload.data
        assert invoice_service.get_invoice(invoice.id).model_dump() == invoice.model_dump()

    def test_resubmission_is_idempotent(
        self,
        invoice_service: InvoiceService,
        sample_upload: UploadedFile,
        db_pool: ConnectionPool,
    ) -> None:
        first = invoice_service.submit_invoice(sample_upload)
        second = invoice_service.submit_invoice(sample_upload)

        assert first.id == second.id
        assert _count(db_pool, "invoices") == 1
        assert _count(db_pool, "line_items") == 1
        runs = PostgresWorkflowStore(db_pool).list_runs()
        assert [(run.status, run.attempts) for run in runs] == [(SUCCESS, 1)]

    def test_idempotency_key_overrides_content(
        self,
        invoice_service: InvoiceService,
        sample_upload: UploadedFile,
        db_pool: ConnectionPool,
    ) -> None:
        other = UploadedFile("other.pdf", "application/pdf", b"%PDF-1.4 other")

        first = invoice_service.submit_invoice(sample_upload, idempotency_key="k-1")
        second = invoice_service.submit_invoice(other, idempotency_key="k-1")

        assert first.id == second.id
        assert _count(db_pool, "invoices") == 1

    def test_line_item_order_preserved(
        self,
        db_pool: ConnectionPool,
        store_root: Path,
        sample_upload: UploadedFile,
        clean_invoice: ExtractedInvoice,
        high_confidence: ExtractionConfidence,
    ) -> None:
        adapter = MagicMock()
        adapter.extract.return_value = ExtractionResult(
            invoice=clean_invoice, confidence=high_confidence
        )

        invoice = _service(db_pool, store_root, adapter).submit_invoice(sample_upload)

        assert invoice.status is InvoiceStatus.AWAITING_APPROVAL
        assert [(i.line_number, i.description) for i in invoice.line_items] == [
            (1, "Laptop stand"),
            (2, "USB-C dock"),
        ]

    def test_extraction_failure_leaves_no_invoice(
        self,
        db_pool: ConnectionPool,
        store_root: Path,
        sample_upload: UploadedFile,
    ) -> None:
        adapter = MagicMock()
        adapter.extract.side_effect = ConnectionError("extraction service down")

        with pytest.raises(ExtractionFailedError):
            _service(db_pool, store_root, adapter).submit_invoice(sample_upload)

        assert _count(db_pool, "invoices") == 0
        assert adapter.extract.call_count == NO_BACKOFF.max_attempts
        runs = PostgresWorkflowStore(db_pool).list_runs(ERROR)
        assert len(runs) == 1
        assert "EXTRACTION_FAILED" in (runs[0].error or "")

    def test_links_vendor_by_name(
        self, invoice_service: InvoiceService, sample_upload: UploadedFile
    ) -> None:
        vendor = invoice_service.create_vendor({"name": "ACME corp"})

        invoice = invoice_service.submit_invoice(
            sample_upload, SubmissionMetadata(purchase_order_number="PO-42")
        )

        assert invoice.vendor_id == vendor.id
        assert invoice.vendor_name == "ACME corp"
        assert invoice.purchase_order_number == "PO-42"


class TestTransitions:
    def test_review_then_approve(
        self, invoice_service: InvoiceService, sample_upload: UploadedFile
    ) -> None:
        clerk = _user(invoice_service, UserRole.FINANCE_CLERK, "clerk")
        manager = _user(invoice_service, UserRole.FINANCE_MANAGER, "manager")
        invoice = invoice_service.submit_invoice(sample_upload)

        invoice = invoice_service.submit_for_approval(invoice.id, clerk.id, clerk.role)
        assert invoice.status is InvoiceStatus.AWAITING_APPROVAL

        invoice = invoice_service.approve(invoice.id, manager.id, manager.role)
        assert invoice.status is InvoiceStatus.APPROVED
        assert invoice.approved_by == manager.id

        history = invoice_service.invoice_history(invoice.id)
        assert [(e.action, e.from_status, e.to_status) for e in history] == [
            (
                TransitionAction.SUBMIT_FOR_APPROVAL,
                InvoiceStatus.NEEDS_REVIEW,
                InvoiceStatus.AWAITING_APPROVAL,
            ),
            (
                TransitionAction.APPROVE,
                InvoiceStatus.AWAITING_APPROVAL,
                InvoiceStatus.APPROVED,
            ),
        ]

    def test_illegal_transition_leaves_row_unchanged(
        self, invoice_service: InvoiceService, sample_upload: UploadedFile
    ) -> None:
        manager = _user(invoice_service, UserRole.FINANCE_MANAGER, "manager")
        before = invoice_service.submit_invoice(sample_upload)

        with pytest.raises(InvalidStatusTransitionError):
            invoice_service.approve(before.id, manager.id, manager.role)

        after = invoice_service.get_invoice(before.id)
        assert after.model_dump() == before.model_dump()
        assert invoice_service.invoice_history(before.id) == []

    def test_clerk_cannot_approve(
        self, approval_service: InvoiceService, sample_upload: UploadedFile
    ) -> None:
        clerk = _user(approval_service, UserRole.FINANCE_CLERK, "clerk")
        invoice = approval_service.submit_invoice(sample_upload)

        with pytest.raises(InsufficientPermissionsError):
            approval_service.approve(invoice.id, clerk.id, clerk.role)

        assert approval_service.get_invoice(invoice.id).status is InvoiceStatus.AWAITING_APPROVAL

    def test_claimed_role_must_match_stored_role(
        self, approval_service: InvoiceService, sample_upload: UploadedFile
    ) -> None:
        clerk = _user(approval_service, UserRole.FINANCE_CLERK, "clerk")
        invoice = approval_service.submit_invoice(sample_upload)

        with pytest.raises(InsufficientPermissionsError):
            approval_service.approve(invoice.id, clerk.id, UserRole.FINANCE_MANAGER)

    def test_concurrent_approvals_one_wins(
        self, approval_service: InvoiceService, sample_upload: UploadedFile
    ) -> None:
        managers = [
            _user(approval_service, UserRole.FINANCE_MANAGER, f"manager{n}") for n in (1, 2)
        ]
        invoice = approval_service.submit_invoice(sample_upload)
        barrier = threading.Barrier(len(managers))
        outcomes: list[Any] = []

        def approve(manager: User) -> None:
            barrier.wait()
            try:
                outcomes.append(approval_service.approve(invoice.id, manager.id, manager.role))
            except InvalidStatusTransitionError as exc:
                outcomes.append(exc)

        threads = [threading.Thread(target=approve, args=(m,)) for m in managers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        errors = [o for o in outcomes if isinstance(o, InvalidStatusTransitionError)]
        approved = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(errors) == 1
        assert len(approved) == 1
        assert approved[0].status is InvoiceStatus.APPROVED
        assert len(approval_service.invoice_history(invoice.id)) == 1

    def test_reject_records_reason(
        self, approval_service: InvoiceService, sample_upload: UploadedFile
    ) -> None:
        manager = _user(approval_service, UserRole.FINANCE_MANAGER, "manager")
        invoice = approval_service.submit_invoice(sample_upload)

        rejected = approval_service.reject(invoice.id, manager.id, manager.role, "Duplicate")

        assert rejected.status is InvoiceStatus.REJECTED
        assert rejected.rejection_reason == "Duplicate"
        assert approval_service.invoice_history(invoice.id)[0].reason == "Duplicate"

    def test_update_fields_and_line_items(
        self, invoice_service: InvoiceService, sample_upload: UploadedFile
    ) -> None:
        clerk = _user(invoice_service, UserRole.FINANCE_CLERK, "clerk")
        invoice = invoice_service.submit_invoice(sample_upload)
        line = {"quantity": "1", "unit_price": "500.00", "line_total": "500.00"}

        updated = invoice_service.update_invoice(
            invoice.id,
            clerk.id,
            clerk.role,
            {
                "invoice_number": "INV-EDITED",
                "line_items": [
                    {**line, "description": "Second", "line_number": 2},
                    {**line, "description": "First", "line_number": 1},
                ],
            },
        )

        assert updated.status is InvoiceStatus.NEEDS_REVIEW
        assert updated.invoice_number == "INV-EDITED"
        assert updated.total_amount == Decimal("1080.00")
        assert [(i.line_number, i.description) for i in updated.line_items] == [
            (1, "First"),
            (2, "Second"),
        ]

    def test_assign_to_unknown_user(
        self, invoice_service: InvoiceService, sample_upload: UploadedFile
    ) -> None:
        clerk = _user(invoice_service, UserRole.FINANCE_CLERK, "clerk")
        invoice = invoice_service.submit_invoice(sample_upload)
        other = _user(invoice_service, UserRole.FINANCE_CLERK, "other")

        assigned = invoice_service.assign(invoice.id, clerk.id, clerk.role, other.id)
        assert assigned.assigned_to == other.id
        assert [i.id for i in invoice_service.list_invoices(assigned_to=other.id)] == [
            invoice.id
        ]

        with pytest.raises(NotFoundError):
            invoice_service.assign(invoice.id, clerk.id, clerk.role, UUID(int=1))

    def test_delete_hides_invoice_from_default_listing(
        self, invoice_service: InvoiceService, sample_upload: UploadedFile
    ) -> None:
        admin = _user(invoice_service, UserRole.ADMIN, "admin")
        invoice = invoice_service.submit_invoice(sample_upload)

        deleted = invoice_service.delete_invoice(invoice.id, admin.id, admin.role)

        assert deleted.status is InvoiceStatus.DELETED
        assert invoice_service.list_invoices() == []
        assert [i.id for i in invoice_service.list_invoices(InvoiceStatus.DELETED)] == [
            invoice.id
        ]
        assert invoice_service.queue_counts().get(InvoiceStatus.DELETED) == 1
        with pytest.raises(InvalidStatusTransitionError):
            invoice_service.delete_invoice(invoice.id, admin.id, admin.role)


class TestDashboards:
    def test_clerk_and_manager_views(
        self, invoice_service: InvoiceService, sample_upload: UploadedFile
    ) -> None:
        clerk = _user(invoice_service, UserRole.FINANCE_CLERK, "clerk")
        other = _user(invoice_service, UserRole.FINANCE_CLERK, "other")
        reviewed = invoice_service.submit_invoice(sample_upload)
        pending = invoice_service.submit_invoice(
            UploadedFile("second.pdf", "application/pdf", b"%PDF-1.4 second")
        )
        invoice_service.assign(reviewed.id, clerk.id, clerk.role, clerk.id)
        invoice_service.submit_for_approval(reviewed.id, clerk.id, clerk.role)

        clerk_view = invoice_service.clerk_dashboard(clerk.id)
        assert clerk_view.processed == 1
        assert [invoice.id for invoice in clerk_view.recent] == [pending.id]
        assert invoice_service.clerk_dashboard(other.id).processed == 0

        manager_view = invoice_service.manager_dashboard()
        assert manager_view.decided == 0
        assert [invoice.id for invoice in manager_view.approval_queue] == [reviewed.id]
        assert manager_view.counts.get(InvoiceStatus.AWAITING_APPROVAL) == 1


class TestVendors:
    def test_duplicate_name_rejected(self, invoice_service: InvoiceService) -> None:
        invoice_service.create_vendor({"name": "Acme Corp"})

        with pytest.raises(ValidationError, match="already exists"):
            invoice_service.create_vendor({"name": "acme corp"})

    def test_update_and_search(self, invoice_service: InvoiceService) -> None:
        vendor = invoice_service.create_vendor({"name": "Acme Corp"})
        invoice_service.create_vendor({"name": "Globex"})

        updated = invoice_service.update_vendor(vendor.id, {"payment_terms": "Net 30"})

        assert updated.payment_terms == "Net 30"
        assert [v.name for v in invoice_service.list_vendors("acme")] == ["Acme Corp"]

    def test_delete_keeps_invoices(
        self, invoice_service: InvoiceService, sample_upload: UploadedFile
    ) -> None:
        vendor = invoice_service.create_vendor({"name": "Acme Corp"})
        invoice = invoice_service.submit_invoice(sample_upload)
        assert invoice.vendor_id == vendor.id

        invoice_service.delete_vendor(vendor.id)

        reloaded = invoice_service.get_invoice(invoice.id)
        assert reloaded.vendor_id is None
        assert reloaded.vendor_name is None
        with pytest.raises(NotFoundError):
            invoice_service.get_vendor(vendor.id)
