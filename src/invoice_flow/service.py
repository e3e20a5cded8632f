"""Application boundary: invoice submission, state transitions and lookups."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from uuid import UUID

import pydantic
from psycopg.errors import ForeignKeyViolation, UniqueViolation

from invoice_flow import repository
from invoice_flow.db import transaction
from invoice_flow.errors import InsufficientPermissionsError, NotFoundError, ValidationError
from invoice_flow.models import (
    ClerkDashboard,
    Invoice,
    InvoiceStatus,
    InvoiceUpdate,
    ManagerDashboard,
    TransitionAction,
    UserCreate,
    UserRole,
    VendorCreate,
    VendorUpdate,
)
from invoice_flow.processing import WORKFLOW_NAME, ProcessingDeps, process_invoice
from invoice_flow.store import validate_upload
from invoice_flow.transitions import plan_transition
from invoice_flow.workflow import PostgresWorkflowStore, WorkflowEngine, workflow_id_for

if TYPE_CHECKING:
    from pathlib import Path

    from psycopg_pool import ConnectionPool

    from invoice_flow.adapters.base import ExtractionAdapter
    from invoice_flow.models import (
        InvoiceEvent,
        QueueCounts,
        SubmissionMetadata,
        UploadedFile,
        User,
        Vendor,
    )
    from invoice_flow.store import FileStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
RECENT_REVIEW_LIMIT = 5
APPROVAL_QUEUE_LIMIT = 10
PROCESSED_STATUSES = (InvoiceStatus.AWAITING_APPROVAL, InvoiceStatus.APPROVED)
DECIDED_STATUSES = (InvoiceStatus.APPROVED, InvoiceStatus.REJECTED)


class InvoiceService:
    """Entry point used by the CLI (and any other front end).

    Holds the connection pool, file store and extraction adapter explicitly;
    nothing here reaches for global state.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        store: FileStore,
        adapter: ExtractionAdapter,
        engine: WorkflowEngine | None = None,
    ) -> None:
        self.pool = pool
        self.store = store
        self.adapter = adapter
        self.engine = engine or WorkflowEngine(PostgresWorkflowStore(pool))

    # --- Submission ---

    def submit_invoice(
        self,
        upload: UploadedFile,
        metadata: SubmissionMetadata | None = None,
        idempotency_key: str | None = None,
    ) -> Invoice:
        """Run the processing workflow for an upload and return the stored invoice.

        The upload is validated before the workflow starts, so a bad file
        leaves no trace. The workflow id comes from ``idempotency_key`` or the
        file content; submitting the same id again returns the same invoice.
        """
        validate_upload(upload)

        workflow_id = workflow_id_for("invoice-upload", upload.data, idempotency_key)
        deps = ProcessingDeps(store=self.store, adapter=self.adapter)
        return self.engine.run(  # type: ignore[no-any-return]
            workflow_id,
            WORKFLOW_NAME,
            process_invoice,
            deps,
            upload,
            metadata,
            output_type=Invoice,
        )

    # --- State transitions ---

    def transition(
        self,
        invoice_id: UUID,
        action: TransitionAction,
        actor_id: UUID,
        actor_role: UserRole,
        payload: dict[str, Any] | None = None,
    ) -> Invoice:
        """Apply one state-machine action in a single transaction.

        The invoice row is locked before its status is checked, so concurrent
        actions on the same invoice are serialized and at most one of two
        competing approvals can succeed. Nothing is written if any check fails.

        Payload keys: ``reason`` for reject (required), ``user_id`` for assign,
        the InvoiceUpdate fields for update.
        """
        action = TransitionAction(action)
        actor_role = UserRole(actor_role)
        payload = payload or {}

        update = _parse_update(payload) if action is TransitionAction.UPDATE else None
        reason = _parse_reason(payload) if action is TransitionAction.REJECT else None
        assignee = _parse_assignee(payload) if action is TransitionAction.ASSIGN else None

        try:
            with transaction(self.pool) as conn:
                row = repository.lock_invoice(conn, invoice_id)
                if row is None:
                    msg = f"Invoice {invoice_id} not found"
                    raise NotFoundError(msg)

                current = InvoiceStatus(row["status"])
                target = plan_transition(current, action, actor_role)
                _check_actor(conn, actor_id, actor_role)

                if action is TransitionAction.APPROVE:
                    repository.update_invoice_status(
                        conn, invoice_id, target, approved_by=actor_id
                    )
                elif action is TransitionAction.REJECT:
                    repository.update_invoice_status(
                        conn, invoice_id, target, rejection_reason=reason
                    )
                elif action is TransitionAction.ASSIGN:
                    repository.update_invoice_status(
                        conn, invoice_id, target, assigned_to=assignee
                    )
                elif update is not None:
                    repository.update_invoice_fields(
                        conn, invoice_id, update.header_fields()
                    )
                    if update.line_items is not None:
                        repository.replace_line_items(conn, invoice_id, update.line_items)
                else:
                    repository.update_invoice_status(conn, invoice_id, target)

                repository.record_event(
                    conn,
                    invoice_id=invoice_id,
                    action=action,
                    actor_id=actor_id,
                    from_status=current,
                    to_status=target,
                    reason=reason,
                )
                invoice = repository.get_invoice(conn, invoice_id)
        except ForeignKeyViolation as exc:
            msg = f"Referenced user or vendor does not exist: {exc.diag.message_detail}"
            raise NotFoundError(msg) from exc

        logger.info(
            "Invoice %s: %s by %s (%s -> %s)",
            invoice_id,
            action.value,
            actor_id,
            current.value,
            target.value,
        )
        return invoice  # type: ignore[return-value]

    def submit_for_approval(
        self, invoice_id: UUID, actor_id: UUID, actor_role: UserRole
    ) -> Invoice:
        return self.transition(
            invoice_id, TransitionAction.SUBMIT_FOR_APPROVAL, actor_id, actor_role
        )

    def approve(self, invoice_id: UUID, actor_id: UUID, actor_role: UserRole) -> Invoice:
        return self.transition(invoice_id, TransitionAction.APPROVE, actor_id, actor_role)

    def reject(
        self, invoice_id: UUID, actor_id: UUID, actor_role: UserRole, reason: str
    ) -> Invoice:
        return self.transition(
            invoice_id, TransitionAction.REJECT, actor_id, actor_role, {"reason": reason}
        )

    def assign(
        self, invoice_id: UUID, actor_id: UUID, actor_role: UserRole, user_id: UUID
    ) -> Invoice:
        return self.transition(
            invoice_id, TransitionAction.ASSIGN, actor_id, actor_role, {"user_id": user_id}
        )

    def update_invoice(
        self,
        invoice_id: UUID,
        actor_id: UUID,
        actor_role: UserRole,
        changes: dict[str, Any],
    ) -> Invoice:
        return self.transition(
            invoice_id, TransitionAction.UPDATE, actor_id, actor_role, changes
        )

    def delete_invoice(
        self, invoice_id: UUID, actor_id: UUID, actor_role: UserRole
    ) -> Invoice:
        return self.transition(invoice_id, TransitionAction.DELETE, actor_id, actor_role)

    # --- Queries ---

    def get_invoice(self, invoice_id: UUID) -> Invoice:
        with transaction(self.pool) as conn:
            invoice = repository.get_invoice(conn, invoice_id)
        if invoice is None:
            msg = f"Invoice {invoice_id} not found"
            raise NotFoundError(msg)
        return invoice

    def list_invoices(
        self,
        status: InvoiceStatus | None = None,
        assigned_to: UUID | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[Invoice]:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = (max(page, 1) - 1) * limit
        with transaction(self.pool) as conn:
            return repository.list_invoices(
                conn, status=status, assigned_to=assigned_to, limit=limit, offset=offset
            )

    def queue_counts(self) -> QueueCounts:
        with transaction(self.pool) as conn:
            return repository.count_invoices_by_status(conn)

    def clerk_dashboard(self, user_id: UUID | None = None) -> ClerkDashboard:
        """Queue counts, the newest invoices needing review and the clerk's tally."""
        with transaction(self.pool) as conn:
            processed = None
            if user_id is not None:
                processed = repository.count_invoices(
                    conn, PROCESSED_STATUSES, assigned_to=user_id
                )
            return ClerkDashboard(
                counts=repository.count_invoices_by_status(conn),
                processed=processed,
                recent=repository.list_invoices(
                    conn, status=InvoiceStatus.NEEDS_REVIEW, limit=RECENT_REVIEW_LIMIT
                ),
            )

    def manager_dashboard(self) -> ManagerDashboard:
        """Queue counts, the newest invoices awaiting approval and the decided total."""
        with transaction(self.pool) as conn:
            return ManagerDashboard(
                counts=repository.count_invoices_by_status(conn),
                decided=repository.count_invoices(conn, DECIDED_STATUSES),
                approval_queue=repository.list_invoices(
                    conn,
                    status=InvoiceStatus.AWAITING_APPROVAL,
                    limit=APPROVAL_QUEUE_LIMIT,
                ),
            )

    def invoice_history(self, invoice_id: UUID) -> list[InvoiceEvent]:
        with transaction(self.pool) as conn:
            return repository.list_events(conn, invoice_id)

    def file_path(self, invoice: Invoice) -> Path:
        """Absolute path of the stored document behind an invoice."""
        if not self.store.exists(invoice.file_path):
            msg = f"Document for invoice {invoice.id} not found"
            raise NotFoundError(msg)
        return self.store.get_path(invoice.file_path)

    # --- Vendors ---

    def create_vendor(self, data: dict[str, Any]) -> Vendor:
        vendor = _validate(VendorCreate, data)
        try:
            with transaction(self.pool) as conn:
                return repository.insert_vendor(conn, vendor)
        except UniqueViolation as exc:
            msg = f"A vendor named {vendor.name!r} already exists"
            raise ValidationError(msg) from exc

    def update_vendor(self, vendor_id: UUID, data: dict[str, Any]) -> Vendor:
        changes = _validate(VendorUpdate, data).model_dump(exclude_unset=True)
        try:
            with transaction(self.pool) as conn:
                vendor = repository.update_vendor(conn, vendor_id, changes)
        except UniqueViolation as exc:
            msg = f"A vendor named {changes.get('name')!r} already exists"
            raise ValidationError(msg) from exc
        if vendor is None:
            msg = f"Vendor {vendor_id} not found"
            raise NotFoundError(msg)
        return vendor

    def get_vendor(self, vendor_id: UUID) -> Vendor:
        with transaction(self.pool) as conn:
            vendor = repository.get_vendor(conn, vendor_id)
        if vendor is None:
            msg = f"Vendor {vendor_id} not found"
            raise NotFoundError(msg)
        return vendor

    def list_vendors(
        self, search: str | None = None, page: int = 1, limit: int = DEFAULT_PAGE_SIZE
    ) -> list[Vendor]:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = (max(page, 1) - 1) * limit
        with transaction(self.pool) as conn:
            return repository.list_vendors(conn, search, limit, offset)

    def delete_vendor(self, vendor_id: UUID) -> None:
        with transaction(self.pool) as conn:
            deleted = repository.delete_vendor(conn, vendor_id)
        if not deleted:
            msg = f"Vendor {vendor_id} not found"
            raise NotFoundError(msg)

    # --- Users ---

    def create_user(self, data: dict[str, Any]) -> User:
        user = _validate(UserCreate, data)
        try:
            with transaction(self.pool) as conn:
                return repository.insert_user(conn, user)
        except UniqueViolation as exc:
            msg = f"A user with email {user.email!r} already exists"
            raise ValidationError(msg) from exc

    def get_user(self, user_id: UUID) -> User:
        with transaction(self.pool) as conn:
            user = repository.get_user(conn, user_id)
        if user is None:
            msg = f"User {user_id} not found"
            raise NotFoundError(msg)
        return user

    def list_users(self) -> list[User]:
        with transaction(self.pool) as conn:
            return repository.list_users(conn)


def _validate(model: type[pydantic.BaseModel], data: dict[str, Any]) -> Any:
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        msg = f"Invalid {model.__name__}: {_describe(exc)}"
        raise ValidationError(msg) from exc


def _describe(exc: pydantic.ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    )


def _check_actor(conn: Any, actor_id: UUID, actor_role: UserRole) -> None:
    """The actor must exist and actually hold the role they act under."""
    actor = repository.get_user(conn, actor_id)
    if actor is None:
        msg = f"User {actor_id} not found"
        raise NotFoundError(msg)
    if actor.role is not actor_role:
        msg = f"User {actor_id} does not hold role {actor_role.value}"
        raise InsufficientPermissionsError(msg)


def _parse_update(payload: dict[str, Any]) -> InvoiceUpdate:
    update: InvoiceUpdate = _validate(InvoiceUpdate, payload)
    return update


def _parse_reason(payload: dict[str, Any]) -> str:
    reason = str(payload.get("reason") or "").strip()
    if not reason:
        msg = "Rejection reason is required"
        raise ValidationError(msg)
    return reason


def _parse_assignee(payload: dict[str, Any]) -> UUID:
    user_id = payload.get("user_id")
    if user_id is None:
        msg = "user_id is required to assign an invoice"
        raise ValidationError(msg)
    try:
        return user_id if isinstance(user_id, UUID) else UUID(str(user_id))
    except ValueError:
        msg = f"user_id must be a UUID, got {user_id!r}"
        raise ValidationError(msg) from None
