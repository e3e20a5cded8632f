"""CLI entry point for invoice-flow."""

from __future__ import annotations

import functools
import json
import logging
import mimetypes
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import UUID

import click

from invoice_flow.errors import InvoiceFlowError
from invoice_flow.models import (
    InvoiceStatus,
    SubmissionMetadata,
    TransitionAction,
    UploadedFile,
    UserRole,
)
from invoice_flow.transitions import allowed_actions

if TYPE_CHECKING:
    from collections.abc import Callable

    from invoice_flow.models import Invoice, QueueCounts
    from invoice_flow.service import InvoiceService

STATUS_CHOICE = click.Choice([s.value for s in InvoiceStatus])
ROLE_CHOICE = click.Choice([r.value for r in UserRole])


def _build_service(ctx: click.Context) -> InvoiceService:
    from invoice_flow.adapters.base import create_adapter
    from invoice_flow.config import get_retry_config, get_upload_path
    from invoice_flow.db import create_pool
    from invoice_flow.service import InvoiceService
    from invoice_flow.store import LocalFileStore
    from invoice_flow.workflow import PostgresWorkflowStore, RetryPolicy, WorkflowEngine

    pool = create_pool()
    ctx.call_on_close(pool.close)
    engine = WorkflowEngine(
        PostgresWorkflowStore(pool), RetryPolicy.from_config(get_retry_config())
    )
    return InvoiceService(
        pool, LocalFileStore(get_upload_path()), create_adapter(), engine=engine
    )


def _service() -> InvoiceService:
    """Return the injected service, or build one from the environment."""
    ctx = click.get_current_context().find_root()
    if ctx.obj is None:
        ctx.obj = _build_service(ctx)
    return ctx.obj  # type: ignore[no-any-return]


def _handle_errors(fn: Callable[..., None]) -> Callable[..., None]:
    """Report domain errors as ``Error: [CODE] message`` with exit status 1."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            fn(*args, **kwargs)
        except InvoiceFlowError as exc:
            raise click.ClickException(str(exc)) from exc
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc

    return wrapper


def _echo_invoice(invoice: Invoice, detailed: bool = False) -> None:
    vendor = invoice.vendor_name or "(unknown vendor)"
    total = f"{invoice.total_amount} {invoice.currency}" if invoice.total_amount else "-"
    status = invoice.status.value
    click.echo(f"{invoice.id}  {status:<18} {invoice.invoice_number}  {vendor}  {total}")
    if not detailed:
        return

    click.echo(f"  Invoice date: {invoice.invoice_date or '-'}  Due: {invoice.due_date or '-'}")
    click.echo(
        f"  Subtotal: {invoice.subtotal}  Tax: {invoice.tax_amount}  Total: {invoice.total_amount}"
    )
    if invoice.assigned_to:
        click.echo(f"  Assigned to: {invoice.assigned_to}")
    if invoice.approved_by:
        click.echo(f"  Approved by: {invoice.approved_by}")
    if invoice.rejection_reason:
        click.echo(f"  Rejected: {invoice.rejection_reason}")
    if invoice.extraction_confidence:
        click.echo(
            f"  Confidence: {invoice.extraction_confidence.overall_confidence:.2f}"
        )
    click.echo(f"  File: {invoice.file_path}")
    for item in invoice.line_items:
        click.echo(
            f"  {item.line_number:>3}. {item.description}  "
            f"{item.quantity} x {item.unit_price} = {item.line_total}"
        )


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Invoice Flow: extract, review and approve invoices."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init-db")
@_handle_errors
def init_db() -> None:
    """Create the database schema."""
    from invoice_flow.db import init_schema

    init_schema(_service().pool)
    click.echo("Database schema initialised.")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--key", help="Idempotency key; defaults to the file's content hash.")
@click.option("--mime-type", help="Override the MIME type guessed from the file name.")
@click.option("--expected-vendor", help="Vendor name to link if extraction finds none.")
@click.option("--po", "purchase_order_number", help="Purchase order number.")
@_handle_errors
def submit(
    file: Path,
    key: str | None,
    mime_type: str | None,
    expected_vendor: str | None,
    purchase_order_number: str | None,
) -> None:
    """Upload an invoice document and run it through processing."""
    mime_type = mime_type or mimetypes.guess_type(file.name)[0] or "application/octet-stream"
    upload = UploadedFile(filename=file.name, mime_type=mime_type, data=file.read_bytes())
    metadata = None
    if expected_vendor or purchase_order_number:
        metadata = SubmissionMetadata(
            expected_vendor=expected_vendor,
            purchase_order_number=purchase_order_number,
        )

    invoice = _service().submit_invoice(upload, metadata, idempotency_key=key)
    _echo_invoice(invoice, detailed=True)


@cli.command()
@click.argument("invoice_id", type=click.UUID)
@click.option("--role", type=ROLE_CHOICE, help="Show the actions this role may take.")
@_handle_errors
def show(invoice_id: UUID, role: str | None) -> None:
    """Show details for a specific invoice."""
    invoice = _service().get_invoice(invoice_id)
    _echo_invoice(invoice, detailed=True)
    if role:
        actions = allowed_actions(invoice.status, UserRole(role))
        names = ", ".join(a.value for a in actions) or "none"
        click.echo(f"  Allowed actions for {role}: {names}")


@cli.command("list")
@click.option("--status", type=STATUS_CHOICE)
@click.option("--assigned-to", type=click.UUID)
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--limit", type=int, default=20, show_default=True)
@_handle_errors
def list_invoices(
    status: str | None, assigned_to: UUID | None, page: int, limit: int
) -> None:
    """List invoices, newest first."""
    invoices = _service().list_invoices(
        status=InvoiceStatus(status) if status else None,
        assigned_to=assigned_to,
        page=page,
        limit=limit,
    )
    if not invoices:
        click.echo("No invoices found.")
    for invoice in invoices:
        _echo_invoice(invoice)


def _transition_command(action: TransitionAction, help_text: str) -> click.Command:
    @click.argument("invoice_id", type=click.UUID)
    @click.option("--actor", "actor_id", type=click.UUID, required=True)
    @click.option("--role", type=ROLE_CHOICE, required=True)
    @_handle_errors
    def command(invoice_id: UUID, actor_id: UUID, role: str) -> None:
        invoice = _service().transition(invoice_id, action, actor_id, UserRole(role))
        _echo_invoice(invoice)

    command.__doc__ = help_text
    return cli.command(action.value.replace("_", "-"))(command)


_transition_command(
    TransitionAction.SUBMIT_FOR_APPROVAL, "Send a reviewed invoice to the approval queue."
)
_transition_command(TransitionAction.APPROVE, "Approve an invoice awaiting approval.")
_transition_command(TransitionAction.DELETE, "Soft-delete an invoice.")


@cli.command()
@click.argument("invoice_id", type=click.UUID)
@click.option("--actor", "actor_id", type=click.UUID, required=True)
@click.option("--role", type=ROLE_CHOICE, required=True)
@click.option("--reason", required=True, help="Why the invoice is rejected.")
@_handle_errors
def reject(invoice_id: UUID, actor_id: UUID, role: str, reason: str) -> None:
    """Reject an invoice awaiting approval."""
    invoice = _service().transition(
        invoice_id, TransitionAction.REJECT, actor_id, UserRole(role), {"reason": reason}
    )
    _echo_invoice(invoice)


@cli.command()
@click.argument("invoice_id", type=click.UUID)
@click.option("--actor", "actor_id", type=click.UUID, required=True)
@click.option("--role", type=ROLE_CHOICE, required=True)
@click.option("--user", "user_id", type=click.UUID, required=True, help="Assignee.")
@_handle_errors
def assign(invoice_id: UUID, actor_id: UUID, role: str, user_id: UUID) -> None:
    """Assign an invoice to a user."""
    invoice = _service().transition(
        invoice_id, TransitionAction.ASSIGN, actor_id, UserRole(role), {"user_id": user_id}
    )
    _echo_invoice(invoice)


@cli.command()
@click.argument("invoice_id", type=click.UUID)
@click.option("--actor", "actor_id", type=click.UUID, required=True)
@click.option("--role", type=ROLE_CHOICE, required=True)
@click.option("--json", "changes", required=True, help="JSON object of field changes.")
@_handle_errors
def update(invoice_id: UUID, actor_id: UUID, role: str, changes: str) -> None:
    """Edit extracted fields of an invoice under review."""
    try:
        payload = json.loads(changes)
    except json.JSONDecodeError as exc:
        msg = f"--json is not valid JSON: {exc}"
        raise click.BadParameter(msg) from exc
    if not isinstance(payload, dict):
        msg = "--json must be a JSON object"
        raise click.BadParameter(msg)

    invoice = _service().transition(
        invoice_id, TransitionAction.UPDATE, actor_id, UserRole(role), payload
    )
    _echo_invoice(invoice, detailed=True)


@cli.command()
@click.argument("invoice_id", type=click.UUID)
@_handle_errors
def history(invoice_id: UUID) -> None:
    """Show the status history of an invoice."""
    events = _service().invoice_history(invoice_id)
    if not events:
        click.echo("No recorded actions.")
    for event in events:
        line = (
            f"{event.created_at:%Y-%m-%d %H:%M}  {event.action.value:<20} "
            f"{event.from_status.value} -> {event.to_status.value}  by {event.actor_id}"
        )
        if event.reason:
            line += f"  ({event.reason})"
        click.echo(line)


@cli.command()
@click.option("--role", type=ROLE_CHOICE, help="Add the clerk or manager work queue.")
@click.option("--user", "user_id", type=click.UUID, help="Clerk whose tally to show.")
@_handle_errors
def dashboard(role: str | None, user_id: UUID | None) -> None:
    """Show how many invoices sit in each queue."""
    service = _service()
    if role is None:
        _echo_counts(service.queue_counts())
    elif UserRole(role) is UserRole.FINANCE_CLERK:
        clerk = service.clerk_dashboard(user_id)
        _echo_counts(clerk.counts)
        if clerk.processed is not None:
            click.echo(f"Processed by {user_id}: {clerk.processed}")
        _echo_queue("Needs review (newest first):", clerk.recent)
    else:
        manager = service.manager_dashboard()
        _echo_counts(manager.counts)
        click.echo(f"Approved or rejected: {manager.decided}")
        _echo_queue("Awaiting approval (newest first):", manager.approval_queue)


def _echo_counts(counts: QueueCounts) -> None:
    for status in InvoiceStatus:
        click.echo(f"{status.value:<18} {counts.get(status):>6}")
    click.echo(f"{'total':<18} {counts.total:>6}")


def _echo_queue(title: str, invoices: list[Invoice]) -> None:
    click.echo(title)
    if not invoices:
        click.echo("  (empty)")
    for invoice in invoices:
        _echo_invoice(invoice)


@cli.command()
@click.option("--status", type=click.Choice(["PENDING", "SUCCESS", "ERROR"]))
@click.option("--limit", type=int, default=50, show_default=True)
@_handle_errors
def workflows(status: str | None, limit: int) -> None:
    """List recent workflow runs."""
    from invoice_flow.workflow import PostgresWorkflowStore

    runs = PostgresWorkflowStore(_service().pool).list_runs(status, limit)
    if not runs:
        click.echo("No workflow runs.")
    for run in runs:
        line = f"{run.workflow_id}  {run.name}  {run.status}  attempts={run.attempts}"
        if run.error:
            line += f"  {run.error}"
        click.echo(line)


@cli.group()
def vendor() -> None:
    """Manage vendors."""


@vendor.command("add")
@click.argument("name")
@click.option("--address")
@click.option("--tax-id")
@click.option("--terms", "payment_terms", help="Payment terms, e.g. 'Net 30'.")
@_handle_errors
def vendor_add(
    name: str, address: str | None, tax_id: str | None, payment_terms: str | None
) -> None:
    """Add a vendor."""
    created = _service().create_vendor(
        {"name": name, "address": address, "tax_id": tax_id, "payment_terms": payment_terms}
    )
    click.echo(f"{created.id}  {created.name}")


@vendor.command("list")
@click.option("--search")
@_handle_errors
def vendor_list(search: str | None) -> None:
    """List vendors by name."""
    for item in _service().list_vendors(search):
        click.echo(f"{item.id}  {item.name}  {item.payment_terms or ''}".rstrip())


@vendor.command("delete")
@click.argument("vendor_id", type=click.UUID)
@_handle_errors
def vendor_delete(vendor_id: UUID) -> None:
    """Delete a vendor; its invoices are kept without a vendor."""
    _service().delete_vendor(vendor_id)
    click.echo(f"Deleted vendor {vendor_id}")


@cli.group()
def user() -> None:
    """Manage users."""


@user.command("add")
@click.argument("email")
@click.argument("name")
@click.option("--role", type=ROLE_CHOICE, required=True)
@_handle_errors
def user_add(email: str, name: str, role: str) -> None:
    """Add a user."""
    created = _service().create_user({"email": email, "name": name, "role": role})
    click.echo(f"{created.id}  {created.email}  {created.role.value}")


@user.command("list")
@_handle_errors
def user_list() -> None:
    """List users."""
    for item in _service().list_users():
        click.echo(f"{item.id}  {item.email}  {item.name}  {item.role.value}")
