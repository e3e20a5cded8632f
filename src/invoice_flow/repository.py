"""Transaction functions over the invoice schema.

Every function takes an open connection and runs inside the caller's
transaction. None of them perform I/O beyond the database.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID

from psycopg import sql
from psycopg.types.json import Jsonb

from invoice_flow.models import (
    ExtractionConfidence,
    Invoice,
    InvoiceEvent,
    InvoiceStatus,
    LineItem,
    QueueCounts,
    User,
    Vendor,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    import psycopg

    from invoice_flow.models import (
        ExtractedInvoice,
        ExtractedLineItem,
        LineItemUpdate,
        SubmissionMetadata,
        TransitionAction,
        UserCreate,
        VendorCreate,
    )

    Connection = psycopg.Connection[dict[str, Any]]


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()

_INVOICE_SELECT = """\
SELECT i.*, v.name AS vendor_name
FROM invoices i
LEFT JOIN vendors v ON v.id = i.vendor_id
"""


# --- Invoices ---


def insert_invoice(
    conn: Connection,
    *,
    extracted: ExtractedInvoice,
    status: InvoiceStatus,
    file_path: str,
    confidence: ExtractionConfidence | None,
    metadata: SubmissionMetadata | None = None,
) -> UUID:
    """Insert the invoice header and return its id.

    The vendor is linked when its name matches the extracted vendor name or,
    failing that, the vendor the uploader said to expect.
    """
    vendor_id = None
    for name in (extracted.vendor_name, metadata and metadata.expected_vendor):
        if name:
            vendor_id = find_vendor_id(conn, name)
            if vendor_id is not None:
                break

    row = conn.execute(
        """
        INSERT INTO invoices (
            vendor_id, invoice_number, invoice_date, due_date, subtotal,
            tax_amount, total_amount, currency, status, file_path,
            extraction_confidence, purchase_order_number
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            vendor_id,
            extracted.invoice_number,
            extracted.invoice_date,
            extracted.due_date,
            extracted.subtotal,
            extracted.tax_amount,
            extracted.total_amount,
            extracted.currency,
            InvoiceStatus(status).value,
            file_path,
            _encode_confidence(confidence),
            metadata.purchase_order_number if metadata else None,
        ),
    ).fetchone()
    return row["id"]  # type: ignore[index,no-any-return]


def insert_line_items(
    conn: Connection,
    invoice_id: UUID,
    items: Iterable[ExtractedLineItem | LineItemUpdate],
) -> int:
    """Insert line items for an invoice, numbered 1..n in the given order."""
    rows = [
        (
            invoice_id,
            item.description,
            item.quantity,
            item.unit_price,
            item.line_total,
            item.product_code,
            number,
        )
        for number, item in enumerate(items, start=1)
    ]
    if not rows:
        return 0

    with conn.cursor() as cur:
        cur.executemany(
            """
            INSERT INTO line_items (
                invoice_id, description, quantity, unit_price, line_total,
                product_code, line_number
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            rows,
        )
    return len(rows)


def replace_line_items(
    conn: Connection, invoice_id: UUID, items: list[LineItemUpdate]
) -> int:
    """Swap the invoice's line items for ``items``, ordered by their line numbers."""
    conn.execute("DELETE FROM line_items WHERE invoice_id = %s", (invoice_id,))
    return insert_line_items(
        conn, invoice_id, sorted(items, key=lambda item: item.line_number)
    )


def get_invoice(conn: Connection, invoice_id: UUID) -> Invoice | None:
    """Load an invoice with its vendor name and line items in line order."""
    row = conn.execute(_INVOICE_SELECT + "WHERE i.id = %s", (invoice_id,)).fetchone()
    if row is None:
        return None
    return _to_invoice(row, get_line_items(conn, invoice_id))


def get_line_items(conn: Connection, invoice_id: UUID) -> list[LineItem]:
    rows = conn.execute(
        "SELECT * FROM line_items WHERE invoice_id = %s ORDER BY line_number",
        (invoice_id,),
    ).fetchall()
    return [LineItem.model_validate(row) for row in rows]


def lock_invoice(conn: Connection, invoice_id: UUID) -> dict[str, Any] | None:
    """Read the invoice row and hold its lock until the transaction ends."""
    return conn.execute(
        "SELECT id, status, assigned_to, approved_by FROM invoices"
        " WHERE id = %s FOR UPDATE",
        (invoice_id,),
    ).fetchone()


def update_invoice_status(
    conn: Connection,
    invoice_id: UUID,
    status: InvoiceStatus,
    *,
    assigned_to: UUID | None = UNSET,
    approved_by: UUID | None = UNSET,
    rejection_reason: str | None = UNSET,
) -> None:
    values: dict[str, Any] = {"status": InvoiceStatus(status).value}
    if assigned_to is not UNSET:
        values["assigned_to"] = assigned_to
    if approved_by is not UNSET:
        values["approved_by"] = approved_by
    if rejection_reason is not UNSET:
        values["rejection_reason"] = rejection_reason
    _update_row(conn, "invoices", invoice_id, values)


def update_invoice_fields(
    conn: Connection, invoice_id: UUID, values: Mapping[str, Any]
) -> None:
    """Overwrite the given header columns."""
    if values:
        _update_row(conn, "invoices", invoice_id, values)
    else:
        _touch(conn, "invoices", invoice_id)


def list_invoices(
    conn: Connection,
    *,
    status: InvoiceStatus | None = None,
    assigned_to: UUID | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[Invoice]:
    """Newest invoices first; deleted invoices only when asked for by status."""
    conditions = []
    params: list[Any] = []
    if status is not None:
        conditions.append("i.status = %s")
        params.append(InvoiceStatus(status).value)
    else:
        conditions.append("i.status <> 'deleted'")
    if assigned_to is not None:
        conditions.append("i.assigned_to = %s")
        params.append(assigned_to)

    query = (
        _INVOICE_SELECT
        + "WHERE "
        + " AND ".join(conditions)
        + " ORDER BY i.created_at DESC, i.id LIMIT %s OFFSET %s"
    )
    rows = conn.execute(query, [*params, limit, offset]).fetchall()
    return [_to_invoice(row, get_line_items(conn, row["id"])) for row in rows]


def count_invoices_by_status(conn: Connection) -> QueueCounts:
    rows = conn.execute(
        "SELECT status, count(*) AS count FROM invoices GROUP BY status"
    ).fetchall()
    return QueueCounts(counts={InvoiceStatus(r["status"]): r["count"] for r in rows})


def count_invoices(
    conn: Connection,
    statuses: Iterable[InvoiceStatus],
    *,
    assigned_to: UUID | None = None,
) -> int:
    query = "SELECT count(*) AS count FROM invoices WHERE status = ANY(%s)"
    params: list[Any] = [[InvoiceStatus(s).value for s in statuses]]
    if assigned_to is not None:
        query += " AND assigned_to = %s"
        params.append(assigned_to)
    row = conn.execute(query, params).fetchone()
    return int(row["count"]) if row else 0


def record_event(
    conn: Connection,
    *,
    invoice_id: UUID,
    action: TransitionAction,
    actor_id: UUID | None,
    from_status: InvoiceStatus,
    to_status: InvoiceStatus,
    reason: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO invoice_events (
            invoice_id, action, actor_id, from_status, to_status, reason
        )
        VALUES (%s, %s, %s, %s, %s, %s)
        """,
        (
            invoice_id,
            action.value,
            actor_id,
            InvoiceStatus(from_status).value,
            InvoiceStatus(to_status).value,
            reason,
        ),
    )


def list_events(conn: Connection, invoice_id: UUID) -> list[InvoiceEvent]:
    rows = conn.execute(
        "SELECT * FROM invoice_events WHERE invoice_id = %s ORDER BY created_at, id",
        (invoice_id,),
    ).fetchall()
    return [InvoiceEvent.model_validate(row) for row in rows]


# --- Vendors ---


def insert_vendor(conn: Connection, vendor: VendorCreate) -> Vendor:
    row = conn.execute(
        "INSERT INTO vendors (name, address, tax_id, payment_terms)"
        " VALUES (%s, %s, %s, %s) RETURNING *",
        (vendor.name, vendor.address, vendor.tax_id, vendor.payment_terms),
    ).fetchone()
    return Vendor.model_validate(row)


def update_vendor(
    conn: Connection, vendor_id: UUID, values: Mapping[str, Any]
) -> Vendor | None:
    if values:
        _update_row(conn, "vendors", vendor_id, values)
    return get_vendor(conn, vendor_id)


def get_vendor(conn: Connection, vendor_id: UUID) -> Vendor | None:
    row = conn.execute("SELECT * FROM vendors WHERE id = %s", (vendor_id,)).fetchone()
    return Vendor.model_validate(row) if row else None


def find_vendor_id(conn: Connection, name: str) -> UUID | None:
    row = conn.execute(
        "SELECT id FROM vendors WHERE lower(name) = lower(%s)", (name.strip(),)
    ).fetchone()
    return row["id"] if row else None


def list_vendors(
    conn: Connection, search: str | None = None, limit: int = 20, offset: int = 0
) -> list[Vendor]:
    if search:
        rows = conn.execute(
            "SELECT * FROM vendors WHERE name ILIKE %s ORDER BY name LIMIT %s OFFSET %s",
            (f"%{search}%", limit, offset),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM vendors ORDER BY name LIMIT %s OFFSET %s", (limit, offset)
        ).fetchall()
    return [Vendor.model_validate(row) for row in rows]


def delete_vendor(conn: Connection, vendor_id: UUID) -> bool:
    """Delete a vendor; its invoices keep existing with no vendor."""
    cur = conn.execute("DELETE FROM vendors WHERE id = %s", (vendor_id,))
    return cur.rowcount > 0


# --- Users ---


def insert_user(conn: Connection, user: UserCreate) -> User:
    row = conn.execute(
        "INSERT INTO users (email, name, role) VALUES (%s, %s, %s) RETURNING *",
        (user.email, user.name, user.role.value),
    ).fetchone()
    return User.model_validate(row)


def get_user(conn: Connection, user_id: UUID) -> User | None:
    row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
    return User.model_validate(row) if row else None


def list_users(conn: Connection) -> list[User]:
    rows = conn.execute("SELECT * FROM users ORDER BY name").fetchall()
    return [User.model_validate(row) for row in rows]


# --- Helpers ---


def _update_row(
    conn: Connection, table: str, row_id: UUID, values: Mapping[str, Any]
) -> None:
    assignments = sql.SQL(", ").join(
        sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder())
        for column in values
    )
    query = sql.SQL("UPDATE {} SET {}, updated_at = now() WHERE id = {}").format(
        sql.Identifier(table), assignments, sql.Placeholder()
    )
    conn.execute(query, [*values.values(), row_id])


def _touch(conn: Connection, table: str, row_id: UUID) -> None:
    conn.execute(
        sql.SQL("UPDATE {} SET updated_at = now() WHERE id = %s").format(
            sql.Identifier(table)
        ),
        (row_id,),
    )


def _encode_confidence(confidence: ExtractionConfidence | None) -> Jsonb | None:
    if confidence is None:
        return None
    return Jsonb(confidence.model_dump(mode="json", exclude_none=True))


def _to_invoice(row: Mapping[str, Any], line_items: list[LineItem]) -> Invoice:
    data = dict(row)
    raw_confidence = data.pop("extraction_confidence", None)
    data["extraction_confidence"] = (
        ExtractionConfidence.model_validate(raw_confidence)
        if raw_confidence is not None
        else None
    )
    data["currency"] = data["currency"].strip()
    return Invoice.model_validate({**data, "line_items": line_items})
