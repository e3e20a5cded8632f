"""Database connection pool, transactions and schema."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from invoice_flow.config import PoolConfig, get_database_url, get_pool_config

if TYPE_CHECKING:
    from collections.abc import Iterator

    import psycopg

logger = logging.getLogger(__name__)

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS users (
    id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    email text NOT NULL UNIQUE,
    name text NOT NULL,
    role text NOT NULL
        CHECK (role IN ('finance_clerk', 'finance_manager', 'admin')),
    created_at timestamptz NOT NULL DEFAULT now(),
    updated_at timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS vendors (
    id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    name text NOT NULL,
    address text,
    tax_id text,
    payment_terms text,
    created_at timestamptz NOT NULL DEFAULT now(),
    updated_at timestamptz NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS vendors_name_lower_idx ON vendors (lower(name));

CREATE TABLE IF NOT EXISTS invoices (
    id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    vendor_id uuid REFERENCES vendors (id) ON DELETE SET NULL,
    invoice_number text NOT NULL,
    invoice_date date,
    due_date date,
    subtotal numeric(12, 2),
    tax_amount numeric(12, 2),
    total_amount numeric(12, 2),
    currency char(3) NOT NULL DEFAULT 'USD',
    status text NOT NULL DEFAULT 'processing'
        CHECK (status IN ('processing', 'needs_review', 'awaiting_approval',
                          'approved', 'rejected', 'deleted')),
    assigned_to uuid REFERENCES users (id) ON DELETE SET NULL,
    approved_by uuid REFERENCES users (id) ON DELETE SET NULL,
    rejection_reason text,
    purchase_order_number text,
    file_path text NOT NULL,
    extraction_confidence jsonb,
    created_at timestamptz NOT NULL DEFAULT now(),
    updated_at timestamptz NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS invoices_status_idx ON invoices (status);
CREATE INDEX IF NOT EXISTS invoices_assigned_to_idx ON invoices (assigned_to);
CREATE INDEX IF NOT EXISTS invoices_invoice_number_idx ON invoices (invoice_number);
CREATE INDEX IF NOT EXISTS invoices_created_at_idx ON invoices (created_at);

CREATE TABLE IF NOT EXISTS line_items (
    id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    invoice_id uuid NOT NULL REFERENCES invoices (id) ON DELETE CASCADE,
    description text,
    quantity numeric(10, 3) NOT NULL,
    unit_price numeric(12, 2) NOT NULL,
    line_total numeric(12, 2) NOT NULL,
    product_code text,
    line_number integer NOT NULL CHECK (line_number >= 1),
    created_at timestamptz NOT NULL DEFAULT now(),
    updated_at timestamptz NOT NULL DEFAULT now(),
    UNIQUE (invoice_id, line_number)
);

CREATE TABLE IF NOT EXISTS invoice_events (
    id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    invoice_id uuid NOT NULL REFERENCES invoices (id) ON DELETE CASCADE,
    action text NOT NULL,
    actor_id uuid REFERENCES users (id) ON DELETE SET NULL,
    from_status text NOT NULL,
    to_status text NOT NULL,
    reason text,
    created_at timestamptz NOT NULL DEFAULT clock_timestamp()
);
CREATE INDEX IF NOT EXISTS invoice_events_invoice_idx ON invoice_events (invoice_id);

CREATE TABLE IF NOT EXISTS workflow_runs (
    workflow_id text PRIMARY KEY,
    name text NOT NULL,
    status text NOT NULL CHECK (status IN ('PENDING', 'SUCCESS', 'ERROR')),
    output jsonb,
    error text,
    attempts integer NOT NULL DEFAULT 1,
    created_at timestamptz NOT NULL DEFAULT now(),
    updated_at timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS workflow_checkpoints (
    workflow_id text NOT NULL REFERENCES workflow_runs (workflow_id) ON DELETE CASCADE,
    step_id integer NOT NULL,
    name text NOT NULL,
    output jsonb,
    created_at timestamptz NOT NULL DEFAULT now(),
    PRIMARY KEY (workflow_id, step_id)
);
"""


def create_pool(
    url: str | None = None, config: PoolConfig | None = None
) -> ConnectionPool:
    """Open a connection pool whose connections return rows as dicts."""
    config = config or get_pool_config()
    pool = ConnectionPool(
        url or get_database_url(),
        min_size=config.min_size,
        max_size=config.max_size,
        kwargs={"row_factory": dict_row},
        open=True,
    )
    logger.debug("Opened connection pool (min=%d max=%d)", config.min_size, config.max_size)
    return pool


@contextmanager
def transaction(pool: ConnectionPool) -> Iterator[psycopg.Connection[dict[str, object]]]:
    """Borrow a connection and run the block as one all-or-nothing transaction."""
    with pool.connection() as conn, conn.transaction():
        yield conn


def init_schema(pool: ConnectionPool) -> None:
    """Create all tables and indexes if they do not exist yet."""
    with transaction(pool) as conn:
        conn.execute(SCHEMA_SQL)
    logger.info("Database schema is up to date")
