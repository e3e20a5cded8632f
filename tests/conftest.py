"""Shared test fixtures."""

from __future__ import annotations

import os
from contextlib import contextmanager
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import pytest

from invoice_flow.models import (
    ExtractedInvoice,
    ExtractedLineItem,
    ExtractionConfidence,
    UploadedFile,
)
from invoice_flow.workflow import (
    ERROR,
    PENDING,
    SUCCESS,
    Checkpoint,
    CheckpointConflictError,
    RetryPolicy,
    WorkflowEngine,
    WorkflowRun,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from psycopg_pool import ConnectionPool


class InMemoryWorkflowStore:
    """WorkflowStore keeping runs, checkpoints and ``rows`` in dicts.

    ``transaction()`` snapshots all three and restores them if the block
    raises, so transaction functions can write to ``conn.rows`` and observe
    rollback like they would against a database.
    """

    def __init__(self) -> None:
        self.runs: dict[str, WorkflowRun] = {}
        self.checkpoints: dict[tuple[str, int], Checkpoint] = {}
        self.rows: dict[str, list[Any]] = {}
        self.transaction_count = 0

    @contextmanager
    def transaction(self) -> Iterator[InMemoryWorkflowStore]:
        snapshot = (
            dict(self.runs),
            dict(self.checkpoints),
            {table: list(rows) for table, rows in self.rows.items()},
        )
        self.transaction_count += 1
        try:
            yield self
        except BaseException:
            self.runs, self.checkpoints, self.rows = snapshot
            raise

    def get_run(self, conn: Any, workflow_id: str) -> WorkflowRun | None:
        return self.runs.get(workflow_id)

    def begin_run(self, conn: Any, workflow_id: str, name: str) -> None:
        existing = self.runs.get(workflow_id)
        attempts = existing.attempts + 1 if existing else 1
        self.runs[workflow_id] = WorkflowRun(
            workflow_id=workflow_id, name=name, status=PENDING, attempts=attempts
        )

    def complete_run(self, conn: Any, workflow_id: str, output: Any) -> None:
        self.runs[workflow_id] = replace(
            self.runs[workflow_id], status=SUCCESS, output=output, error=None
        )

    def fail_run(self, conn: Any, workflow_id: str, error: str) -> None:
        self.runs[workflow_id] = replace(self.runs[workflow_id], status=ERROR, error=error)

    def get_checkpoint(
        self, conn: Any, workflow_id: str, step_id: int
    ) -> Checkpoint | None:
        return self.checkpoints.get((workflow_id, step_id))

    def save_checkpoint(
        self, conn: Any, workflow_id: str, step_id: int, name: str, output: Any
    ) -> None:
        key = (workflow_id, step_id)
        if key in self.checkpoints:
            msg = f"{workflow_id} step {step_id} already recorded"
            raise CheckpointConflictError(msg)
        self.checkpoints[key] = Checkpoint(step_id=step_id, name=name, output=output)

    def table(self, name: str) -> list[Any]:
        return self.rows.setdefault(name, [])


@pytest.fixture
def workflow_store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def engine(workflow_store: InMemoryWorkflowStore) -> WorkflowEngine:
    """Engine with three attempts per step and no backoff sleeps."""
    return WorkflowEngine(
        workflow_store, RetryPolicy(max_attempts=3, backoff_seconds=0, max_backoff_seconds=0)
    )


@pytest.fixture
def store_root(tmp_path: Path) -> Path:
    """Provide a temporary directory as the file store root."""
    root = tmp_path / "invoices"
    root.mkdir()
    return root


@pytest.fixture
def sample_upload() -> UploadedFile:
    """Provide a small PDF upload."""
    return UploadedFile(
        filename="Acme Invoice 2024-001.pdf",
        mime_type="application/pdf",
        data=b"%PDF-1.4 acme invoice 2024-001",
    )


@pytest.fixture
def clean_invoice() -> ExtractedInvoice:
    """An extraction whose line items, tax and total reconcile to the cent."""
    return ExtractedInvoice(
        vendor_name="TechSupply Corp",
        invoice_number="INV-2024-001",
        invoice_date=date(2024, 1, 15),
        due_date=date(2024, 2, 14),
        subtotal=Decimal("1000.00"),
        tax_amount=Decimal("80.00"),
        total_amount=Decimal("1080.00"),
        line_items=[
            ExtractedLineItem(
                description="Laptop stand",
                quantity=Decimal(4),
                unit_price=Decimal("125.00"),
                line_total=Decimal("500.00"),
                line_number=1,
            ),
            ExtractedLineItem(
                description="USB-C dock",
                quantity=Decimal(2),
                unit_price=Decimal("250.00"),
                line_total=Decimal("500.00"),
                line_number=2,
            ),
        ],
    )


@pytest.fixture
def high_confidence() -> ExtractionConfidence:
    return ExtractionConfidence(overall_confidence=0.97)


# --- PostgreSQL (integration) ---


@pytest.fixture(scope="session")
def pg_pool() -> Iterator[ConnectionPool]:
    """Connection pool on TEST_DATABASE_URL with the schema applied."""
    url = os.environ.get("TEST_DATABASE_URL")
    if not url:
        pytest.skip("TEST_DATABASE_URL not set")

    from invoice_flow.config import PoolConfig
    from invoice_flow.db import create_pool, init_schema

    pool = create_pool(url, PoolConfig(min_size=1, max_size=5))
    init_schema(pool)
    yield pool
    pool.close()


@pytest.fixture
def db_pool(pg_pool: ConnectionPool) -> ConnectionPool:
    """The session pool, with every table emptied before the test."""
    from invoice_flow.db import transaction

    with transaction(pg_pool) as conn:
        conn.execute(
            "TRUNCATE workflow_checkpoints, workflow_runs, invoice_events,"
            " line_items, invoices, vendors, users CASCADE"
        )
    return pg_pool
