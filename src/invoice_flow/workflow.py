"""Durable workflow engine.

A workflow is a plain function that receives a WorkflowContext and calls its
``step`` and ``transaction`` helpers in a fixed order. Each call is numbered by
its position in the run and its encoded result is checkpointed, so running the
same workflow id again replays finished calls from their checkpoints instead
of repeating their side effects.

Steps run outside any database transaction and may be retried. Transactions
run their function and write their checkpoint inside one database
transaction, so they take effect exactly once.
"""

from __future__ import annotations

import hashlib
import logging
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from psycopg.errors import UniqueViolation
from psycopg.types.json import Jsonb
from pydantic import TypeAdapter
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from invoice_flow.errors import InvoiceFlowError, WorkflowError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from psycopg_pool import ConnectionPool

    from invoice_flow.config import RetryConfig

logger = logging.getLogger(__name__)

PENDING = "PENDING"
SUCCESS = "SUCCESS"
ERROR = "ERROR"


@dataclass(frozen=True)
class WorkflowRun:
    """Bookkeeping row for one workflow id."""

    workflow_id: str
    name: str
    status: str
    output: Any = None
    error: str | None = None
    attempts: int = 1


@dataclass(frozen=True)
class Checkpoint:
    """Recorded result of one step or transaction."""

    step_id: int
    name: str
    output: Any = None


class CheckpointConflictError(Exception):
    """Another execution of the same workflow recorded this checkpoint first."""


class WorkflowStore(Protocol):
    """Persistence for workflow runs and checkpoints.

    Every method takes the connection handle yielded by ``transaction()`` so
    that checkpoint writes can share a transaction with the work they record.
    """

    def transaction(self) -> AbstractContextManager[Any]: ...

    def get_run(self, conn: Any, workflow_id: str) -> WorkflowRun | None: ...

    def begin_run(self, conn: Any, workflow_id: str, name: str) -> None: ...

    def complete_run(self, conn: Any, workflow_id: str, output: Any) -> None: ...

    def fail_run(self, conn: Any, workflow_id: str, error: str) -> None: ...

    def get_checkpoint(
        self, conn: Any, workflow_id: str, step_id: int
    ) -> Checkpoint | None: ...

    def save_checkpoint(
        self, conn: Any, workflow_id: str, step_id: int, name: str, output: Any
    ) -> None: ...


class PostgresWorkflowStore:
    """WorkflowStore backed by the workflow_runs and workflow_checkpoints tables."""

    def __init__(self, pool: ConnectionPool) -> None:
        self.pool = pool

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        with self.pool.connection() as conn, conn.transaction():
            yield conn

    def get_run(self, conn: Any, workflow_id: str) -> WorkflowRun | None:
        row = conn.execute(
            "SELECT workflow_id, name, status, output, error, attempts"
            " FROM workflow_runs WHERE workflow_id = %s",
            (workflow_id,),
        ).fetchone()
        return WorkflowRun(**row) if row else None

    def begin_run(self, conn: Any, workflow_id: str, name: str) -> None:
        conn.execute(
            "INSERT INTO workflow_runs (workflow_id, name, status)"
            " VALUES (%s, %s, 'PENDING')"
            " ON CONFLICT (workflow_id) DO UPDATE SET status = 'PENDING',"
            " error = NULL, attempts = workflow_runs.attempts + 1, updated_at = now()",
            (workflow_id, name),
        )

    def complete_run(self, conn: Any, workflow_id: str, output: Any) -> None:
        conn.execute(
            "UPDATE workflow_runs SET status = 'SUCCESS', output = %s,"
            " error = NULL, updated_at = now() WHERE workflow_id = %s",
            (Jsonb(output), workflow_id),
        )

    def fail_run(self, conn: Any, workflow_id: str, error: str) -> None:
        conn.execute(
            "UPDATE workflow_runs SET status = 'ERROR', error = %s,"
            " updated_at = now() WHERE workflow_id = %s",
            (error, workflow_id),
        )

    def get_checkpoint(
        self, conn: Any, workflow_id: str, step_id: int
    ) -> Checkpoint | None:
        row = conn.execute(
            "SELECT step_id, name, output FROM workflow_checkpoints"
            " WHERE workflow_id = %s AND step_id = %s",
            (workflow_id, step_id),
        ).fetchone()
        return Checkpoint(**row) if row else None

    def save_checkpoint(
        self, conn: Any, workflow_id: str, step_id: int, name: str, output: Any
    ) -> None:
        try:
            with conn.transaction():
                conn.execute(
                    "INSERT INTO workflow_checkpoints (workflow_id, step_id, name, output)"
                    " VALUES (%s, %s, %s, %s)",
                    (workflow_id, step_id, name, Jsonb(output)),
                )
        except UniqueViolation as exc:
            msg = f"{workflow_id} step {step_id} ({name}) was already recorded"
            raise CheckpointConflictError(msg) from exc

    def list_runs(self, status: str | None = None, limit: int = 50) -> list[WorkflowRun]:
        """Most recently updated runs, optionally filtered by status."""
        query = (
            "SELECT workflow_id, name, status, output, error, attempts FROM workflow_runs"
        )
        params: list[Any] = []
        if status:
            query += " WHERE status = %s"
            params.append(status)
        query += " ORDER BY updated_at DESC LIMIT %s"
        params.append(limit)
        with self.transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [WorkflowRun(**row) for row in rows]


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a failing step is retried."""

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 10.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            backoff_seconds=config.backoff_seconds,
            max_backoff_seconds=config.max_backoff_seconds,
        )

    def retrying(self, retryable: bool = True) -> Retrying:
        """Build a tenacity controller; domain errors are never retried."""
        return Retrying(
            stop=stop_after_attempt(self.max_attempts if retryable else 1),
            wait=wait_exponential(
                multiplier=self.backoff_seconds, max=self.max_backoff_seconds
            ),
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )


def is_transient(exc: BaseException) -> bool:
    """Domain errors are deterministic; anything else may succeed on retry."""
    return isinstance(exc, Exception) and not isinstance(exc, InvoiceFlowError)


def workflow_id_for(prefix: str, content: bytes, key: str | None = None) -> str:
    """Derive a workflow id from an explicit idempotency key or the content hash."""
    if key:
        return f"{prefix}-key-{key}"
    return f"{prefix}-{hashlib.sha256(content).hexdigest()}"


def _adapter(result_type: Any) -> TypeAdapter[Any]:
    return TypeAdapter(Any if result_type is None else result_type)


class WorkflowContext:
    """Handle passed to a running workflow function."""

    def __init__(self, engine: WorkflowEngine, workflow_id: str) -> None:
        self.engine = engine
        self.workflow_id = workflow_id
        self._next_step_id = 0

    def step(
        self,
        name: str,
        fn: Callable[..., Any],
        *args: Any,
        result_type: Any = None,
        retryable: bool = True,
    ) -> Any:
        """Run ``fn(*args)`` at most once per workflow id, outside any transaction.

        Failures that are not domain errors are retried per the engine's
        policy when ``retryable`` is set; the last exception is re-raised.
        """
        step_id = self._allocate_step_id()
        store = self.engine.store
        adapter = _adapter(result_type)

        with store.transaction() as conn:
            checkpoint = store.get_checkpoint(conn, self.workflow_id, step_id)
        if checkpoint is not None:
            return self._replay(checkpoint, name, adapter)

        result = None
        for attempt in self.engine.retry_policy.retrying(retryable):
            with attempt:
                result = fn(*args)
        encoded = adapter.dump_python(result, mode="json")

        try:
            with store.transaction() as conn:
                store.save_checkpoint(conn, self.workflow_id, step_id, name, encoded)
        except CheckpointConflictError:
            logger.warning(
                "Step %s of %s finished concurrently; using recorded result",
                name,
                self.workflow_id,
            )
            return self._load_recorded(step_id, name, adapter)

        logger.info("Checkpointed step %d (%s) of %s", step_id, name, self.workflow_id)
        return adapter.validate_python(encoded)

    def transaction(
        self,
        name: str,
        fn: Callable[..., Any],
        *args: Any,
        result_type: Any = None,
    ) -> Any:
        """Run ``fn(conn, *args)`` and its checkpoint in one database transaction.

        If ``fn`` raises, its writes and the checkpoint are rolled back
        together and the exception propagates.
        """
        step_id = self._allocate_step_id()
        store = self.engine.store
        adapter = _adapter(result_type)

        try:
            with store.transaction() as conn:
                checkpoint = store.get_checkpoint(conn, self.workflow_id, step_id)
                if checkpoint is not None:
                    return self._replay(checkpoint, name, adapter)

                result = fn(conn, *args)
                encoded = adapter.dump_python(result, mode="json")
                store.save_checkpoint(conn, self.workflow_id, step_id, name, encoded)
        except CheckpointConflictError:
            logger.warning(
                "Transaction %s of %s committed concurrently; using recorded result",
                name,
                self.workflow_id,
            )
            return self._load_recorded(step_id, name, adapter)

        logger.info(
            "Committed transaction %d (%s) of %s", step_id, name, self.workflow_id
        )
        return adapter.validate_python(encoded)

    def _allocate_step_id(self) -> int:
        step_id = self._next_step_id
        self._next_step_id += 1
        return step_id

    def _load_recorded(self, step_id: int, name: str, adapter: TypeAdapter[Any]) -> Any:
        store = self.engine.store
        with store.transaction() as conn:
            checkpoint = store.get_checkpoint(conn, self.workflow_id, step_id)
        if checkpoint is None:
            msg = f"Checkpoint {step_id} of {self.workflow_id} vanished"
            raise WorkflowError(msg)
        return self._replay(checkpoint, name, adapter)

    def _replay(self, checkpoint: Checkpoint, name: str, adapter: TypeAdapter[Any]) -> Any:
        if checkpoint.name != name:
            msg = (
                f"Workflow {self.workflow_id} is not deterministic: step "
                f"{checkpoint.step_id} was {checkpoint.name!r}, now {name!r}"
            )
            raise WorkflowError(msg)
        logger.debug("Replaying %s of %s from checkpoint", name, self.workflow_id)
        return adapter.validate_python(checkpoint.output)


class WorkflowEngine:
    """Runs workflow functions under durable, idempotent workflow ids."""

    def __init__(
        self, store: WorkflowStore, retry_policy: RetryPolicy | None = None
    ) -> None:
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()

    def run(
        self,
        workflow_id: str,
        name: str,
        fn: Callable[..., Any],
        *args: Any,
        output_type: Any = None,
    ) -> Any:
        """Execute ``fn(ctx, *args)`` as workflow ``workflow_id``.

        A run that already succeeded returns its recorded output without
        executing anything. A pending or failed run resumes: finished steps
        replay from their checkpoints and execution continues after them.
        """
        adapter = _adapter(output_type)

        with self.store.transaction() as conn:
            existing = self.store.get_run(conn, workflow_id)
            if existing is not None and existing.name != name:
                msg = (
                    f"Workflow id {workflow_id} belongs to {existing.name!r}, "
                    f"not {name!r}"
                )
                raise WorkflowError(msg)
            if existing is not None and existing.status == SUCCESS:
                logger.info("Workflow %s already completed; returning its output", workflow_id)
                return adapter.validate_python(existing.output)
            self.store.begin_run(conn, workflow_id, name)

        if existing is not None:
            logger.info(
                "Resuming workflow %s (%s, previous status %s)",
                workflow_id,
                name,
                existing.status,
            )
        else:
            logger.info("Starting workflow %s (%s)", workflow_id, name)

        ctx = WorkflowContext(self, workflow_id)
        try:
            output = fn(ctx, *args)
        except Exception as exc:
            with self.store.transaction() as conn:
                self.store.fail_run(conn, workflow_id, f"{type(exc).__name__}: {exc}")
            logger.error("Workflow %s failed: %s", workflow_id, exc)
            raise

        encoded = adapter.dump_python(output, mode="json")
        with self.store.transaction() as conn:
            self.store.complete_run(conn, workflow_id, encoded)
        logger.info("Workflow %s completed", workflow_id)
        return output
