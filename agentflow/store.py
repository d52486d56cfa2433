from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Protocol

from .errors import PersistenceError
from .models import ExecutionStatus, WorkflowDefinition, WorkflowExecution


class ExecutionStore(Protocol):
    """Persistence collaborator used by the engine and the API."""

    def create_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition: ...

    def update_workflow(self, workflow_id: str, workflow: WorkflowDefinition) -> WorkflowDefinition | None: ...

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None: ...

    def list_workflows(self) -> list[WorkflowDefinition]: ...

    def save_execution(self, execution: WorkflowExecution) -> None: ...

    def get_execution(self, execution_id: str) -> WorkflowExecution | None: ...

    def query_executions(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowExecution]: ...


class InMemoryStore:
    """Process-local store for tests and embedded use. Nothing survives a restart."""

    def __init__(self) -> None:
        self._workflows: dict[str, WorkflowDefinition] = {}
        self._executions: dict[str, WorkflowExecution] = {}
        self._lock = threading.Lock()

    def create_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        with self._lock:
            if workflow.id in self._workflows:
                raise PersistenceError(f"Workflow {workflow.id} already exists")
            self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow

    def update_workflow(self, workflow_id: str, workflow: WorkflowDefinition) -> WorkflowDefinition | None:
        with self._lock:
            if workflow_id not in self._workflows:
                return None
            self._workflows[workflow_id] = workflow.model_copy(deep=True)
        return workflow

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    def list_workflows(self) -> list[WorkflowDefinition]:
        with self._lock:
            workflows = list(self._workflows.values())
        return sorted(workflows, key=lambda wf: wf.metadata.created_at, reverse=True)

    def save_execution(self, execution: WorkflowExecution) -> None:
        with self._lock:
            self._executions[execution.id] = execution.model_copy(deep=True)

    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        with self._lock:
            execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    def query_executions(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        with self._lock:
            executions = list(self._executions.values())
        matches = [
            execution
            for execution in executions
            if (workflow_id is None or execution.workflow_id == workflow_id)
            and (status is None or execution.status == status)
        ]
        matches.sort(key=lambda execution: execution.start_time, reverse=True)
        return [execution.model_copy(deep=True) for execution in matches[offset : offset + limit]]


class SQLiteStore:
    def __init__(self, db_path: str | Path = "data/agentflow.db") -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    definition TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS executions (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    deployment_id TEXT,
                    conversation_id TEXT,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    duration_ms REAL,
                    error TEXT,
                    record TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_executions_workflow ON executions (workflow_id, started_at)"
            )

    def create_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO workflows (id, name, definition, created_at) VALUES (?, ?, ?, ?)",
                    (
                        workflow.id,
                        workflow.name,
                        workflow.model_dump_json(),
                        workflow.metadata.created_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise PersistenceError(f"Workflow {workflow.id} already exists") from exc
        return workflow

    def update_workflow(self, workflow_id: str, workflow: WorkflowDefinition) -> WorkflowDefinition | None:
        with self._connect() as conn:
            existing = conn.execute(
                "SELECT id FROM workflows WHERE id = ?",
                (workflow_id,),
            ).fetchone()
            if not existing:
                return None
            conn.execute(
                "UPDATE workflows SET name = ?, definition = ? WHERE id = ?",
                (
                    workflow.name,
                    workflow.model_dump_json(),
                    workflow_id,
                ),
            )
        return workflow

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM workflows WHERE id = ?",
                (workflow_id,),
            ).fetchone()

        if not row:
            return None
        return WorkflowDefinition.model_validate_json(row["definition"])

    def list_workflows(self) -> list[WorkflowDefinition]:
        with self._connect() as conn:
            rows = conn.execute("SELECT definition FROM workflows ORDER BY created_at DESC").fetchall()

        return [WorkflowDefinition.model_validate_json(row["definition"]) for row in rows]

    def save_execution(self, execution: WorkflowExecution) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO executions (
                        id, workflow_id, deployment_id, conversation_id, status,
                        started_at, finished_at, duration_ms, error, record
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        status = excluded.status,
                        finished_at = excluded.finished_at,
                        duration_ms = excluded.duration_ms,
                        error = excluded.error,
                        record = excluded.record
                    """,
                    (
                        execution.id,
                        execution.workflow_id,
                        execution.deployment_id,
                        execution.conversation_id,
                        execution.status.value,
                        execution.start_time.isoformat(),
                        execution.end_time.isoformat() if execution.end_time else None,
                        execution.duration_ms,
                        execution.error,
                        execution.model_dump_json(),
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to save execution {execution.id}: {exc}") from exc

    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT record FROM executions WHERE id = ?",
                (execution_id,),
            ).fetchone()

        if not row:
            return None
        return WorkflowExecution.model_validate_json(row["record"])

    def query_executions(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        clauses: list[str] = []
        params: list[object] = []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])

        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT record FROM executions {where} ORDER BY started_at DESC LIMIT ? OFFSET ?",
                params,
            ).fetchall()

        return [WorkflowExecution.model_validate_json(row["record"]) for row in rows]
