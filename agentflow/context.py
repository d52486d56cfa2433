from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator

from .codec import Base64JsonCodec, ValueCodec
from .errors import ReadonlyVariableError, ScopeNotFoundError
from .models import (
    AccessAction,
    ContextScope,
    ContextSnapshot,
    ContextVariable,
    ScopeType,
    VariableAccessLog,
    VariableType,
    utc_now,
)

logger = logging.getLogger(__name__)

GLOBAL_SCOPE_ID = "global"
SYSTEM_VERSION = "1.0.0"


def infer_variable_type(value: Any) -> VariableType:
    # bool is a subclass of int, so it has to be checked first.
    if isinstance(value, bool):
        return VariableType.BOOLEAN
    if isinstance(value, (int, float)):
        return VariableType.NUMBER
    if isinstance(value, str):
        return VariableType.STRING
    if isinstance(value, (list, tuple, set)):
        return VariableType.ARRAY
    if value is None or isinstance(value, dict):
        return VariableType.OBJECT
    return VariableType.STRING


def workflow_scope_id(workflow_id: str, execution_id: str) -> str:
    return f"workflow_{workflow_id}_{execution_id}"


def conversation_scope_id(conversation_id: str) -> str:
    return f"conversation_{conversation_id}"


@dataclass(slots=True)
class CleanupReport:
    expired_scopes: list[str]
    trimmed_logs: int
    trimmed_snapshots: int


class ExecutionContextManager:
    """Scoped variable store shared by every execution of an engine.

    Scopes live in an id-keyed store and reference each other by id. Each
    scope has its own lock, so a single variable operation (including
    :meth:`update_variable`) is atomic with respect to concurrent writers.
    """

    def __init__(
        self,
        codec: ValueCodec | None = None,
        *,
        access_log_limit: int = 1000,
        snapshot_limit: int = 100,
        session_ttl: timedelta = timedelta(hours=24),
        local_ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.codec: ValueCodec = codec or Base64JsonCodec()
        self.access_log_limit = access_log_limit
        self.snapshot_limit = snapshot_limit
        self.session_ttl = session_ttl
        self.local_ttl = local_ttl
        self._clock = clock

        self._scopes: dict[str, ContextScope] = {}
        self._scope_locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.RLock()
        self._log_lock = threading.Lock()
        self._access_logs: list[VariableAccessLog] = []
        self._snapshots: dict[str, ContextSnapshot] = {}
        self._cleanup_task: asyncio.Task[None] | None = None

        self._initialize_global_scope()

    def create_scope(
        self,
        name: str,
        scope_type: ScopeType,
        parent_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        scope_id: str | None = None,
    ) -> ContextScope:
        now = self._clock()
        expires_at = None
        if scope_type == ScopeType.SESSION:
            expires_at = now + self.session_ttl
        elif scope_type == ScopeType.LOCAL:
            expires_at = now + self.local_ttl

        scope = ContextScope(
            id=scope_id or _new_id(),
            name=name,
            type=scope_type,
            metadata=dict(metadata or {}),
            created_at=now,
            expires_at=expires_at,
        )

        with self._registry_lock:
            if scope.id in self._scopes:
                raise ValueError(f"Scope {scope.id} already exists")
            if parent_id is not None:
                parent = self._scopes.get(parent_id)
                if parent is None:
                    logger.warning("Parent scope %s not found; creating %s detached", parent_id, scope.id)
                else:
                    scope.parent_id = parent_id
                    parent.children.add(scope.id)
            self._scopes[scope.id] = scope
            self._scope_locks[scope.id] = threading.RLock()
        logger.debug("Created %s scope %s (parent=%s)", scope_type.value, scope.id, scope.parent_id)
        return scope

    def get_scope(self, scope_id: str) -> ContextScope | None:
        with self._registry_lock:
            return self._scopes.get(scope_id)

    def list_scopes(self, scope_type: ScopeType | None = None) -> list[ContextScope]:
        with self._registry_lock:
            scopes = list(self._scopes.values())
        if scope_type is None:
            return scopes
        return [scope for scope in scopes if scope.type == scope_type]

    def get_workflow_scope(
        self, workflow_id: str, execution_id: str, parent_id: str = GLOBAL_SCOPE_ID
    ) -> ContextScope:
        return self._get_or_create(
            workflow_scope_id(workflow_id, execution_id),
            f"Workflow {workflow_id}",
            ScopeType.WORKFLOW,
            parent_id,
            {"workflow_id": workflow_id, "execution_id": execution_id},
        )

    def get_conversation_scope(
        self, conversation_id: str, parent_id: str = GLOBAL_SCOPE_ID
    ) -> ContextScope:
        return self._get_or_create(
            conversation_scope_id(conversation_id),
            f"Conversation {conversation_id}",
            ScopeType.CONVERSATION,
            parent_id,
            {"conversation_id": conversation_id},
        )

    def destroy_scope(self, scope_id: str) -> bool:
        with self._registry_lock:
            scope = self._scopes.get(scope_id)
            if scope is None:
                return False
            if scope.parent_id is not None:
                parent = self._scopes.get(scope.parent_id)
                if parent is not None:
                    parent.children.discard(scope_id)
            for child_id in list(scope.children):
                self.destroy_scope(child_id)
            del self._scopes[scope_id]
            del self._scope_locks[scope_id]
        logger.debug("Destroyed scope %s", scope_id)
        return True

    def set_variable(
        self,
        scope_id: str,
        name: str,
        value: Any,
        *,
        var_type: VariableType | None = None,
        readonly: bool = False,
        encrypted: bool = False,
        description: str | None = None,
        tags: list[str] | None = None,
        node_id: str | None = None,
        execution_id: str | None = None,
    ) -> bool:
        try:
            scope, lock = self._lookup(scope_id)
        except ScopeNotFoundError:
            logger.error("Scope %s not found", scope_id)
            return False

        with lock:
            existing = scope.variables.get(name)
            if existing is not None and existing.readonly:
                logger.error("Variable %s is readonly", name)
                return False
            self._write(
                scope,
                name,
                value,
                existing,
                var_type=var_type,
                readonly=readonly,
                encrypted=encrypted,
                description=description,
                tags=tags,
                node_id=node_id,
                execution_id=execution_id,
            )
        return True

    def update_variable(
        self,
        scope_id: str,
        name: str,
        fn: Callable[[Any], Any],
        *,
        default: Any = None,
        node_id: str | None = None,
        execution_id: str | None = None,
        **options: Any,
    ) -> Any:
        """Atomically replace ``name`` in ``scope_id`` with ``fn(current)``.

        ``current`` is the value held by the scope itself (not an ancestor),
        or ``default`` when the scope has no such variable. Returns the new
        value.
        """
        scope, lock = self._lookup(scope_id)
        with lock:
            existing = scope.variables.get(name)
            if existing is not None and existing.readonly:
                raise ReadonlyVariableError(name)
            current = self._decoded(existing) if existing is not None else default
            new_value = fn(current)
            self._write(
                scope,
                name,
                new_value,
                existing,
                node_id=node_id,
                execution_id=execution_id,
                **options,
            )
        return new_value

    def get_variable(
        self,
        scope_id: str,
        name: str,
        *,
        default: Any = None,
        node_id: str | None = None,
        execution_id: str | None = None,
    ) -> Any:
        found = self._find_variable(scope_id, name)
        if found is None:
            return default
        self._log_access(
            AccessAction.READ,
            name,
            found.scope,
            node_id=node_id,
            execution_id=execution_id,
        )
        return self._decoded(found)

    def has_variable(self, scope_id: str, name: str) -> bool:
        return self._find_variable(scope_id, name) is not None

    def delete_variable(
        self,
        scope_id: str,
        name: str,
        *,
        node_id: str | None = None,
        execution_id: str | None = None,
    ) -> bool:
        try:
            scope, lock = self._lookup(scope_id)
        except ScopeNotFoundError:
            return False

        with lock:
            variable = scope.variables.get(name)
            if variable is None:
                return False
            if variable.readonly:
                logger.error("Variable %s is readonly", name)
                return False
            del scope.variables[name]
            self._log_access(
                AccessAction.DELETE,
                name,
                scope_id,
                node_id=node_id,
                execution_id=execution_id,
                old_value=variable.value,
            )
        return True

    def get_all_variables(self, scope_id: str, *, redact_encrypted: bool = False) -> dict[str, Any]:
        """Merged view of ``scope_id`` and its ancestors, nearest scope winning.

        With ``redact_encrypted`` the stored token of encrypted variables is
        returned instead of the plaintext, for anything that gets recorded.
        """
        merged: dict[str, Any] = {}
        for scope, lock in reversed(list(self._chain(scope_id))):
            with lock:
                for name, variable in scope.variables.items():
                    if redact_encrypted and variable.encrypted:
                        merged[name] = variable.value
                    else:
                        merged[name] = self._decoded(variable)
        return merged

    def create_snapshot(self, execution_id: str, scope_ids: list[str]) -> ContextSnapshot:
        snapshot = ContextSnapshot(execution_id=execution_id, timestamp=self._clock())
        for scope_id in scope_ids:
            try:
                scope, lock = self._lookup(scope_id)
            except ScopeNotFoundError:
                logger.warning("Skipping unknown scope %s in snapshot", scope_id)
                continue
            with lock:
                snapshot.scopes[scope_id] = {
                    "name": scope.name,
                    "type": scope.type.value,
                    "metadata": dict(scope.metadata),
                }
                snapshot.variables[scope_id] = {
                    name: variable.model_copy(deep=True) for name, variable in scope.variables.items()
                }
        with self._log_lock:
            self._snapshots[snapshot.id] = snapshot
        return snapshot

    def get_snapshot(self, snapshot_id: str) -> ContextSnapshot | None:
        with self._log_lock:
            return self._snapshots.get(snapshot_id)

    def restore_snapshot(self, snapshot_id: str) -> bool:
        snapshot = self.get_snapshot(snapshot_id)
        if snapshot is None:
            return False

        for scope_id, variables in snapshot.variables.items():
            try:
                scope, lock = self._lookup(scope_id)
            except ScopeNotFoundError:
                logger.warning("Scope %s from snapshot %s no longer exists", scope_id, snapshot_id)
                continue
            with lock:
                scope.variables.clear()
                for name, variable in variables.items():
                    scope.variables[name] = variable.model_copy(deep=True)
                    self._log_access(
                        AccessAction.WRITE,
                        name,
                        scope_id,
                        execution_id=snapshot.execution_id,
                        new_value=variable.value,
                    )
        logger.info("Restored snapshot %s", snapshot_id)
        return True

    def cleanup(self) -> CleanupReport:
        now = self._clock()
        with self._registry_lock:
            expired = [scope.id for scope in self._scopes.values() if scope.is_expired(now)]
            destroyed = [scope_id for scope_id in expired if self.destroy_scope(scope_id)]

        with self._log_lock:
            trimmed_logs = max(0, len(self._access_logs) - self.access_log_limit)
            if trimmed_logs:
                self._access_logs = self._access_logs[-self.access_log_limit :]

            trimmed_snapshots = 0
            if len(self._snapshots) > self.snapshot_limit:
                newest_first = sorted(self._snapshots.values(), key=lambda snap: snap.timestamp, reverse=True)
                for stale in newest_first[self.snapshot_limit :]:
                    del self._snapshots[stale.id]
                    trimmed_snapshots += 1

        if destroyed or trimmed_logs or trimmed_snapshots:
            logger.info(
                "Context cleanup: %d scopes expired, %d access logs and %d snapshots trimmed",
                len(destroyed),
                trimmed_logs,
                trimmed_snapshots,
            )
        return CleanupReport(destroyed, trimmed_logs, trimmed_snapshots)

    def start_cleanup(self, interval: float = 300.0) -> asyncio.Task[None]:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return self._cleanup_task
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop(interval))
        return self._cleanup_task

    async def stop_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.cleanup()
            except Exception:
                logger.exception("Context cleanup failed")

    def get_access_logs(
        self,
        *,
        variable_name: str | None = None,
        scope: str | None = None,
        node_id: str | None = None,
        execution_id: str | None = None,
        action: AccessAction | None = None,
        since: datetime | None = None,
    ) -> list[VariableAccessLog]:
        with self._log_lock:
            logs = list(self._access_logs)
        return [
            log
            for log in logs
            if (variable_name is None or log.variable_name == variable_name)
            and (scope is None or log.scope == scope)
            and (node_id is None or log.node_id == node_id)
            and (execution_id is None or log.execution_id == execution_id)
            and (action is None or log.action == action)
            and (since is None or log.timestamp >= since)
        ]

    def _initialize_global_scope(self) -> None:
        self.create_scope("Global Scope", ScopeType.GLOBAL, scope_id=GLOBAL_SCOPE_ID)
        self.set_variable(GLOBAL_SCOPE_ID, "SYSTEM_VERSION", SYSTEM_VERSION, readonly=True)
        self.set_variable(
            GLOBAL_SCOPE_ID,
            "EXECUTION_START_TIME",
            self._clock().isoformat(),
            readonly=True,
        )

    def _get_or_create(
        self,
        scope_id: str,
        name: str,
        scope_type: ScopeType,
        parent_id: str,
        metadata: dict[str, Any],
    ) -> ContextScope:
        with self._registry_lock:
            scope = self._scopes.get(scope_id)
            if scope is None:
                scope = self.create_scope(name, scope_type, parent_id, metadata, scope_id=scope_id)
            return scope

    def _lookup(self, scope_id: str) -> tuple[ContextScope, threading.RLock]:
        with self._registry_lock:
            scope = self._scopes.get(scope_id)
            if scope is None:
                raise ScopeNotFoundError(scope_id)
            return scope, self._scope_locks[scope_id]

    def _chain(self, scope_id: str) -> Iterator[tuple[ContextScope, threading.RLock]]:
        """Yield the scope and its ancestors, nearest first."""
        seen: set[str] = set()
        current: str | None = scope_id
        while current is not None and current not in seen:
            seen.add(current)
            try:
                scope, lock = self._lookup(current)
            except ScopeNotFoundError:
                return
            yield scope, lock
            current = scope.parent_id

    def _find_variable(self, scope_id: str, name: str) -> ContextVariable | None:
        for scope, lock in self._chain(scope_id):
            with lock:
                variable = scope.variables.get(name)
            if variable is not None:
                return variable
        return None

    def _decoded(self, variable: ContextVariable) -> Any:
        if variable.encrypted:
            return self.codec.decode(variable.value)
        return variable.value

    def _write(
        self,
        scope: ContextScope,
        name: str,
        value: Any,
        existing: ContextVariable | None,
        *,
        var_type: VariableType | None = None,
        readonly: bool = False,
        encrypted: bool = False,
        description: str | None = None,
        tags: list[str] | None = None,
        node_id: str | None = None,
        execution_id: str | None = None,
    ) -> None:
        # caller holds the scope lock
        now = self._clock()
        stored = self.codec.encode(value) if encrypted else value
        scope.variables[name] = ContextVariable(
            name=name,
            value=stored,
            type=var_type or infer_variable_type(value),
            scope=scope.id,
            readonly=readonly,
            encrypted=encrypted,
            description=description,
            tags=list(tags or []),
            created_at=existing.created_at if existing is not None else now,
            updated_at=now,
        )
        self._log_access(
            AccessAction.WRITE,
            name,
            scope.id,
            node_id=node_id,
            execution_id=execution_id,
            old_value=existing.value if existing is not None else None,
            new_value=stored,
        )

    def _log_access(
        self,
        action: AccessAction,
        variable_name: str,
        scope: str,
        *,
        node_id: str | None = None,
        execution_id: str | None = None,
        old_value: Any = None,
        new_value: Any = None,
    ) -> None:
        entry = VariableAccessLog(
            timestamp=self._clock(),
            action=action,
            variable_name=variable_name,
            scope=scope,
            node_id=node_id,
            execution_id=execution_id,
            old_value=old_value,
            new_value=new_value,
        )
        with self._log_lock:
            self._access_logs.append(entry)


def _new_id() -> str:
    return str(uuid.uuid4())
