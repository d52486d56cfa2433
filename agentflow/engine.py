from __future__ import annotations

import logging
import time
from typing import Any, Callable

from .context import GLOBAL_SCOPE_ID, ExecutionContextManager, workflow_scope_id
from .errors import (
    ExecutionCancelledError,
    ExecutionTimeoutError,
    PersistenceError,
    UnknownNodeTypeError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from .models import (
    Connection,
    ExecutionLog,
    ExecutionOptions,
    ExecutionStatus,
    ExecutionStep,
    LogLevel,
    Node,
    StepStatus,
    WorkflowDefinition,
    WorkflowExecution,
    utc_now,
)
from .nodes.base import NodeExecutionContext, NodeRegistry
from .planner import DEPTH_FIRST, plan_for_strategy
from .store import ExecutionStore
from .validator import validate_workflow

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

_BRANCH_PORTS = {"true": True, "false": False}


class WorkflowEngine:
    """Runs workflow definitions node by node.

    Each call to :meth:`execute_workflow` walks its plan strictly in order;
    many calls may be in flight at once and share the context manager.
    Cancellation and timeouts are checked between steps only: a handler
    that is already running is always allowed to finish.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        context_manager: ExecutionContextManager | None = None,
        store: ExecutionStore | None = None,
        *,
        default_timeout: float | None = None,
        plan_strategy: str = DEPTH_FIRST,
        release_run_scopes: bool = True,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.context_manager = context_manager or ExecutionContextManager()
        self.store = store
        self.default_timeout = default_timeout
        self.plan_strategy = plan_strategy
        self.release_run_scopes = release_run_scopes
        self._monotonic = monotonic
        self._active: dict[str, WorkflowExecution] = {}
        self._cancel_requested: set[str] = set()

    async def execute_workflow(
        self,
        definition: WorkflowDefinition,
        input_data: dict[str, Any] | None = None,
        options: ExecutionOptions | None = None,
    ) -> WorkflowExecution:
        options = options or ExecutionOptions()
        input_data = dict(input_data or {})
        caller = dict(options.context)

        execution = WorkflowExecution(
            workflow_id=definition.id,
            deployment_id=caller.get("deployment_id"),
            conversation_id=caller.get("conversation_id"),
            variables={**options.variables, **input_data},
            metadata={**caller, "input_data": input_data},
        )
        self._active[execution.id] = execution
        started = self._monotonic()
        timeout = options.timeout if options.timeout is not None else self.default_timeout

        try:
            await self._run(definition, input_data, options, execution, started, timeout)
        except Exception as exc:
            logger.exception("Workflow %s execution %s crashed", definition.id, execution.id)
            if not execution.status.is_terminal:
                execution.transition(ExecutionStatus.FAILED)
                execution.error = str(exc)
        finally:
            self._finalize(execution, started)
        return execution

    async def run_workflow(
        self,
        workflow_id: str,
        input_data: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
        *,
        variables: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> WorkflowExecution:
        definition = self.store.get_workflow(workflow_id) if self.store is not None else None
        if definition is None:
            raise WorkflowNotFoundError(workflow_id)
        options = ExecutionOptions(timeout=timeout, variables=variables or {}, context=context or {})
        return await self.execute_workflow(definition, input_data, options)

    def cancel_execution(self, execution_id: str) -> bool:
        execution = self._active.get(execution_id)
        if execution is None or execution.status.is_terminal:
            return False
        self._cancel_requested.add(execution_id)
        self._log(execution, LogLevel.INFO, "Cancellation requested; stopping at the next step boundary")
        return True

    def get_execution_status(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._active.get(execution_id)
        if execution is not None:
            return execution
        if self.store is None:
            return None
        return self.store.get_execution(execution_id)

    def get_execution_history(self, workflow_id: str, limit: int = 50, offset: int = 0) -> list[WorkflowExecution]:
        if self.store is None:
            return []
        try:
            return self.store.query_executions(workflow_id=workflow_id, limit=limit, offset=offset)
        except PersistenceError:
            logger.exception("Failed to load execution history for workflow %s", workflow_id)
            return []

    def active_executions(self) -> list[WorkflowExecution]:
        return list(self._active.values())

    async def _run(
        self,
        definition: WorkflowDefinition,
        input_data: dict[str, Any],
        options: ExecutionOptions,
        execution: WorkflowExecution,
        started: float,
        timeout: float | None,
    ) -> None:
        validation = validate_workflow(definition)
        for warning in validation.warnings:
            self._log(execution, LogLevel.WARN, warning.message, node_id=warning.node_id)
        if not validation.is_valid:
            error = WorkflowValidationError(validation)
            execution.validation = validation
            execution.transition(ExecutionStatus.FAILED)
            execution.error = str(error)
            self._log(execution, LogLevel.ERROR, str(error))
            return

        execution.transition(ExecutionStatus.RUNNING)
        scope_id, conversation_scope = self._prepare_scope(definition, execution, input_data, options)

        start_node = definition.trigger_nodes()[0]
        plan = plan_for_strategy(definition, start_node.id, options.plan_strategy or self.plan_strategy)
        execution.metadata["plan"] = plan
        self._log(execution, LogLevel.INFO, f"Starting workflow {definition.id} with {len(plan)} planned nodes")

        outputs: dict[str, Any] = {}
        last_result: Any = None
        for node_id in plan:
            if self._interrupted(execution, started, timeout):
                return

            node = definition.get_node(node_id)
            if node is None:
                self._log(execution, LogLevel.WARN, f"Node {node_id} not found in workflow")
                continue

            if options.debug and node_id in options.breakpoints:
                self._log(execution, LogLevel.DEBUG, f"Breakpoint hit at node {node_id}", node_id=node_id)

            if self._is_gated(definition, node, execution, outputs):
                execution.steps.append(
                    ExecutionStep(
                        node_id=node.id,
                        node_name=node.display_name,
                        node_type=node.type,
                        status=StepStatus.SKIPPED,
                        end_time=utc_now(),
                        duration_ms=0.0,
                    )
                )
                self._log(execution, LogLevel.INFO, f"Skipping node {node.display_name}: no active branch", node_id=node.id)
                continue

            step = ExecutionStep(
                node_id=node.id,
                node_name=node.display_name,
                node_type=node.type,
                status=StepStatus.RUNNING,
            )
            execution.steps.append(step)
            step_started = self._monotonic()

            try:
                output = await self._execute_node(
                    definition, node, execution, step, outputs, scope_id, conversation_scope
                )
            except Exception as exc:
                self._finish_step(step, StepStatus.FAILED, step_started, error=str(exc))
                self._log(
                    execution,
                    LogLevel.ERROR,
                    f"Node {node.display_name} failed: {exc}",
                    step=step,
                    data={"error_type": type(exc).__name__},
                )
                if node.metadata.continue_on_error:
                    self._log(
                        execution,
                        LogLevel.WARN,
                        f"Continuing execution despite error in {node.display_name}",
                        step=step,
                    )
                    continue
                execution.transition(ExecutionStatus.FAILED)
                execution.error = str(exc)
                return

            outputs[node_id] = output
            last_result = output
            step.output = output
            self._finish_step(step, StepStatus.COMPLETED, step_started)
            self._log(execution, LogLevel.INFO, f"Node {node.display_name} completed successfully", step=step)

        if self._interrupted(execution, started, timeout):
            return

        execution.result = last_result
        execution.transition(ExecutionStatus.COMPLETED)
        self._log(execution, LogLevel.INFO, "Workflow execution completed")

    async def _execute_node(
        self,
        definition: WorkflowDefinition,
        node: Node,
        execution: WorkflowExecution,
        step: ExecutionStep,
        outputs: dict[str, Any],
        scope_id: str,
        conversation_scope: str | None,
    ) -> Any:
        handler = self.registry.create_node_instance(node)
        if handler is None:
            raise UnknownNodeTypeError(node.id, node.type)

        node_input = self._prepare_node_input(definition, node, outputs, scope_id)
        step.input = self._prepare_node_input(definition, node, outputs, scope_id, redact_encrypted=True)

        context = NodeExecutionContext(
            manager=self.context_manager,
            workflow_id=definition.id,
            execution_id=execution.id,
            scope_id=scope_id,
            node_id=node.id,
            conversation_scope_id=conversation_scope,
            metadata={key: value for key, value in execution.metadata.items() if key not in ("plan", "events")},
            log_sink=lambda entry: self._append(execution, entry, step),
        )
        self._log(execution, LogLevel.INFO, f"Executing node: {node.display_name} ({node.type})", step=step)
        try:
            return await handler.execute(node_input, context)
        finally:
            if context.events:
                execution.metadata.setdefault("events", []).extend(
                    {**event, "node_id": node.id} for event in context.events
                )

    def _prepare_scope(
        self,
        definition: WorkflowDefinition,
        execution: WorkflowExecution,
        input_data: dict[str, Any],
        options: ExecutionOptions,
    ) -> tuple[str, str | None]:
        manager = self.context_manager
        parent_id = GLOBAL_SCOPE_ID
        conversation_scope = None
        if execution.conversation_id:
            conversation_scope = manager.get_conversation_scope(execution.conversation_id).id
            parent_id = conversation_scope

        scope = manager.get_workflow_scope(definition.id, execution.id, parent_id=parent_id)
        for variable in definition.variables:
            manager.set_variable(
                scope.id,
                variable.name,
                variable.default_value,
                var_type=variable.type,
                readonly=variable.readonly,
                execution_id=execution.id,
            )
        for name, value in {**options.variables, **input_data}.items():
            if not manager.set_variable(scope.id, name, value, execution_id=execution.id):
                self._log(execution, LogLevel.WARN, f"Input variable {name} ignored: variable is readonly")
        return scope.id, conversation_scope

    def _prepare_node_input(
        self,
        definition: WorkflowDefinition,
        node: Node,
        outputs: dict[str, Any],
        scope_id: str,
        redact_encrypted: bool = False,
    ) -> dict[str, Any]:
        node_input: dict[str, Any] = {}
        for conn in definition.incoming(node.id):
            if conn.source_node_id not in outputs:
                continue
            source_output = outputs[conn.source_node_id]
            if isinstance(source_output, dict):
                node_input.update(source_output)
            elif source_output is not None:
                node_input[conn.source_node_id] = source_output

        node_input.update(self.context_manager.get_all_variables(scope_id, redact_encrypted=redact_encrypted))
        if node.configuration:
            node_input["configuration"] = dict(node.configuration)
        return node_input

    def _is_gated(
        self,
        definition: WorkflowDefinition,
        node: Node,
        execution: WorkflowExecution,
        outputs: dict[str, Any],
    ) -> bool:
        incoming = definition.incoming(node.id)
        if not incoming:
            return False
        return not any(self._connection_active(conn, execution, outputs) for conn in incoming)

    def _connection_active(self, conn: Connection, execution: WorkflowExecution, outputs: dict[str, Any]) -> bool:
        source_step = execution.step_for(conn.source_node_id)
        if source_step is None:
            return True
        if source_step.status == StepStatus.SKIPPED:
            return False
        expected = _BRANCH_PORTS.get(conn.source_port_id.lower())
        if expected is None:
            return True
        # A branch port needs a boolean; a failed condition takes neither branch.
        return outputs.get(conn.source_node_id) is expected

    def _interrupted(self, execution: WorkflowExecution, started: float, timeout: float | None) -> bool:
        if execution.id in self._cancel_requested:
            execution.transition(ExecutionStatus.CANCELLED)
            execution.error = str(ExecutionCancelledError())
            self._log(execution, LogLevel.INFO, "Workflow execution cancelled by user")
            return True
        if timeout is not None and self._monotonic() - started > timeout:
            execution.transition(ExecutionStatus.TIMEOUT)
            execution.error = str(ExecutionTimeoutError(timeout))
            self._log(execution, LogLevel.ERROR, execution.error)
            return True
        return False

    def _finish_step(
        self,
        step: ExecutionStep,
        status: StepStatus,
        step_started: float,
        error: str | None = None,
    ) -> None:
        step.status = status
        step.error = error
        step.end_time = utc_now()
        step.duration_ms = (self._monotonic() - step_started) * 1000

    def _finalize(self, execution: WorkflowExecution, started: float) -> None:
        if not execution.status.is_terminal:
            # Only reachable when the surrounding task itself was cancelled.
            if execution.status == ExecutionStatus.RUNNING:
                execution.transition(ExecutionStatus.CANCELLED)
                execution.error = str(ExecutionCancelledError())
            else:
                execution.transition(ExecutionStatus.FAILED)
                execution.error = "Workflow execution aborted before start"

        execution.end_time = utc_now()
        execution.duration_ms = (self._monotonic() - started) * 1000

        self._release_scope(execution)

        self._active.pop(execution.id, None)
        self._cancel_requested.discard(execution.id)
        logger.info(
            "Workflow %s execution %s finished with status %s in %.1fms",
            execution.workflow_id,
            execution.id,
            execution.status.value,
            execution.duration_ms,
        )
        self._persist(execution)

    def _release_scope(self, execution: WorkflowExecution) -> None:
        scope_id = workflow_scope_id(execution.workflow_id, execution.id)
        try:
            if self.context_manager.get_scope(scope_id) is None:
                return
            execution.variables = self.context_manager.get_all_variables(scope_id, redact_encrypted=True)
            if self.release_run_scopes:
                self.context_manager.destroy_scope(scope_id)
        except Exception:
            logger.exception("Failed to release run scope %s", scope_id)

    def _persist(self, execution: WorkflowExecution) -> None:
        if self.store is None:
            return
        try:
            self.store.save_execution(execution)
        except Exception:
            logger.exception("Failed to save execution %s", execution.id)

    def _log(
        self,
        execution: WorkflowExecution,
        level: LogLevel,
        message: str,
        *,
        step: ExecutionStep | None = None,
        node_id: str | None = None,
        data: Any = None,
    ) -> None:
        entry = ExecutionLog(
            level=level,
            message=message,
            data=data,
            node_id=step.node_id if step is not None else node_id,
        )
        self._append(execution, entry, step)

    def _append(self, execution: WorkflowExecution, entry: ExecutionLog, step: ExecutionStep | None) -> None:
        execution.logs.append(entry)
        if step is not None:
            step.logs.append(entry)
        logger.log(_LOG_LEVELS[entry.level], "[%s] %s", execution.id, entry.message)
