from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from .codec import build_codec
from .config import app_config
from .context import ExecutionContextManager
from .engine import WorkflowEngine
from .errors import PersistenceError, PlanningError, WorkflowNotFoundError
from .models import (
    AccessAction,
    RunRequest,
    ValidationResult,
    VariableAccessLog,
    WorkflowDefinition,
    WorkflowExecution,
)
from .nodes import register_builtin_nodes
from .nodes.base import NodeRegistry
from .planner import plan_for_strategy
from .store import SQLiteStore
from .validator import validate_workflow

_context_settings = app_config.context_settings()
_engine_settings = app_config.engine_settings()

registry = NodeRegistry()
register_builtin_nodes(registry)
context_manager = ExecutionContextManager(
    build_codec(str(_context_settings["encryption_key"]) or None),
    access_log_limit=int(_context_settings["access_log_limit"]),
    snapshot_limit=int(_context_settings["snapshot_limit"]),
    session_ttl=_context_settings["session_ttl"],
    local_ttl=_context_settings["local_ttl"],
)
store = SQLiteStore(str(app_config.storage_settings()["db_path"]))
engine = WorkflowEngine(
    registry,
    context_manager,
    store,
    default_timeout=_engine_settings["default_timeout"],
    plan_strategy=str(_engine_settings["plan_strategy"]),
)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    context_manager.start_cleanup(float(_context_settings["cleanup_interval"]))
    try:
        yield
    finally:
        await context_manager.stop_cleanup()


app = FastAPI(title="AgentFlow", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_origin_regex=r"^https?://(127\.0\.0\.1|localhost):\d+$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_workflow(workflow_id: str) -> WorkflowDefinition:
    workflow = store.get_workflow(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/node-types")
def list_node_types() -> list[str]:
    return registry.list_types()


@app.get("/node-catalog")
def node_catalog() -> list[dict[str, str]]:
    return registry.list_specs()


@app.get("/node-catalog/categories")
def node_categories() -> dict[str, list[str]]:
    return registry.types_by_category()


@app.get("/node-types/{type_name}")
def get_node_type(type_name: str) -> dict[str, Any]:
    try:
        spec = registry.get(type_name)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Node type not found") from exc
    return {
        "type": spec.type_name,
        "category": spec.category.value,
        "description": spec.description,
        "defaults": spec.defaults,
    }


@app.get("/config")
def config() -> dict[str, dict[str, object]]:
    return {
        "engine": _engine_settings,
        "ai_defaults": app_config.ai_defaults(),
    }


@app.post("/workflows", response_model=WorkflowDefinition)
def create_workflow(workflow: WorkflowDefinition) -> WorkflowDefinition:
    try:
        return store.create_workflow(workflow)
    except PersistenceError as exc:
        raise HTTPException(status_code=409, detail="Workflow id already exists") from exc


@app.post("/workflows/new", response_model=WorkflowDefinition)
def create_workflow_with_generated_id(workflow: WorkflowDefinition) -> WorkflowDefinition:
    created = workflow.model_copy(update={"id": str(uuid.uuid4())})
    return store.create_workflow(created)


@app.get("/workflows", response_model=list[WorkflowDefinition])
def list_workflows() -> list[WorkflowDefinition]:
    return store.list_workflows()


@app.get("/workflows/{workflow_id}", response_model=WorkflowDefinition)
def get_workflow(workflow_id: str) -> WorkflowDefinition:
    return _require_workflow(workflow_id)


@app.put("/workflows/{workflow_id}", response_model=WorkflowDefinition)
def update_workflow(workflow_id: str, workflow: WorkflowDefinition) -> WorkflowDefinition:
    if workflow.id != workflow_id:
        raise HTTPException(status_code=400, detail="Workflow id mismatch")
    updated = store.update_workflow(workflow_id, workflow)
    if updated is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return updated


@app.get("/workflows/{workflow_id}/validate", response_model=ValidationResult)
def validate(workflow_id: str) -> ValidationResult:
    return validate_workflow(_require_workflow(workflow_id))


@app.get("/workflows/{workflow_id}/plan")
def plan(workflow_id: str, strategy: str | None = None) -> dict[str, Any]:
    workflow = _require_workflow(workflow_id)
    triggers = workflow.trigger_nodes()
    if not triggers:
        raise HTTPException(status_code=400, detail="Workflow must have at least one trigger node")
    try:
        order = plan_for_strategy(workflow, triggers[0].id, strategy or engine.plan_strategy)
    except PlanningError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"start_node_id": triggers[0].id, "plan": order}


@app.post("/workflows/{workflow_id}/run", response_model=WorkflowExecution)
async def run_workflow(workflow_id: str, request: RunRequest) -> WorkflowExecution:
    try:
        return await engine.run_workflow(
            workflow_id,
            request.input_data,
            request.context,
            variables=request.variables,
            timeout=request.timeout,
        )
    except WorkflowNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Workflow not found") from exc


@app.get("/workflows/{workflow_id}/executions", response_model=list[WorkflowExecution])
def execution_history(
    workflow_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[WorkflowExecution]:
    return engine.get_execution_history(workflow_id, limit=limit, offset=offset)


@app.get("/executions/active", response_model=list[WorkflowExecution])
def active_executions() -> list[WorkflowExecution]:
    return engine.active_executions()


@app.get("/executions/{execution_id}", response_model=WorkflowExecution)
def get_execution(execution_id: str) -> WorkflowExecution:
    execution = engine.get_execution_status(execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return execution


@app.post("/executions/{execution_id}/cancel")
def cancel_execution(execution_id: str) -> dict[str, bool]:
    return {"cancelled": engine.cancel_execution(execution_id)}


@app.get("/scopes/{scope_id}/variables")
def scope_variables(scope_id: str) -> dict[str, Any]:
    if context_manager.get_scope(scope_id) is None:
        raise HTTPException(status_code=404, detail="Scope not found")
    return context_manager.get_all_variables(scope_id, redact_encrypted=True)


@app.get("/access-logs", response_model=list[VariableAccessLog])
def access_logs(
    variable_name: str | None = None,
    scope: str | None = None,
    node_id: str | None = None,
    execution_id: str | None = None,
    action: AccessAction | None = None,
    since: datetime | None = None,
) -> list[VariableAccessLog]:
    return context_manager.get_access_logs(
        variable_name=variable_name,
        scope=scope,
        node_id=node_id,
        execution_id=execution_id,
        action=action,
        since=since,
    )
