import asyncio
from typing import Any

import pytest

from agentflow.codec import FernetCodec
from agentflow.context import ExecutionContextManager, workflow_scope_id
from agentflow.engine import WorkflowEngine
from agentflow.errors import PersistenceError, WorkflowNotFoundError
from agentflow.models import (
    ExecutionOptions,
    ExecutionStatus,
    LogLevel,
    NodeCategory,
    StepStatus,
    WorkflowVariable,
)
from agentflow.nodes import BaseNode, NodeSpec
from agentflow.planner import TOPOLOGICAL
from agentflow.store import InMemoryStore

from .helpers import node, workflow


def support_workflow(**kwargs: Any):
    return workflow(
        [
            node("trigger", "trigger", name="Incoming message"),
            node(
                "cond",
                "condition",
                category=NodeCategory.CONDITIONS,
                configuration={"field": "message", "operator": "contains", "value": "help"},
            ),
            node("reply", "action", configuration={"template": "On it: {{message}}"}),
        ],
        [("trigger", "cond"), ("cond", "reply", "true")],
        **kwargs,
    )


def statuses(execution):
    return [(step.node_id, step.status) for step in execution.steps]


@pytest.mark.asyncio
async def test_message_condition_reply_flow(engine):
    execution = await engine.execute_workflow(support_workflow(), {"message": "I need help", "sender": "ana"})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.error is None
    assert statuses(execution) == [
        ("trigger", StepStatus.COMPLETED),
        ("cond", StepStatus.COMPLETED),
        ("reply", StepStatus.COMPLETED),
    ]
    assert execution.step_for("cond").output is True
    assert execution.result == {
        "message": "On it: I need help",
        "recipient": "ana",
        "channel": "default",
        "sent": True,
    }
    assert execution.metadata["plan"] == ["trigger", "cond", "reply"]
    assert execution.end_time is not None and execution.duration_ms is not None
    assert execution.variables["trigger_sender"] == "ana"
    assert execution.variables["condition_result"] is True
    assert [event["event"] for event in execution.metadata["events"]] == [
        "message_received",
        "condition_evaluated",
        "message_sent",
    ]
    assert any(log.message == "Condition evaluated" for log in execution.step_for("cond").logs)


@pytest.mark.asyncio
async def test_false_branch_is_skipped(engine):
    execution = await engine.execute_workflow(support_workflow(), {"message": "just saying hi"})

    assert execution.status == ExecutionStatus.COMPLETED
    assert statuses(execution)[-1] == ("reply", StepStatus.SKIPPED)
    assert execution.result is False


@pytest.mark.asyncio
async def test_failure_stops_remaining_steps(engine):
    definition = workflow(
        [node("t", "trigger"), node("a", "fail"), node("b")],
        [("t", "a"), ("a", "b")],
    )

    execution = await engine.execute_workflow(definition, {})

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "boom"
    assert statuses(execution) == [("t", StepStatus.COMPLETED), ("a", StepStatus.FAILED)]
    assert execution.step_for("a").error == "boom"
    assert execution.step_for("b") is None
    assert any(log.level == LogLevel.ERROR and "boom" in log.message for log in execution.logs)


@pytest.mark.asyncio
async def test_continue_on_error_keeps_going(engine):
    definition = workflow(
        [
            node("t", "trigger"),
            node("a", "fail", continue_on_error=True),
            node("b", configuration={"output": {"done": True}}),
        ],
        [("t", "a"), ("a", "b")],
    )

    execution = await engine.execute_workflow(definition, {})

    assert execution.status == ExecutionStatus.COMPLETED
    assert statuses(execution) == [
        ("t", StepStatus.COMPLETED),
        ("a", StepStatus.FAILED),
        ("b", StepStatus.COMPLETED),
    ]
    assert execution.result == {"done": True}
    assert any(log.level == LogLevel.WARN and "Continuing" in log.message for log in execution.logs)


@pytest.mark.asyncio
async def test_failed_condition_takes_neither_branch(engine):
    definition = workflow(
        [
            node("t", "trigger"),
            node(
                "cond",
                "condition",
                category=NodeCategory.CONDITIONS,
                continue_on_error=True,
                configuration={"operator": "bogus"},
            ),
            node("yes"),
            node("no"),
        ],
        [("t", "cond"), ("cond", "yes", "true"), ("cond", "no", "false")],
    )

    execution = await engine.execute_workflow(definition, {"message": "hi"})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.step_for("cond").status == StepStatus.FAILED
    assert execution.step_for("yes").status == StepStatus.SKIPPED
    assert execution.step_for("no").status == StepStatus.SKIPPED


@pytest.mark.asyncio
async def test_unknown_node_type_fails_the_step(engine):
    definition = workflow([node("t", "trigger"), node("m", "mystery")], [("t", "m")])

    execution = await engine.execute_workflow(definition, {})

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "Unknown node type: mystery"
    assert execution.step_for("m").status == StepStatus.FAILED


@pytest.mark.asyncio
async def test_invalid_workflow_fails_before_running(engine, manager):
    definition = workflow([node("a"), node("b")], [("a", "b")])

    execution = await engine.execute_workflow(definition, {"message": "hi"})

    assert execution.status == ExecutionStatus.FAILED
    assert execution.steps == []
    assert execution.error.startswith("Workflow validation failed")
    assert execution.validation is not None
    assert [issue.type for issue in execution.validation.errors] == ["missing_trigger"]
    assert manager.get_scope(workflow_scope_id("wf", execution.id)) is None


@pytest.mark.asyncio
async def test_timeout_is_checked_between_steps(engine):
    definition = workflow(
        [node("t", "trigger"), node("slow", "tick", configuration={"seconds": 5}), node("after")],
        [("t", "slow"), ("slow", "after")],
    )

    execution = await engine.execute_workflow(definition, {}, ExecutionOptions(timeout=1))

    assert execution.status == ExecutionStatus.TIMEOUT
    assert execution.error == "Workflow execution timeout after 1s"
    assert execution.step_for("slow").status == StepStatus.COMPLETED
    assert execution.step_for("after") is None


@pytest.mark.asyncio
async def test_timeout_after_last_step_still_applies(engine):
    definition = workflow(
        [node("t", "trigger"), node("slow", "tick", configuration={"seconds": 5})],
        [("t", "slow")],
    )

    execution = await engine.execute_workflow(definition, {}, ExecutionOptions(timeout=1))

    assert execution.status == ExecutionStatus.TIMEOUT
    assert execution.result is None


@pytest.mark.asyncio
async def test_engine_default_timeout(registry, manager, monotonic):
    engine = WorkflowEngine(registry, manager, default_timeout=2, monotonic=monotonic)
    definition = workflow(
        [node("t", "trigger"), node("slow", "tick", configuration={"seconds": 3}), node("after")],
        [("t", "slow"), ("slow", "after")],
    )

    execution = await engine.execute_workflow(definition, {})

    assert execution.status == ExecutionStatus.TIMEOUT
    assert execution.step_for("after") is None


@pytest.mark.asyncio
async def test_cancellation_waits_for_running_step(engine, registry):
    started = asyncio.Event()
    release = asyncio.Event()

    class GateNode(BaseNode):
        async def execute(self, input_data, context):
            started.set()
            await release.wait()
            return {"released": True}

    registry.register(NodeSpec(type_name="gate", description="blocks until released", node_class=GateNode))
    definition = workflow(
        [node("t", "trigger"), node("gate", "gate"), node("after")],
        [("t", "gate"), ("gate", "after")],
    )

    task = asyncio.create_task(engine.execute_workflow(definition, {}))
    await started.wait()
    [active] = engine.active_executions()
    assert engine.get_execution_status(active.id) is active
    assert active.status == ExecutionStatus.RUNNING
    assert engine.cancel_execution(active.id)
    release.set()
    execution = await task

    assert execution.status == ExecutionStatus.CANCELLED
    assert execution.error == "Workflow execution cancelled"
    assert execution.step_for("gate").status == StepStatus.COMPLETED
    assert execution.step_for("after") is None
    assert not engine.cancel_execution(execution.id)
    assert engine.active_executions() == []


@pytest.mark.asyncio
async def test_cancel_unknown_execution(engine):
    assert not engine.cancel_execution("nope")


@pytest.mark.asyncio
async def test_node_input_merges_outputs_variables_and_configuration(engine):
    definition = workflow(
        [
            node("t", "trigger"),
            node("cond", "condition", category=NodeCategory.CONDITIONS, configuration={"value": "hello"}),
            node("merged", configuration={"tag": "x"}),
        ],
        [("t", "cond"), ("cond", "merged"), ("t", "merged")],
    )

    execution = await engine.execute_workflow(
        definition, {"message": "hello"}, ExecutionOptions(variables={"locale": "en", "message": "ignored"})
    )

    merged_input = execution.step_for("merged").output
    assert merged_input["sender"] == "unknown"
    assert merged_input["cond"] is True
    assert merged_input["locale"] == "en"
    assert merged_input["message"] == "hello"
    assert merged_input["configuration"] == {"tag": "x"}


@pytest.mark.asyncio
async def test_readonly_declared_variable_wins_over_input(engine):
    definition = workflow(
        [node("t", "trigger")],
        [],
        variables=[WorkflowVariable(name="plan", default_value="gold", readonly=True)],
    )

    execution = await engine.execute_workflow(definition, {"plan": "free"})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.variables["plan"] == "gold"
    assert any("plan ignored" in log.message for log in execution.logs)


@pytest.mark.asyncio
async def test_run_scope_is_released_after_finalize(engine, manager, registry, monotonic):
    execution = await engine.execute_workflow(support_workflow(), {"message": "help"})
    assert manager.get_scope(workflow_scope_id("wf", execution.id)) is None

    keeping = WorkflowEngine(registry, manager, release_run_scopes=False, monotonic=monotonic)
    kept = await keeping.execute_workflow(support_workflow(), {"message": "help"})
    scope = manager.get_scope(workflow_scope_id("wf", kept.id))
    assert scope is not None
    assert manager.get_variable(scope.id, "condition_result") is True


@pytest.mark.asyncio
async def test_conversation_variables_survive_across_runs(engine, manager):
    definition = workflow(
        [
            node("t", "trigger"),
            node("count", "variable", configuration={"scope": "conversation", "increment": {"turns": 1}}),
        ],
        [("t", "count")],
    )
    options = ExecutionOptions(context={"conversation_id": "c1"})

    results = await asyncio.gather(*(engine.execute_workflow(definition, {}, options) for _ in range(5)))

    assert all(execution.status == ExecutionStatus.COMPLETED for execution in results)
    assert all(execution.conversation_id == "c1" for execution in results)
    assert manager.get_variable("conversation_c1", "turns") == 5


@pytest.mark.asyncio
async def test_breakpoints_are_logged_in_debug_mode(engine):
    execution = await engine.execute_workflow(
        support_workflow(), {"message": "help"}, ExecutionOptions(debug=True, breakpoints=["cond"])
    )

    [hit] = [log for log in execution.logs if log.level == LogLevel.DEBUG]
    assert hit.node_id == "cond"


@pytest.mark.asyncio
async def test_topological_strategy_runs_join_last(engine):
    definition = workflow(
        [node("a", "trigger"), node("b"), node("c"), node("d")],
        [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
    )

    default = await engine.execute_workflow(definition, {})
    topo = await engine.execute_workflow(definition, {}, ExecutionOptions(plan_strategy=TOPOLOGICAL))

    assert [step.node_id for step in default.steps] == ["a", "b", "d", "c"]
    assert [step.node_id for step in topo.steps] == ["a", "b", "c", "d"]


@pytest.mark.asyncio
async def test_executions_are_persisted_and_queryable(engine, store):
    first = await engine.execute_workflow(support_workflow(), {"message": "help"})
    second = await engine.execute_workflow(support_workflow(), {"message": "hi"})

    stored = engine.get_execution_status(first.id)
    assert stored is not None and stored is not first
    assert stored.status == ExecutionStatus.COMPLETED

    history = engine.get_execution_history("wf")
    assert {execution.id for execution in history} == {first.id, second.id}
    assert len(engine.get_execution_history("wf", limit=1)) == 1
    assert engine.get_execution_history("other") == []


@pytest.mark.asyncio
async def test_persistence_failure_does_not_change_outcome(registry, manager, monotonic):
    class BrokenStore(InMemoryStore):
        def save_execution(self, execution):
            raise PersistenceError("disk full")

        def query_executions(self, *args, **kwargs):
            raise PersistenceError("disk full")

    engine = WorkflowEngine(registry, manager, BrokenStore(), monotonic=monotonic)

    execution = await engine.execute_workflow(support_workflow(), {"message": "help"})

    assert execution.status == ExecutionStatus.COMPLETED
    assert engine.get_execution_history("wf") == []


@pytest.mark.asyncio
async def test_run_workflow_by_id(engine, store):
    store.create_workflow(support_workflow(id="support"))

    execution = await engine.run_workflow("support", {"message": "help"}, {"channel": "web"})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.workflow_id == "support"
    assert execution.result["channel"] == "web"
    with pytest.raises(WorkflowNotFoundError):
        await engine.run_workflow("missing")


@pytest.mark.asyncio
async def test_encrypted_variables_are_not_recorded_in_plaintext(registry, monotonic):
    class StoreKeyNode(BaseNode):
        async def execute(self, input_data, context):
            context.set_variable("api_key", "sk-live-123", encrypted=True)
            return {"stored": True}

    class UseKeyNode(BaseNode):
        async def execute(self, input_data, context):
            return {"seen": input_data.get("api_key") == "sk-live-123"}

    registry.register(NodeSpec(type_name="store_key", description="stores a secret", node_class=StoreKeyNode))
    registry.register(NodeSpec(type_name="use_key", description="reads a secret", node_class=UseKeyNode))
    store = InMemoryStore()
    engine = WorkflowEngine(registry, ExecutionContextManager(FernetCodec("k")), store, monotonic=monotonic)
    definition = workflow(
        [node("t", "trigger"), node("set", "store_key"), node("use", "use_key")],
        [("t", "set"), ("set", "use")],
    )

    execution = await engine.execute_workflow(definition, {})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.step_for("use").output == {"seen": True}
    assert execution.variables["api_key"] != "sk-live-123"
    saved = store.get_execution(execution.id)
    assert "sk-live-123" not in saved.model_dump_json()


@pytest.mark.asyncio
async def test_scope_release_failure_still_finishes_the_run(registry, monotonic):
    class StuckManager(ExecutionContextManager):
        def destroy_scope(self, scope_id):
            raise RuntimeError("scope store offline")

    store = InMemoryStore()
    engine = WorkflowEngine(registry, StuckManager(), store, monotonic=monotonic)

    execution = await engine.execute_workflow(support_workflow(), {"message": "help"})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.variables["condition_result"] is True
    assert engine.active_executions() == []
    assert store.get_execution(execution.id).status == ExecutionStatus.COMPLETED
