import pytest

from agentflow.models import LogLevel, Node, NodeCategory
from agentflow.nodes import NodeExecutionContext, NodeRegistry, NodeSpec, agent
from agentflow.nodes.builtin import (
    ConditionNode,
    HumanHandoffNode,
    IntegrationNode,
    LoopNode,
    MessageTriggerNode,
    SendMessageNode,
    VariableNode,
    WaitNode,
    evaluate_condition,
    render_template,
)

from .helpers import EchoNode


@pytest.fixture
def node_context(manager):
    scope = manager.get_workflow_scope("wf", "exec-1")
    logs = []
    context = NodeExecutionContext(
        manager=manager,
        workflow_id="wf",
        execution_id="exec-1",
        scope_id=scope.id,
        node_id="n1",
        metadata={"channel": "sms"},
        log_sink=logs.append,
    )
    context.captured_logs = logs
    return context


def make(node_class, node_type="action", **configuration):
    return node_class(Node(id="n1", type=node_type, configuration=configuration))


@pytest.mark.parametrize(
    "value, operator, compare, expected",
    [
        ("hello", "equals", "hello", True),
        ("hello", "not_equals", "hello", False),
        ("need help now", "contains", "help", True),
        ("need help now", "not_contains", "help", False),
        ("hello world", "starts_with", "hello", True),
        ("hello world", "ends_with", "world", True),
        ("10", "greater_than", 9, True),
        (3, "less_than", "2.5", False),
        (5, "greater_equal", 5, True),
        (5, "less_equal", 4, False),
        ("   ", "is_empty", None, True),
        (None, "is_empty", None, True),
        ("x", "is_not_empty", None, True),
        ("order #1234", "regex_match", r"#\d+", True),
        ("red", "in_list", ["red", "green"], True),
        ("blue", "not_in_list", ["red", "green"], True),
        (42, "equals", "42", True),
    ],
)
def test_evaluate_condition_operators(value, operator, compare, expected):
    assert evaluate_condition(value, operator, compare) is expected


def test_evaluate_condition_case_insensitive():
    assert evaluate_condition("HELP", "contains", "help", case_sensitive=False)
    assert not evaluate_condition("HELP", "contains", "help")
    assert evaluate_condition("Red", "in_list", ["red"], case_sensitive=False)


@pytest.mark.parametrize(
    "operator, compare, message",
    [
        ("between", 1, "Unknown operator"),
        ("in_list", "red", "must be a list"),
        ("regex_match", "(", "Invalid regex"),
    ],
)
def test_evaluate_condition_rejects_bad_input(operator, compare, message):
    with pytest.raises(ValueError, match=message):
        evaluate_condition("red", operator, compare)


def test_render_template_resolves_paths_and_json():
    payload = {"user": {"name": "Ana", "tags": ["vip"]}, "count": 2}

    assert render_template("Hi {{ user.name }} ({{user.tags.0}})", payload) == "Hi Ana (vip)"
    assert render_template("missing: [{{nope}}]", payload) == "missing: []"
    assert render_template("{{json}}", {"a": 1}) == '{"a": 1}'


@pytest.mark.asyncio
async def test_trigger_normalises_message(node_context):
    result = await make(MessageTriggerNode, "trigger").execute({"text": "hi", "from": "bob"}, node_context)

    assert result["message"] == "hi"
    assert result["sender"] == "bob"
    assert result["channel"] == "sms"
    assert node_context.get_variable("trigger_sender") == "bob"
    assert node_context.events[0]["event"] == "message_received"


@pytest.mark.asyncio
async def test_trigger_channel_filter(node_context):
    trigger = make(MessageTriggerNode, "trigger", channels=["web"])

    with pytest.raises(ValueError, match="not accepted"):
        await trigger.execute({"message": "hi"}, node_context)


@pytest.mark.asyncio
async def test_condition_reads_nested_field(node_context):
    condition = make(ConditionNode, "condition", field="order.total", operator="greater_than", value=100)

    assert await condition.execute({"order": {"total": 250}}, node_context) is True
    assert node_context.get_variable("condition_result") is True
    assert node_context.captured_logs[0].message == "Condition evaluated"


@pytest.mark.asyncio
async def test_send_message_requires_content(node_context):
    with pytest.raises(ValueError, match="Message content is required"):
        await make(SendMessageNode).execute({}, node_context)


@pytest.mark.asyncio
async def test_send_message_prefers_ai_response(node_context):
    result = await make(SendMessageNode, channel="email").execute(
        {"ai_response": "Generated", "message": "original", "recipient": "ana@example.com"},
        node_context,
    )

    assert result == {"message": "Generated", "recipient": "ana@example.com", "channel": "email", "sent": True}
    assert node_context.get_variable("last_sent_message") == "Generated"


@pytest.mark.asyncio
async def test_variable_node_sets_and_increments(node_context):
    node = make(VariableNode, "variable", set={"greeting": "hello {{name}}"}, increment={"visits": 2})

    first = await node.execute({"name": "ana"}, node_context)
    second = await node.execute({"name": "ana"}, node_context)

    assert first == {"greeting": "hello ana", "visits": 2}
    assert second["visits"] == 4
    assert node_context.variables["greeting"] == "hello ana"


@pytest.mark.asyncio
async def test_variable_node_refuses_readonly(node_context):
    node_context.manager.set_variable(node_context.scope_id, "plan", "gold", readonly=True)

    with pytest.raises(ValueError, match="could not be written"):
        await make(VariableNode, "variable", set={"plan": "free"}).execute({}, node_context)
    assert node_context.get_variable("plan") == "gold"


@pytest.mark.asyncio
async def test_wait_node(node_context):
    assert await make(WaitNode, "wait", seconds=0).execute({}, node_context) == {"waited": 0}
    with pytest.raises(ValueError):
        await make(WaitNode, "wait", seconds=-1).execute({}, node_context)


@pytest.mark.asyncio
async def test_human_handoff_without_conversation_uses_run_scope(node_context):
    result = await make(HumanHandoffNode, "human_handoff", queue="billing").execute(
        {"message": "refund please"}, node_context
    )

    assert result == {"handoff": True, "queue": "billing", "reason": "refund please"}
    assert node_context.get_variable("handoff_queue") == "billing"


@pytest.mark.asyncio
async def test_integration_node(node_context):
    with pytest.raises(ValueError):
        await make(IntegrationNode, "integration").execute({}, node_context)

    request = await make(IntegrationNode, "integration", integration="crm", fields=["email"]).execute(
        {"email": "a@b.c", "other": 1}, node_context
    )
    assert request == {"integration": "crm", "operation": "send", "payload": {"email": "a@b.c"}, "status": "queued"}


@pytest.mark.asyncio
async def test_loop_node_truncates(node_context):
    loop = make(LoopNode, "loop", items_field="rows", max_iterations=2, template="{{index}}:{{item}}")

    result = await loop.execute({"rows": ["a", "b", "c"]}, node_context)

    assert result == {"items": ["0:a", "1:b"], "count": 2, "truncated": True}
    with pytest.raises(ValueError):
        await make(LoopNode, "loop").execute({"items": "nope"}, node_context)


@pytest.mark.asyncio
async def test_ai_response_requires_input_field(node_context):
    with pytest.raises(ValueError, match="expected input field 'question'"):
        await make(agent.AIResponseNode, "ai_response", input_field="question").execute({}, node_context)


@pytest.mark.asyncio
async def test_ai_response_uses_model_reply(node_context, monkeypatch):
    calls = []

    async def fake_reply(**kwargs):
        calls.append(kwargs)
        return "Happy to help!"

    monkeypatch.setattr(agent, "_generate_reply", fake_reply)
    node = make(agent.AIResponseNode, "ai_response", model="tiny", temperature=0)

    result = await node.execute(
        {"message": "hello", "history": [{"role": "assistant", "content": "hi"}, "junk"]},
        node_context,
    )

    assert result == {"ai_response": "Happy to help!", "message": "Happy to help!", "ai_model": "tiny"}
    assert calls[0]["user_prompt"] == "hello"
    assert calls[0]["history"] == [{"role": "assistant", "content": "hi"}]
    assert node_context.get_variable("ai_response") == "Happy to help!"


def test_ai_response_settings_validation():
    with pytest.raises(ValueError, match="num_ctx"):
        agent._validate_settings("m", "message", 0, 1, 0.5)


def test_node_context_log_accepts_warning_alias(node_context):
    node_context.log("warning", "careful")

    assert node_context.captured_logs[-1].level == LogLevel.WARN
    assert node_context.captured_logs[-1].node_id == "n1"


def test_registry_lookup_and_defaults():
    registry = NodeRegistry()
    registry.register(
        NodeSpec(
            type_name="echo",
            description="echo",
            node_class=EchoNode,
            category=NodeCategory.INTEGRATIONS,
            defaults={"output": "default", "keep": True},
        )
    )

    instance = registry.create_node_instance(Node(id="x", type="echo", configuration={"output": "mine"}))

    assert instance.config == {"output": "mine", "keep": True}
    assert registry.create_node_instance(Node(id="y", type="nope")) is None
    assert registry.get("echo").defaults == {"output": "default", "keep": True}
    assert registry.list_specs() == [{"type": "echo", "category": "integrations", "description": "echo"}]
    assert registry.types_by_category()["integrations"] == ["echo"]
    with pytest.raises(KeyError):
        registry.get("nope")


def test_builtin_catalog(registry):
    assert {"trigger", "condition", "action", "ai_response", "variable", "wait", "loop"} <= set(registry.list_types())
    assert "trigger" in registry.types_by_category()["triggers"]
