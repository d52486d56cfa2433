from __future__ import annotations

import asyncio
import json
import re
from typing import Any

from ..config import app_config
from ..models import NodeCategory, NodeType, utc_now
from .agent import AIResponseNode
from .base import BaseNode, NodeExecutionContext, NodeRegistry, NodeSpec

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def lookup_path(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def render_template(template: str, payload: dict[str, Any]) -> str:
    text = template.replace("{{json}}", json.dumps(payload, ensure_ascii=True, default=str))

    def _sub(match: re.Match[str]) -> str:
        value = lookup_path(payload, match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, text)


def _as_list(value: Any, operator: str) -> list[Any]:
    if not isinstance(value, list):
        raise ValueError(f'Compare value must be a list for "{operator}" operator')
    return value


def evaluate_condition(value: Any, operator: str, compare: Any, case_sensitive: bool = True) -> bool:
    text = str(value) if value is not None else ""
    other = str(compare) if compare is not None else ""
    if not case_sensitive:
        text, other = text.lower(), other.lower()

    if operator == "equals":
        return text == other
    if operator == "not_equals":
        return text != other
    if operator == "contains":
        return other in text
    if operator == "not_contains":
        return other not in text
    if operator == "starts_with":
        return text.startswith(other)
    if operator == "ends_with":
        return text.endswith(other)
    if operator == "greater_than":
        return float(value) > float(compare)
    if operator == "less_than":
        return float(value) < float(compare)
    if operator == "greater_equal":
        return float(value) >= float(compare)
    if operator == "less_equal":
        return float(value) <= float(compare)
    if operator == "is_empty":
        return not text.strip()
    if operator == "is_not_empty":
        return bool(text.strip())
    if operator == "regex_match":
        try:
            pattern = re.compile(str(compare), 0 if case_sensitive else re.IGNORECASE)
        except re.error as exc:
            raise ValueError(f"Invalid regex pattern: {compare}") from exc
        return pattern.search(str(value) if value is not None else "") is not None
    if operator in ("in_list", "not_in_list"):
        items = _as_list(compare, operator)
        normalized = [str(item) if case_sensitive else str(item).lower() for item in items]
        found = text in normalized
        return found if operator == "in_list" else not found
    raise ValueError(f"Unknown operator: {operator}")


class MessageTriggerNode(BaseNode):
    async def execute(self, input_data: dict[str, Any], context: NodeExecutionContext) -> dict[str, Any]:
        message_data = {
            "message": input_data.get("message") or input_data.get("text") or "",
            "sender": input_data.get("sender") or input_data.get("from") or "unknown",
            "channel": input_data.get("channel") or context.metadata.get("channel") or "default",
            "timestamp": input_data.get("timestamp") or utc_now().isoformat(),
            "metadata": input_data.get("metadata") or {},
        }
        channels = self.config.get("channels") or []
        if channels and message_data["channel"] not in channels:
            raise ValueError(f"Channel '{message_data['channel']}' is not accepted by this trigger")

        context.set_variable("trigger_message", message_data["message"])
        context.set_variable("trigger_sender", message_data["sender"])
        context.set_variable("trigger_channel", message_data["channel"])
        context.emit("message_received", message_data)
        return message_data


class WebhookTriggerNode(BaseNode):
    async def execute(self, input_data: dict[str, Any], context: NodeExecutionContext) -> dict[str, Any]:
        body = input_data.get("body", input_data.get("payload", {}))
        if not isinstance(body, dict):
            body = {"value": body}
        result = {
            "body": body,
            "headers": input_data.get("headers") or {},
            "method": str(input_data.get("method", "POST")).upper(),
            "received_at": utc_now().isoformat(),
        }
        context.set_variable("webhook_body", body)
        context.emit("webhook_received", result)
        return result


class ConditionNode(BaseNode):
    async def execute(self, input_data: dict[str, Any], context: NodeExecutionContext) -> bool:
        field = self.config.get("field", "message")
        operator = self.config.get("operator", "equals")
        compare = self.config.get("value", self.config.get("compare_value"))
        case_sensitive = self.config.get("case_sensitive", True) is not False

        value = lookup_path(input_data, field)
        result = evaluate_condition(value, operator, compare, case_sensitive)

        context.log("info", "Condition evaluated", {"field": field, "operator": operator, "result": result})
        context.set_variable("condition_result", result)
        context.emit("condition_evaluated", {"value": value, "operator": operator, "result": result})
        return result


class SendMessageNode(BaseNode):
    async def execute(self, input_data: dict[str, Any], context: NodeExecutionContext) -> dict[str, Any]:
        template = self.config.get("template")
        if template is not None:
            if not isinstance(template, str):
                raise ValueError("action.template must be a string")
            message = render_template(template, input_data)
        else:
            message = str(input_data.get("ai_response") or input_data.get("message") or "")
        if not message:
            raise ValueError("Message content is required")

        recipient = input_data.get("recipient") or context.get_variable("trigger_sender") or "unknown"
        channel = self.config.get("channel") or context.get_variable("trigger_channel") or "default"

        context.set_variable("last_sent_message", message)
        context.set_variable("last_recipient", recipient)
        context.emit("message_sent", {"message": message, "recipient": recipient, "channel": channel})
        return {"message": message, "recipient": recipient, "channel": channel, "sent": True}


class VariableNode(BaseNode):
    async def execute(self, input_data: dict[str, Any], context: NodeExecutionContext) -> dict[str, Any]:
        assignments = self.config.get("set", {})
        increments = self.config.get("increment", {})
        if not isinstance(assignments, dict) or not isinstance(increments, dict):
            raise ValueError("variable.set and variable.increment must be dictionaries")

        target = context.scope_id
        if self.config.get("scope") == "conversation" and context.conversation_scope_id:
            target = context.conversation_scope_id

        written: dict[str, Any] = {}
        for name, value in assignments.items():
            if isinstance(value, str):
                value = render_template(value, input_data)
            if not context.manager.set_variable(
                target, name, value, node_id=context.node_id, execution_id=context.execution_id
            ):
                raise ValueError(f"Variable '{name}' could not be written")
            written[name] = value

        for name, amount in increments.items():
            written[name] = context.manager.update_variable(
                target,
                name,
                lambda current, step=amount: (current or 0) + step,
                default=0,
                node_id=context.node_id,
                execution_id=context.execution_id,
            )
        return written


class WaitNode(BaseNode):
    async def execute(self, input_data: dict[str, Any], context: NodeExecutionContext) -> dict[str, Any]:
        seconds = float(self.config.get("seconds", 0))
        if seconds < 0:
            raise ValueError("wait.seconds must not be negative")
        cap = float(app_config.engine_settings()["max_wait_seconds"])
        waited = min(seconds, cap)
        if waited:
            await asyncio.sleep(waited)
        return {"waited": waited}


class HumanHandoffNode(BaseNode):
    async def execute(self, input_data: dict[str, Any], context: NodeExecutionContext) -> dict[str, Any]:
        queue = self.config.get("queue", "default")
        reason = self.config.get("reason") or input_data.get("message") or "handoff requested"
        context.set_conversation_variable("handoff_requested", True)
        context.set_conversation_variable("handoff_queue", queue)
        context.emit("human_handoff", {"queue": queue, "reason": reason})
        return {"handoff": True, "queue": queue, "reason": reason}


class IntegrationNode(BaseNode):
    """Records a request for an external adapter; delivery happens outside the engine."""

    async def execute(self, input_data: dict[str, Any], context: NodeExecutionContext) -> dict[str, Any]:
        integration = self.config.get("integration")
        if not isinstance(integration, str) or not integration:
            raise ValueError("integration.integration must be a non-empty string")
        payload_fields = self.config.get("fields")
        if isinstance(payload_fields, list):
            payload = {name: input_data.get(name) for name in payload_fields}
        else:
            payload = {k: v for k, v in input_data.items() if k != "configuration"}
        request = {
            "integration": integration,
            "operation": self.config.get("operation", "send"),
            "payload": payload,
            "status": "queued",
        }
        context.emit("integration_requested", request)
        return request


class LoopNode(BaseNode):
    async def execute(self, input_data: dict[str, Any], context: NodeExecutionContext) -> dict[str, Any]:
        items = self.config.get("items")
        if items is None:
            items = lookup_path(input_data, self.config.get("items_field", "items"))
        if not isinstance(items, list):
            raise ValueError("loop requires a list of items")
        limit = int(self.config.get("max_iterations", 100))
        template = self.config.get("template")

        results: list[Any] = []
        for index, item in enumerate(items[:limit]):
            if isinstance(template, str):
                results.append(render_template(template, {**input_data, "item": item, "index": index}))
            else:
                results.append({"index": index, "item": item})
        context.set_variable("loop_count", len(results))
        return {"items": results, "count": len(results), "truncated": len(items) > limit}


def register_builtin_nodes(registry: NodeRegistry) -> None:
    registry.register(
        NodeSpec(
            type_name=NodeType.TRIGGER.value,
            description="Starts a workflow from an incoming chat message.",
            node_class=MessageTriggerNode,
            category=NodeCategory.TRIGGERS,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.WEBHOOK.value,
            description="Starts a workflow from an incoming webhook request.",
            node_class=WebhookTriggerNode,
            category=NodeCategory.TRIGGERS,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.CONDITION.value,
            description="Evaluates a field of the input against a value.",
            node_class=ConditionNode,
            category=NodeCategory.CONDITIONS,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.ACTION.value,
            description="Builds a reply message from a template and the input.",
            node_class=SendMessageNode,
            category=NodeCategory.RESPONSES,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.AI_RESPONSE.value,
            description="Generates a reply with a local Ollama-backed chat model.",
            node_class=AIResponseNode,
            category=NodeCategory.RESPONSES,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.VARIABLE.value,
            description="Sets or increments context variables.",
            node_class=VariableNode,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.WAIT.value,
            description="Pauses the run for a bounded number of seconds.",
            node_class=WaitNode,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.HUMAN_HANDOFF.value,
            description="Flags the conversation for a human agent.",
            node_class=HumanHandoffNode,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.INTEGRATION.value,
            description="Queues a request for an external integration adapter.",
            node_class=IntegrationNode,
            category=NodeCategory.INTEGRATIONS,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.LOOP.value,
            description="Iterates over a list of items.",
            node_class=LoopNode,
        )
    )
