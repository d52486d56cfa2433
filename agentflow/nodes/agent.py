from __future__ import annotations

from typing import Any

from ..config import app_config
from .base import BaseNode, NodeExecutionContext


def _extract_text(message: Any) -> str:
    content = getattr(message, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
            elif isinstance(item, str):
                parts.append(item)
        if parts:
            return "\n".join(parts)
    return str(message)


def _validate_settings(
    model: Any,
    input_field: Any,
    num_ctx: Any,
    num_predict: Any,
    temperature: Any,
) -> tuple[str, str, int, int, float]:
    if not isinstance(model, str) or not model:
        raise ValueError("ai_response.model must be a non-empty string")
    if not isinstance(input_field, str) or not input_field:
        raise ValueError("ai_response.input_field must be a non-empty string")
    if not isinstance(num_ctx, int) or num_ctx <= 0:
        raise ValueError("ai_response.num_ctx must be a positive integer")
    if not isinstance(num_predict, int) or num_predict <= 0:
        raise ValueError("ai_response.num_predict must be a positive integer")
    if not isinstance(temperature, (int, float)):
        raise ValueError("ai_response.temperature must be a number")
    return model, input_field, num_ctx, num_predict, float(temperature)


async def _generate_reply(
    *,
    model: str,
    system_prompt: str,
    user_prompt: str,
    history: list[dict[str, str]],
    num_ctx: int,
    num_predict: int,
    temperature: float,
) -> str:
    try:
        from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
        from langchain_ollama import ChatOllama
    except ImportError as exc:
        raise RuntimeError(
            "Missing AI dependencies. Install with: pip install 'agentflow[ai]'"
        ) from exc

    messages: list[Any] = [SystemMessage(content=system_prompt)]
    for turn in history:
        if turn.get("role") == "assistant":
            messages.append(AIMessage(content=turn.get("content", "")))
        else:
            messages.append(HumanMessage(content=turn.get("content", "")))
    messages.append(HumanMessage(content=user_prompt))

    llm = ChatOllama(
        model=model,
        num_ctx=num_ctx,
        num_predict=num_predict,
        temperature=temperature,
    )
    response = await llm.ainvoke(messages)
    return _extract_text(response)


class AIResponseNode(BaseNode):
    """Generate a reply with a local Ollama chat model through LangChain."""

    async def execute(self, input_data: dict[str, Any], context: NodeExecutionContext) -> dict[str, Any]:
        defaults = app_config.ai_defaults()
        params = self.config
        model, input_field, num_ctx, num_predict, temperature = _validate_settings(
            params.get("model", defaults["model"]),
            params.get("input_field", defaults["input_field"]),
            params.get("num_ctx", defaults["num_ctx"]),
            params.get("num_predict", defaults["num_predict"]),
            params.get("temperature", defaults["temperature"]),
        )
        system_prompt = params.get("system_prompt", defaults["system_prompt"])
        if not isinstance(system_prompt, str):
            raise ValueError("ai_response.system_prompt must be a string")

        prompt_value = input_data.get(input_field)
        if prompt_value is None:
            raise ValueError(f"ai_response expected input field '{input_field}' in payload")

        history = input_data.get("history") or []
        if not isinstance(history, list):
            history = []

        text = await _generate_reply(
            model=model,
            system_prompt=system_prompt,
            user_prompt=str(prompt_value),
            history=[turn for turn in history if isinstance(turn, dict)],
            num_ctx=num_ctx,
            num_predict=num_predict,
            temperature=temperature,
        )

        context.set_variable("ai_response", text)
        context.emit("ai_response_generated", {"model": model, "length": len(text)})
        return {"ai_response": text, "message": text, "ai_model": model}
