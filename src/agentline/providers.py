# providers.py
# Model providers. The loop depends only on the Provider protocol.
#
# OpenAICompatibleProvider speaks the chat-completions wire format through
# the openai SDK, so it covers OpenAI, OpenRouter, xAI and anything else
# that exposes the same endpoint. Point it elsewhere with base_url.

import logging
from collections.abc import Iterator
from typing import Any, Protocol, runtime_checkable

from openai import OpenAI

from agentline import config
from agentline.models import (
    FunctionDefinition,
    LLMConfig,
    LLMResponse,
    Message,
    StreamChunk,
    TokenUsage,
    ToolCallRequest,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class Provider(Protocol):
    """
    complete() is required. A provider that can also stream exposes
    stream(messages, llm_config) -> Iterator[StreamChunk]; the loop checks for it
    with hasattr.
    """

    def complete(self, messages: list[Message], llm_config: LLMConfig) -> LLMResponse: ...


def supports_streaming(provider: Any) -> bool:
    return callable(getattr(provider, "stream", None))


# ---------------------------------------------------------------------------
# Wire format translation
# ---------------------------------------------------------------------------


def to_openai_messages(messages: list[Message]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "tool":
            converted.append({"role": "tool", "content": msg.content, "tool_call_id": msg.tool_call_id or ""})
            continue

        entry: dict[str, Any] = {"role": msg.role, "content": msg.content}
        if msg.role == "assistant" and msg.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.function_name, "arguments": call.arguments_json},
                }
                for call in msg.tool_calls
            ]
        converted.append(entry)
    return converted


def to_openai_tools(tools: list[FunctionDefinition] | None) -> list[dict[str, Any]] | None:
    if not tools:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters.model_dump(),
            },
        }
        for tool in tools
    ]


def extract_tool_calls(raw_calls: Any) -> list[ToolCallRequest] | None:
    if not raw_calls:
        return None
    return [
        ToolCallRequest(
            id=call.id,
            function_name=call.function.name,
            arguments_json=call.function.arguments or "{}",
        )
        for call in raw_calls
    ]


def _usage(raw: Any) -> TokenUsage | None:
    if raw is None:
        return None
    return TokenUsage(
        prompt_tokens=raw.prompt_tokens or 0,
        completion_tokens=raw.completion_tokens or 0,
        total_tokens=raw.total_tokens or 0,
    )


def _request_kwargs(messages: list[Message], llm_config: LLMConfig) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "model": llm_config.model,
        "messages": to_openai_messages(messages),
    }
    optional = {
        "temperature": llm_config.temperature,
        "max_tokens": llm_config.max_tokens,
        "top_p": llm_config.top_p,
        "tools": to_openai_tools(llm_config.tools),
    }
    kwargs.update({key: value for key, value in optional.items() if value is not None})
    return kwargs


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Chat-completions provider backed by the openai SDK.

    Example:
        provider = OpenAICompatibleProvider(base_url="https://openrouter.ai/api/v1")
        provider.complete([Message(role="user", content="Hi")], LLMConfig(model="openai/gpt-4o-mini"))
    """

    def __init__(self, client: OpenAI | None = None, api_key: str | None = None, base_url: str | None = None) -> None:
        self._client = client or OpenAI(
            base_url=base_url or config.DEFAULT_BASE_URL,
            api_key=api_key or config.API_KEY,
        )

    def complete(self, messages: list[Message], llm_config: LLMConfig) -> LLMResponse:
        response = self._client.chat.completions.create(**_request_kwargs(messages, llm_config))
        choice = response.choices[0]
        return LLMResponse(
            content=choice.message.content or "",
            finish_reason=choice.finish_reason,
            tool_calls=extract_tool_calls(choice.message.tool_calls),
            usage=_usage(response.usage),
        )

    def stream(self, messages: list[Message], llm_config: LLMConfig) -> Iterator[StreamChunk]:
        """
        Yield content increments. Tool-call deltas are assembled by index and
        emitted whole on the chunk that carries the finish reason.
        """
        stream = self._client.chat.completions.create(
            stream=True, stream_options={"include_usage": True}, **_request_kwargs(messages, llm_config)
        )
        pending: dict[int, dict[str, str]] = {}

        for chunk in stream:
            usage = _usage(getattr(chunk, "usage", None))
            if not chunk.choices:
                if usage is not None:
                    yield StreamChunk(usage=usage)
                continue

            choice = chunk.choices[0]
            delta = choice.delta
            for call in getattr(delta, "tool_calls", None) or []:
                slot = pending.setdefault(call.index, {"id": "", "name": "", "arguments": ""})
                if call.id:
                    slot["id"] = call.id
                if call.function is not None:
                    slot["name"] += call.function.name or ""
                    slot["arguments"] += call.function.arguments or ""

            content = (delta.content or "") if delta is not None else ""
            if not content and not choice.finish_reason:
                continue

            tool_calls = None
            if choice.finish_reason and pending:
                tool_calls = [
                    ToolCallRequest(id=slot["id"], function_name=slot["name"], arguments_json=slot["arguments"] or "{}")
                    for _, slot in sorted(pending.items())
                ]
                pending = {}

            yield StreamChunk(
                content=content,
                finish_reason=choice.finish_reason,
                tool_calls=tool_calls,
                usage=usage,
            )


def get_provider(api_key: str | None = None, base_url: str | None = None) -> OpenAICompatibleProvider:
    """Build the default provider from the environment."""
    logger.debug("Creating provider for %s", base_url or config.DEFAULT_BASE_URL)
    return OpenAICompatibleProvider(api_key=api_key, base_url=base_url)
