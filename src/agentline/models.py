# models.py
# Data contracts shared by the agent loop, the providers and the hooks.
# No business logic lives here, only schema and validation.
#
# Anything that crosses the step substrate is dumped in JSON mode and
# re-validated on the way back, so a durable substrate can store plain JSON.

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant", "tool"]


class ToolCallRequest(BaseModel):
    """A single function invocation requested by the model."""

    id: str = Field(..., description="Unique within one model response.")
    function_name: str = Field(..., description="Name of the callable tool to run.")
    arguments_json: str = Field(default="{}", description="Raw JSON arguments as emitted by the model.")

    def arguments(self) -> dict[str, Any]:
        """Decode the arguments. Raises ValueError on malformed or non-object JSON."""
        raw = self.arguments_json.strip() or "{}"
        decoded = json.loads(raw)
        if not isinstance(decoded, dict):
            raise ValueError(f"Tool arguments must be a JSON object, got {type(decoded).__name__}.")
        return decoded


class Message(BaseModel):
    """One entry of the canonical conversation owned by a loop run."""

    role: Role
    content: str = ""
    tool_calls: list[ToolCallRequest] | None = None
    tool_call_id: str | None = None


class FunctionParameters(BaseModel):
    type: Literal["object"] = "object"
    properties: dict[str, dict[str, Any]] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


class FunctionDefinition(BaseModel):
    """Provider-facing schema of one callable tool."""

    name: str
    description: str
    parameters: FunctionParameters = Field(default_factory=FunctionParameters)


class LLMConfig(BaseModel):
    """Model selection and sampling settings for one agent."""

    model: str
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    tools: list[FunctionDefinition] | None = Field(
        default=None, description="Invocable functions. Filled in by the loop from callable tools."
    )


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LLMResponse(BaseModel):
    """A complete (non-incremental) model response."""

    content: str = ""
    finish_reason: str | None = None
    tool_calls: list[ToolCallRequest] | None = None
    usage: TokenUsage | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class StreamChunk(BaseModel):
    """
    One increment of a streamed response.

    Tool calls, when a provider supports them while streaming, arrive fully
    assembled on the chunk that carries the finish reason.
    """

    content: str = ""
    finish_reason: str | None = None
    tool_calls: list[ToolCallRequest] | None = None
    usage: TokenUsage | None = None


class AgentMetadata(BaseModel):
    """Presentation hints forwarded to observers."""

    workflow_step: str | None = None
    display_name: str | None = None
    icon: str | None = None
    description: str | None = None


class AgentContext(BaseModel):
    """Snapshot handed to every agent lifecycle hook."""

    name: str
    run_id: str
    iteration: int = 0
    session_id: str | None = None
    metadata: AgentMetadata | None = None


class TokenTotals(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: int = 0
    completion: int = 0
    total: int = 0


class AgentMetrics(BaseModel):
    """Immutable metrics snapshot produced when a run finishes."""

    model_config = ConfigDict(frozen=True)

    total_duration_ms: int = 0
    llm_calls: int = 0
    tool_calls: int = 0
    tool_durations: dict[str, int] = Field(default_factory=dict)
    tokens: TokenTotals | None = None


class Event(BaseModel):
    """An external event as seen by the step substrate."""

    name: str
    data: dict[str, Any] = Field(default_factory=dict)
