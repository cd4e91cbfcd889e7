# agent.py
# Agent execution loop.
#
# The loop owns the conversation for one run. Models are passive responders:
# this module decides when to call them, runs the tools they ask for, feeds
# every tool outcome back as a tool message and stops at the first response
# without tool calls.
#
# Control flow:
#   validate tools → context tools → hydrate prompt
#   → model call ↔ sequential tool calls (bounded by max_iterations)
#   → transform → result schema
#
# Every model call and tool call is a named step, so a replay of the same
# run id picks up where the journal ends instead of calling anything twice.
# All terminal output lives in display.py; this module only logs.

import json
import logging
import re
import time
import uuid
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import BaseModel, Field
from pydantic_core import to_jsonable_python

from agentline.config import DEFAULT_MAX_ITERATIONS, DEFAULT_STREAM_INTERVAL_MS
from agentline.metrics import MetricsCollector, format_metrics_summary
from agentline.models import (
    AgentContext,
    AgentMetadata,
    AgentMetrics,
    LLMConfig,
    LLMResponse,
    Message,
    ToolCallRequest,
)
from agentline.prompt import Prompt, hydrate_prompt
from agentline.providers import Provider, supports_streaming
from agentline.schemas import SchemaValidationError, schema_name, validate_against
from agentline.steps import StepRunner
from agentline.streaming import (
    Broadcaster,
    final_response_message,
    llm_response_message,
    tool_error_message,
    tool_progress_message,
    tool_result_message,
    tool_start_message,
)
from agentline.tools import (
    CallableTool,
    ToolDescriptor,
    ToolExecutionContext,
    ToolNotFoundError,
    build_function_schemas,
    classify_tools,
    find_tool,
    invoke_tool,
    run_context_tools,
    validate_tools,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ResultValidationError(ValueError):
    """Raised when the transformed model output fails the result schema. Fatal to the run."""

    def __init__(self, agent_name: str, schema: Any, issues: list[str]) -> None:
        self.agent_name = agent_name
        self.issues = issues
        super().__init__(
            f"Agent '{agent_name}' produced a result that does not match {schema_name(schema)}:\n"
            + "\n".join(issues)
        )


class MaxIterationsExceeded(RuntimeError):
    """Raised when the model keeps requesting tools past the iteration bound. Always fatal."""

    def __init__(self, agent_name: str, max_iterations: int) -> None:
        self.agent_name = agent_name
        self.max_iterations = max_iterations
        super().__init__(f"Agent '{agent_name}' reached max iterations ({max_iterations}) in the tool-calling loop.")


class JSONResponseError(ValueError):
    """Raised by parse_json_response when the text holds no parseable JSON."""


# ---------------------------------------------------------------------------
# Configuration objects
# ---------------------------------------------------------------------------


class StreamingConfig(BaseModel):
    """Enables incremental delivery when the provider can stream."""

    interval_ms: int = Field(
        default=DEFAULT_STREAM_INTERVAL_MS,
        description="Minimum gap between partial broadcasts.",
    )
    on_chunk: Callable[[str, str], None] | None = Field(
        default=None, description="Called as on_chunk(chunk, full_content_so_far)."
    )
    on_complete: Callable[[str], None] | None = None


class AgentHooks:
    """
    Lifecycle observer for run_agent. Override what you need.

    Hooks observe only: a hook that raises is logged and ignored.
    """

    def on_start(self, ctx: AgentContext) -> None:
        pass

    def on_llm_start(self, ctx: AgentContext, messages: list[Message]) -> None:
        pass

    def on_llm_end(self, ctx: AgentContext, response: LLMResponse) -> None:
        pass

    def on_tool_start(self, ctx: AgentContext, tool_name: str, args: dict[str, Any]) -> None:
        pass

    def on_tool_end(self, ctx: AgentContext, tool_name: str, result: Any, duration_ms: int) -> None:
        pass

    def on_tool_error(self, ctx: AgentContext, tool_name: str, error: str) -> None:
        pass

    def on_complete(self, ctx: AgentContext, result: Any, metrics: AgentMetrics) -> None:
        pass

    def on_error(self, ctx: AgentContext, error: Exception) -> None:
        pass


class AgentRunState(BaseModel):
    """Conversation and counters of one run. Never shared between runs."""

    name: str
    run_id: str
    messages: list[Message] = Field(default_factory=list)
    iteration: int = 0

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def advance(self) -> int:
        self.iteration += 1
        return self.iteration


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _notify(hooks: AgentHooks | None, event: str, *args: Any) -> None:
    if hooks is None:
        return
    try:
        getattr(hooks, event)(*args)
    except Exception:
        logger.warning("Hook %s raised; ignoring.", event, exc_info=True)


def _compact_json(value: Any) -> str:
    return json.dumps(to_jsonable_python(value, fallback=str), separators=(",", ":"))


def parse_json_response(text: str) -> Any:
    """
    Parse model output that should be JSON.

    Accepts bare JSON, JSON wrapped in markdown fences, or JSON embedded in
    prose (the first {...} or [...] block). Raises JSONResponseError.
    """
    candidate = text.strip()
    fenced = re.search(r"```(?:json)?\s*(.*?)\s*```", candidate, re.DOTALL)
    if fenced:
        candidate = fenced.group(1).strip()

    try:
        return json.loads(candidate, strict=False)
    except json.JSONDecodeError:
        pass

    embedded = re.search(r"(\{.*\}|\[.*\])", candidate, re.DOTALL)
    if embedded:
        try:
            return json.loads(embedded.group(1), strict=False)
        except json.JSONDecodeError as exc:
            raise JSONResponseError(f"Response contains malformed JSON: {exc}\nPayload: {text}") from exc
    raise JSONResponseError(f"No JSON found in response:\n{text}")


# ---------------------------------------------------------------------------
# Model calls
# ---------------------------------------------------------------------------


class _ModelCall:
    """One model call, streamed or not. Runs inside its own step."""

    def __init__(
        self,
        name: str,
        provider: Provider,
        llm_config: LLMConfig,
        iteration: int,
        session_id: str | None,
        broadcaster: Broadcaster | None,
        streaming: StreamingConfig | None,
        metadata: AgentMetadata | None,
    ) -> None:
        self.name = name
        self.provider = provider
        self.llm_config = llm_config
        self.iteration = iteration
        self.session_id = session_id
        self.broadcaster = broadcaster
        self.streaming = streaming
        self.metadata = metadata

    def _publish(self, content: str, *, streaming: bool, has_tool_calls: bool | None) -> None:
        if self.broadcaster is None or self.session_id is None:
            return
        self.broadcaster.add_message(
            self.session_id,
            llm_response_message(
                self.name,
                content,
                self.iteration,
                streaming=streaming,
                has_tool_calls=has_tool_calls,
                metadata=self.metadata,
            ),
        )

    def __call__(self, messages: list[Message]) -> dict[str, Any]:
        if self.streaming is not None and supports_streaming(self.provider):
            try:
                response = self._stream(messages)
            except Exception:
                logger.warning(
                    "Streaming failed for agent %s (iteration %d); falling back to complete().",
                    self.name,
                    self.iteration,
                    exc_info=True,
                )
            else:
                return response.model_dump(mode="json")

        response = self.provider.complete(list(messages), self.llm_config)
        self._publish(response.content, streaming=False, has_tool_calls=response.has_tool_calls)
        return response.model_dump(mode="json")

    def _stream(self, messages: list[Message]) -> LLMResponse:
        streaming = self.streaming
        full = ""
        finish_reason = None
        tool_calls: list[ToolCallRequest] | None = None
        usage = None
        last_broadcast = time.monotonic()

        for chunk in self.provider.stream(list(messages), self.llm_config):
            if chunk.usage is not None:
                usage = chunk.usage
            if chunk.tool_calls:
                tool_calls = (tool_calls or []) + list(chunk.tool_calls)
            if chunk.content:
                full += chunk.content
                if streaming.on_chunk is not None:
                    streaming.on_chunk(chunk.content, full)
                now = time.monotonic()
                if (now - last_broadcast) * 1000 >= streaming.interval_ms:
                    self._publish(full, streaming=True, has_tool_calls=None)
                    last_broadcast = now
            if chunk.finish_reason:
                finish_reason = chunk.finish_reason

        response = LLMResponse(
            content=full,
            finish_reason=finish_reason or "stop",
            tool_calls=tool_calls,
            usage=usage,
        )
        self._publish(full, streaming=False, has_tool_calls=response.has_tool_calls)
        if streaming.on_complete is not None:
            streaming.on_complete(full)
        return response


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class _ToolCall:
    """One requested tool call. Never raises: every failure becomes a tool-error message."""

    def __init__(
        self,
        name: str,
        callable_tools: list[CallableTool],
        call: ToolCallRequest,
        args: dict[str, Any] | None,
        args_error: str | None,
        iteration: int,
        session_id: str | None,
        broadcaster: Broadcaster | None,
    ) -> None:
        self.name = name
        self.callable_tools = callable_tools
        self.call = call
        self.args = args
        self.args_error = args_error
        self.iteration = iteration
        self.session_id = session_id
        self.broadcaster = broadcaster

    def _broadcast(self, message: Any) -> None:
        if self.broadcaster is not None and self.session_id is not None:
            self.broadcaster.add_message(self.session_id, message)

    def _report_progress(self, text: str) -> None:
        logger.debug("Tool %s progress: %s", self.call.function_name, text)
        self._broadcast(tool_progress_message(self.call.function_name, self.name, self.iteration, text))

    def _failed(self, error: str, started: float) -> dict[str, Any]:
        tool_name = self.call.function_name
        self._broadcast(tool_error_message(tool_name, self.name, self.iteration, error))
        message = Message(role="tool", content=_compact_json({"error": error}), tool_call_id=self.call.id)
        return {
            "ok": False,
            "error": error,
            "result": None,
            "duration_ms": int((time.monotonic() - started) * 1000),
            "message": message.model_dump(mode="json"),
        }

    def __call__(self) -> dict[str, Any]:
        tool_name = self.call.function_name
        started = time.monotonic()
        self._broadcast(tool_start_message(tool_name, self.name, self.iteration, self.args or {}))

        if self.args_error is not None:
            return self._failed(self.args_error, started)

        try:
            tool = find_tool(self.callable_tools, tool_name)
        except ToolNotFoundError as exc:
            return self._failed(str(exc), started)

        context = ToolExecutionContext(
            agent_name=self.name,
            iteration=self.iteration,
            report_progress=self._report_progress,
        )
        try:
            result = invoke_tool(tool, self.args or {}, context)
        except Exception as exc:
            logger.debug("Tool %s raised: %s", tool_name, exc, exc_info=True)
            return self._failed(str(exc) or type(exc).__name__, started)

        jsonable = to_jsonable_python(result, fallback=str)
        self._broadcast(tool_result_message(tool_name, self.name, self.iteration, jsonable))
        message = Message(role="tool", content=_compact_json(jsonable), tool_call_id=self.call.id)
        return {
            "ok": True,
            "error": None,
            "result": jsonable,
            "duration_ms": int((time.monotonic() - started) * 1000),
            "message": message.model_dump(mode="json"),
        }


def _decode_arguments(call: ToolCallRequest) -> tuple[dict[str, Any] | None, str | None]:
    try:
        return call.arguments(), None
    except ValueError as exc:
        return None, f"Invalid arguments for tool {call.function_name}: {exc}"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def run_agent(
    step: StepRunner,
    name: str,
    provider: Provider,
    prompt: Prompt,
    config: LLMConfig,
    fn: Callable[[str], Any],
    tools: Iterable[ToolDescriptor] = (),
    result_schema: Any = None,
    session_id: str | None = None,
    broadcaster: Broadcaster | None = None,
    streaming: StreamingConfig | None = None,
    hooks: AgentHooks | None = None,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    run_id: str | None = None,
    metadata: AgentMetadata | None = None,
) -> Any:
    """
    Run one agent to a terminal response and return its validated result.

    `fn` turns the final response text into the result value (see
    parse_json_response). With `result_schema` the value is validated and
    returned in parsed form; a mismatch raises ResultValidationError.

    Tool failures never fail the run: they are reported back to the model.
    The only loop failure is MaxIterationsExceeded.

    Example:
        result = run_agent(
            step, "classifier", provider,
            Prompt(messages=[PromptMessage(role="user", content="Classify: {{ text }}")],
                   variables={"text": "Who wrote Hamlet?"}),
            LLMConfig(model="openai/gpt-4o-mini"),
            fn=parse_json_response,
            result_schema=Classification,
        )
    """
    if max_iterations < 1:
        raise ValueError(f"max_iterations must be at least 1, got {max_iterations}.")

    tools = list(tools)
    validate_tools(tools)
    _, callable_tools = classify_tools(tools)

    if run_id is None:
        run_id = step.run(f"{name}:run-id:{step.occurrence(name)}", lambda: uuid.uuid4().hex)
    prefix = f"{name}:{run_id}"

    state = AgentRunState(name=name, run_id=run_id)
    metrics = MetricsCollector()
    ctx = AgentContext(name=name, run_id=run_id, session_id=session_id, metadata=metadata)

    _notify(hooks, "on_start", ctx)
    logger.debug("Agent %s starting run %s.", name, run_id)

    try:
        # ── Context tools + prompt hydration ─────────────────────────
        variables = step.run(f"{prefix}:context-tools", lambda: run_context_tools(tools))
        hydrated = step.run(
            f"{prefix}:hydrate-prompt",
            lambda: [m.model_dump(mode="json") for m in hydrate_prompt(prompt, variables)],
        )
        for raw in hydrated:
            state.append(Message.model_validate(raw))

        schemas = build_function_schemas(callable_tools)
        llm_config = config.model_copy(update={"tools": schemas or None})

        # ── Model ↔ tool loop ────────────────────────────────────────
        while state.iteration < max_iterations:
            iteration = state.advance()
            ctx = ctx.model_copy(update={"iteration": iteration})
            logger.debug("Agent %s iteration %d/%d.", name, iteration, max_iterations)

            _notify(hooks, "on_llm_start", ctx, list(state.messages))
            model_call = _ModelCall(
                name, provider, llm_config, iteration, session_id, broadcaster, streaming, metadata
            )
            snapshot = list(state.messages)
            response = LLMResponse.model_validate(
                step.run(f"{prefix}:llm-call:{iteration}", lambda: model_call(snapshot))
            )
            metrics.record_llm_call(response.usage)
            _notify(hooks, "on_llm_end", ctx, response)

            if not response.has_tool_calls:
                result = step.run(
                    f"{prefix}:process-response",
                    lambda: _finish(name, response, iteration, fn, session_id, broadcaster, metadata),
                )
                if result_schema is not None:
                    try:
                        result = validate_against(result_schema, result)
                    except SchemaValidationError as exc:
                        raise ResultValidationError(name, result_schema, exc.issues) from exc

                final_metrics = metrics.snapshot()
                logger.debug("Agent %s done. %s", name, format_metrics_summary(final_metrics))
                _notify(hooks, "on_complete", ctx, result, final_metrics)
                return result

            state.append(Message(role="assistant", content=response.content, tool_calls=response.tool_calls))

            for index, call in enumerate(response.tool_calls):
                args, args_error = _decode_arguments(call)
                _notify(hooks, "on_tool_start", ctx, call.function_name, args or {})

                tool_call = _ToolCall(
                    name, callable_tools, call, args, args_error, iteration, session_id, broadcaster
                )
                outcome = step.run(f"{prefix}:tool:{iteration}:{index}:{call.function_name}", tool_call)

                state.append(Message.model_validate(outcome["message"]))
                metrics.record_tool_call(call.function_name, outcome["duration_ms"])
                if outcome["ok"]:
                    _notify(hooks, "on_tool_end", ctx, call.function_name, outcome["result"], outcome["duration_ms"])
                else:
                    _notify(hooks, "on_tool_error", ctx, call.function_name, outcome["error"])

        raise MaxIterationsExceeded(name, max_iterations)

    except Exception as exc:
        _notify(hooks, "on_error", ctx, exc)
        raise


def _finish(
    name: str,
    response: LLMResponse,
    iteration: int,
    fn: Callable[[str], Any],
    session_id: str | None,
    broadcaster: Broadcaster | None,
    metadata: AgentMetadata | None,
) -> Any:
    if broadcaster is not None and session_id is not None:
        broadcaster.add_message(
            session_id, final_response_message(name, response.content, iteration, metadata)
        )
    return fn(response.content)
