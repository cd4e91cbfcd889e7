# tools.py
# Tool descriptors and everything the loop needs to use them.
#
# Two closed variants:
#   ContextTool  runs once before the first model call, returns prompt variables
#   CallableTool  invoked by the model, described to it as a function schema
#
# The loop never inspects `kind` itself; it goes through classify_tools and
# build_function_schemas, which reject anything that is neither variant.

import inspect
from collections.abc import Callable, Iterable
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from agentline.models import FunctionDefinition, FunctionParameters

PARAMETER_TYPES = frozenset({"string", "number", "boolean", "object", "array"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ToolValidationError(ValueError):
    """Raised when a tool set is malformed. Lists every problem found; fatal before any model call."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Invalid tool set:\n" + "\n".join(f"  - {e}" for e in errors))


class ToolNotFoundError(LookupError):
    """Raised when the model asks for a tool the agent does not have. Absorbed by the loop."""

    def __init__(self, tool_name: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Tool {tool_name} not found")


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------


class ToolParameter(BaseModel):
    name: str
    type: str = Field(..., description="One of string, number, boolean, object, array.")
    description: str = ""
    required: bool = False


class ContextTool(BaseModel):
    """Supplies prompt variables. Runs once, before the first model call."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: Literal["context"] = "context"
    name: str
    description: str = ""
    execute: Callable[[], dict[str, Any]]


class CallableTool(BaseModel):
    """
    A function the model may invoke by name.

    `execute(args)` or `execute(args, context)`; the second form receives a
    ToolExecutionContext for progress reporting.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: Literal["callable"] = "callable"
    name: str
    description: str = ""
    parameters: list[ToolParameter] = Field(default_factory=list)
    execute: Callable[..., Any]


ToolDescriptor = Union[ContextTool, CallableTool]


class ToolExecutionContext(BaseModel):
    """Handed to callable tools that accept a second argument."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    agent_name: str
    iteration: int
    report_progress: Callable[[str], None] = Field(default=lambda message: None)


# ---------------------------------------------------------------------------
# Classification and validation
# ---------------------------------------------------------------------------


def _unknown_variant(tool: Any) -> TypeError:
    return TypeError(f"Not a tool descriptor: {tool!r}")


def classify_tools(tools: Iterable[ToolDescriptor]) -> tuple[list[ContextTool], list[CallableTool]]:
    context_tools: list[ContextTool] = []
    callable_tools: list[CallableTool] = []
    for tool in tools:
        if isinstance(tool, ContextTool):
            context_tools.append(tool)
        elif isinstance(tool, CallableTool):
            callable_tools.append(tool)
        else:
            raise _unknown_variant(tool)
    return context_tools, callable_tools


def validate_tools(tools: Iterable[ToolDescriptor]) -> None:
    """Check a tool set up front. Raises ToolValidationError with every problem."""
    errors: list[str] = []
    seen: set[str] = set()

    _, callable_tools = classify_tools(tools)
    for tool in callable_tools:
        if tool.name in seen:
            errors.append(f"Duplicate tool name '{tool.name}'.")
        seen.add(tool.name)

        if not tool.description.strip():
            errors.append(f"Tool '{tool.name}' has no description.")

        for param in tool.parameters:
            if param.type not in PARAMETER_TYPES:
                errors.append(
                    f"Tool '{tool.name}' parameter '{param.name}' has type '{param.type}'; "
                    f"expected one of {sorted(PARAMETER_TYPES)}."
                )

    if errors:
        raise ToolValidationError(errors)


# ---------------------------------------------------------------------------
# Function schemas
# ---------------------------------------------------------------------------


def to_function_schema(tool: CallableTool) -> FunctionDefinition:
    if not isinstance(tool, CallableTool):
        raise _unknown_variant(tool)

    properties = {p.name: {"type": p.type, "description": p.description} for p in tool.parameters}
    required = [p.name for p in tool.parameters if p.required]
    return FunctionDefinition(
        name=tool.name,
        description=tool.description,
        parameters=FunctionParameters(properties=properties, required=required),
    )


def build_function_schemas(tools: Iterable[ToolDescriptor]) -> list[FunctionDefinition]:
    _, callable_tools = classify_tools(tools)
    return [to_function_schema(tool) for tool in callable_tools]


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def run_context_tools(tools: Iterable[ToolDescriptor]) -> dict[str, Any]:
    """Merge every context tool's variables. Later tools win on collisions."""
    context_tools, _ = classify_tools(tools)
    variables: dict[str, Any] = {}
    for tool in context_tools:
        variables.update(tool.execute())
    return variables


def _accepts_context(fn: Callable[..., Any]) -> bool:
    try:
        params = list(inspect.signature(fn).parameters.values())
    except (TypeError, ValueError):
        return False
    if any(p.kind is inspect.Parameter.VAR_POSITIONAL for p in params):
        return True
    positional = [
        p for p in params
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    return len(positional) >= 2


def invoke_tool(tool: CallableTool, args: dict[str, Any], context: ToolExecutionContext) -> Any:
    if _accepts_context(tool.execute):
        return tool.execute(args, context)
    return tool.execute(args)


def find_tool(tools: Iterable[CallableTool], name: str) -> CallableTool:
    for tool in tools:
        if tool.name == name:
            return tool
    raise ToolNotFoundError(name)
