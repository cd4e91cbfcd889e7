# pipeline.py
# Pipeline executor: agents and branches run in sequence over one shared,
# growing result context.
#
# The step tree is plain data. An agent is a leaf, a branch holds a map of
# key -> step list, and execution is a recursive descent over that tree.
# Nothing is looked up by name outside a branch's own map.
#
# Control flow per agent:
#   should_run? → map_input → input schema → run → output schema → store
# Control flow per branch:
#   condition → select (key | default) → map_input → recurse → store

import logging
import time
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Literal, NamedTuple, Union

from pydantic import BaseModel, ConfigDict, Field

from agentline.schemas import SchemaValidationError, validate_against
from agentline.steps import NamespacedStepRunner, StepRunner

logger = logging.getLogger(__name__)

AgentRun = Callable[[StepRunner, Any, Union[str, None]], Any]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PipelineValidationError(ValueError):
    """Raised when a pipeline definition is invalid. Lists every error; nothing has run."""

    def __init__(self, pipeline_name: str, errors: list[str]) -> None:
        self.pipeline_name = pipeline_name
        self.errors = errors
        super().__init__(
            f'Pipeline "{pipeline_name}" is invalid:\n' + "\n".join(f"  - {e}" for e in errors)
        )


class ContractViolationError(ValueError):
    """Raised when a step's input or output fails its schema. Input violations bypass recovery."""

    def __init__(self, pipeline_name: str, step_name: str, direction: str, issues: list[str]) -> None:
        self.pipeline_name = pipeline_name
        self.step_name = step_name
        self.direction = direction
        self.issues = issues
        super().__init__(
            f'Pipeline "{pipeline_name}" - Agent "{step_name}" {direction} validation failed:\n'
            + "\n".join(issues)
        )


class UnknownBranchError(LookupError):
    """Raised when a branch condition returns an unmapped key and there is no default. Fatal."""

    def __init__(self, pipeline_name: str, branch_name: str, key: Any, available: list[str]) -> None:
        self.pipeline_name = pipeline_name
        self.branch_name = branch_name
        self.key = key
        self.available = available
        super().__init__(
            f'Pipeline "{pipeline_name}" - Branch "{branch_name}" returned unknown key "{key}" '
            f"and no default_branch is defined. Available branches: {', '.join(available)}"
        )


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class PipelineResults(Mapping):
    """
    Read-only view of every step result produced so far.

    Only the executor writes, and entries are never removed. Reading a step
    that has not produced a result names the steps that have.
    """

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    def __getitem__(self, name: str) -> Any:
        try:
            return self._data[name]
        except KeyError:
            available = ", ".join(self._data) or "(none yet)"
            raise KeyError(f"No result for step '{name}'. Steps with results so far: {available}") from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"PipelineResults({self._data!r})"

    def _record(self, name: str, value: Any) -> None:
        self._data[name] = value


class PipelineContext:
    """Created once per run. Steps read it; only the executor writes results."""

    def __init__(self, initial_input: Any = None, session_id: str | None = None) -> None:
        self.initial_input = initial_input
        self.session_id = session_id
        self.results = PipelineResults()

    def __repr__(self) -> str:
        return f"PipelineContext(session_id={self.session_id!r}, results={list(self.results)})"


# ---------------------------------------------------------------------------
# Step definitions
# ---------------------------------------------------------------------------


class AgentDefinition(BaseModel):
    """
    A leaf step.

    `run(step, input, session_id)` does the work. Without `map_input` the
    previous result is passed through. When `should_run` returns False the
    step stores `skip_result`, or the previous result when that is None.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    run: Callable[..., Any] | None = None
    description: str | None = None
    input_schema: Any = None
    output_schema: Any = None
    map_input: Callable[[Any, PipelineContext], Any] | None = None
    should_run: Callable[[Any, PipelineContext], bool] | None = None
    skip_result: Any = None


class BranchDefinition(BaseModel):
    """A step that routes to one of several step lists by key. Branches nest."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    condition: Callable[[Any, PipelineContext], str] | None = None
    branches: dict[str, list["PipelineStep"]] = Field(default_factory=dict)
    default_branch: str | None = None
    map_input: Callable[[Any, PipelineContext], Any] | None = None
    description: str | None = None


PipelineStep = Union[AgentDefinition, BranchDefinition]

BranchDefinition.model_rebuild()


def define_agent(
    name: str,
    run: Callable[..., Any],
    *,
    description: str | None = None,
    input_schema: Any = None,
    output_schema: Any = None,
    map_input: Callable[[Any, PipelineContext], Any] | None = None,
    should_run: Callable[[Any, PipelineContext], bool] | None = None,
    skip_result: Any = None,
) -> AgentDefinition:
    if not name or not name.strip():
        raise ValueError("Agent name is required.")
    if not callable(run):
        raise ValueError(f'Agent "{name}": run must be callable.')
    return AgentDefinition(
        name=name,
        run=run,
        description=description,
        input_schema=input_schema,
        output_schema=output_schema,
        map_input=map_input,
        should_run=should_run,
        skip_result=skip_result,
    )


def define_branch(
    name: str,
    condition: Callable[[Any, PipelineContext], str],
    branches: dict[str, list[PipelineStep]],
    *,
    default_branch: str | None = None,
    map_input: Callable[[Any, PipelineContext], Any] | None = None,
    description: str | None = None,
) -> BranchDefinition:
    if not name or not name.strip():
        raise ValueError("Branch name is required.")
    if not callable(condition):
        raise ValueError(f'Branch "{name}": condition must be callable.')
    if not branches:
        raise ValueError(f'Branch "{name}": at least one branch is required.')
    return BranchDefinition(
        name=name,
        condition=condition,
        branches={key: list(steps) for key, steps in branches.items()},
        default_branch=default_branch,
        map_input=map_input,
        description=description,
    )


# ---------------------------------------------------------------------------
# Hooks and recovery
# ---------------------------------------------------------------------------


class ErrorRecovery(BaseModel):
    """
    What on_agent_error asks the executor to do.

    raise  re-raise the failure (same as returning None)
    skip   store `result` (or the previous result when None) and continue
    abort  return `result` from the pipeline immediately
    """

    action: Literal["raise", "skip", "abort"] = "raise"
    result: Any = None


class AgentFailure(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    error: Exception
    agent_name: str
    step_index: int
    input: Any = None
    previous_results: dict[str, Any] = Field(default_factory=dict)


class PipelineHooks:
    """Lifecycle observer for Pipeline.run. Override what you need."""

    def on_pipeline_start(self, input: Any, session_id: str | None) -> None:
        pass

    def on_agent_start(self, agent_name: str, step_index: int, input: Any, ctx: PipelineContext) -> None:
        pass

    def on_agent_end(
        self, agent_name: str, step_index: int, result: Any, duration_ms: int, ctx: PipelineContext
    ) -> None:
        pass

    def on_agent_error(self, failure: AgentFailure, ctx: PipelineContext) -> ErrorRecovery | None:
        return None

    def on_branch_selected(self, branch_name: str, key: Any, selected: str, ctx: PipelineContext) -> None:
        pass

    def on_pipeline_end(self, result: Any, duration_ms: int, ctx: PipelineContext) -> None:
        pass

    def on_pipeline_error(self, error: Exception, ctx: PipelineContext) -> None:
        pass


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class PipelineValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


def validate_pipeline(name: str, steps: list[PipelineStep]) -> PipelineValidation:
    """Check the whole step tree and collect every problem in one pass."""
    errors: list[str] = []
    warnings: list[str] = []

    if not name or not name.strip():
        errors.append("Pipeline name is required")

    if not steps:
        errors.append("Pipeline must have at least one step")
        return PipelineValidation(valid=False, errors=errors, warnings=warnings)

    names: set[str] = set()

    def claim(path: str, step_name: str) -> None:
        if step_name in names:
            errors.append(f'{path}: Duplicate name "{step_name}"')
        else:
            names.add(step_name)

    def check_agent(agent: AgentDefinition, path: str, first: bool) -> None:
        if not agent.name or not agent.name.strip():
            errors.append(f"{path}: Agent name is required")
            return
        claim(path, agent.name)
        if agent.run is None:
            errors.append(f'{path} ("{agent.name}"): Agent run function is required')
        if not first and agent.map_input is None:
            warnings.append(
                f'{path} ("{agent.name}"): No map_input defined. '
                "Previous output will be passed directly as input."
            )

    def check_branch(branch: BranchDefinition, path: str) -> None:
        if not branch.name or not branch.name.strip():
            errors.append(f"{path}: Branch name is required")
            return
        claim(path, branch.name)
        if branch.condition is None:
            errors.append(f'{path} ("{branch.name}"): Branch condition function is required')
        if not branch.branches:
            errors.append(f'{path} ("{branch.name}"): Branch must have at least one branch defined')
            return

        for key, branch_steps in branch.branches.items():
            branch_path = f'{path} ("{branch.name}").branches["{key}"]'
            if not branch_steps:
                errors.append(f"{branch_path}: Branch must have at least one step")
                continue
            for index, child in enumerate(branch_steps):
                check_step(child, f"{branch_path}[{index}]", index == 0)

        if branch.default_branch is not None and branch.default_branch not in branch.branches:
            errors.append(
                f'{path} ("{branch.name}"): default_branch "{branch.default_branch}" is not a valid '
                f"branch key. Available: {', '.join(branch.branches)}"
            )

    def check_step(item: Any, path: str, first: bool) -> None:
        if isinstance(item, BranchDefinition):
            check_branch(item, path)
        elif isinstance(item, AgentDefinition):
            check_agent(item, path, first)
        else:
            errors.append(f"{path}: Not an agent or branch definition ({type(item).__name__})")

    for index, item in enumerate(steps):
        check_step(item, f"steps[{index}]", index == 0)

    return PipelineValidation(valid=not errors, errors=errors, warnings=warnings)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class _Outcome(NamedTuple):
    value: Any
    aborted: bool = False


class PipelineRun(NamedTuple):
    result: Any
    context: PipelineContext
    aborted: bool


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class Pipeline:
    """
    An ordered, validated composition of agents and branches.

    Example:
        pipeline = Pipeline("qa", [
            define_agent("classify", classify),
            define_branch(
                "route",
                condition=lambda prev, ctx: prev["category"],
                branches={"trivia": [define_agent("trivia", answer_trivia)],
                          "twenty-questions": [define_agent("guess", play_guessing)]},
                default_branch="trivia",
            ),
        ])
        pipeline.run(step, {"question": "Who wrote Hamlet?"}, session_id="s-1")
    """

    def __init__(
        self,
        name: str,
        steps: list[PipelineStep],
        hooks: PipelineHooks | None = None,
        description: str | None = None,
    ) -> None:
        validation = validate_pipeline(name, steps)
        if not validation.valid:
            raise PipelineValidationError(name, validation.errors)
        for warning in validation.warnings:
            logger.info("Pipeline %s: %s", name, warning)

        self.name = name
        self.steps = list(steps)
        self.hooks = hooks or PipelineHooks()
        self.description = description
        self.warnings = validation.warnings

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def agent_names(self) -> list[str]:
        """Every agent name in the tree, depth first, in declaration order."""
        names: list[str] = []

        def walk(steps: list[PipelineStep]) -> None:
            for item in steps:
                if isinstance(item, BranchDefinition):
                    for branch_steps in item.branches.values():
                        walk(branch_steps)
                else:
                    names.append(item.name)

        walk(self.steps)
        return names

    def select_branch(self, branch: BranchDefinition, key: Any) -> tuple[str, list[PipelineStep]]:
        """Resolve a condition key to (selected key, steps). Pure; runs nothing."""
        try:
            steps = branch.branches.get(key)
        except TypeError:
            # unhashable keys can never match
            steps = None
        if steps is not None:
            return key, steps
        if branch.default_branch is not None:
            return branch.default_branch, branch.branches[branch.default_branch]
        raise UnknownBranchError(self.name, branch.name, key, list(branch.branches))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self, step: StepRunner, input: Any, session_id: str | None = None) -> Any:
        return self.execute(step, input, session_id).result

    def execute(self, step: StepRunner, input: Any, session_id: str | None = None) -> PipelineRun:
        """Like run(), but also returns the context and whether the run was aborted."""
        context = PipelineContext(initial_input=input, session_id=session_id)
        started = time.monotonic()
        self.hooks.on_pipeline_start(input, session_id)
        logger.debug("Pipeline %s starting (session=%s).", self.name, session_id)

        try:
            outcome = self._run_sequence(self.steps, step, input, context, step_index=None)
        except Exception as exc:
            self.hooks.on_pipeline_error(exc, context)
            raise

        if outcome.aborted:
            logger.debug("Pipeline %s aborted by recovery hook.", self.name)
            return PipelineRun(outcome.value, context, True)

        self.hooks.on_pipeline_end(outcome.value, _elapsed_ms(started), context)
        return PipelineRun(outcome.value, context, False)

    def _run_sequence(
        self,
        steps: list[PipelineStep],
        step: StepRunner,
        last: Any,
        context: PipelineContext,
        step_index: int | None,
    ) -> _Outcome:
        for index, item in enumerate(steps):
            current_index = index if step_index is None else step_index
            if isinstance(item, BranchDefinition):
                outcome = self._run_branch(item, step, last, context, current_index)
            elif isinstance(item, AgentDefinition):
                outcome = self._run_agent_step(item, step, last, context, current_index)
            else:
                raise TypeError(f"Not a pipeline step: {item!r}")

            if outcome.aborted:
                return outcome
            last = outcome.value
        return _Outcome(last)

    def _run_agent_step(
        self,
        agent: AgentDefinition,
        step: StepRunner,
        last: Any,
        context: PipelineContext,
        step_index: int,
    ) -> _Outcome:
        if agent.should_run is not None and not agent.should_run(last, context):
            skipped = agent.skip_result if agent.skip_result is not None else last
            logger.debug("Pipeline %s: skipping %s.", self.name, agent.name)
            context.results._record(agent.name, skipped)
            return _Outcome(skipped)

        agent_input = agent.map_input(last, context) if agent.map_input is not None else last
        return self._execute_agent(agent, step, agent_input, last, context, step_index)

    def _execute_agent(
        self,
        agent: AgentDefinition,
        step: StepRunner,
        agent_input: Any,
        last: Any,
        context: PipelineContext,
        step_index: int,
    ) -> _Outcome:
        started = time.monotonic()
        self.hooks.on_agent_start(agent.name, step_index, agent_input, context)

        if agent.input_schema is not None:
            try:
                agent_input = validate_against(agent.input_schema, agent_input)
            except SchemaValidationError as exc:
                raise ContractViolationError(self.name, agent.name, "input", exc.issues) from exc

        try:
            result = agent.run(step, agent_input, context.session_id)
            if agent.output_schema is not None:
                try:
                    result = validate_against(agent.output_schema, result)
                except SchemaValidationError as exc:
                    raise ContractViolationError(self.name, agent.name, "output", exc.issues) from exc
        except Exception as exc:
            return self._recover(agent, exc, agent_input, last, context, step_index)

        context.results._record(agent.name, result)
        self.hooks.on_agent_end(agent.name, step_index, result, _elapsed_ms(started), context)
        return _Outcome(result)

    def _recover(
        self,
        agent: AgentDefinition,
        exc: Exception,
        agent_input: Any,
        last: Any,
        context: PipelineContext,
        step_index: int,
    ) -> _Outcome:
        failure = AgentFailure(
            error=exc,
            agent_name=agent.name,
            step_index=step_index,
            input=agent_input,
            previous_results=dict(context.results),
        )
        recovery = self.hooks.on_agent_error(failure, context)

        if recovery is None or recovery.action == "raise":
            raise exc
        if recovery.action == "skip":
            substitute = recovery.result if recovery.result is not None else last
            logger.warning("Pipeline %s: agent %s failed (%s); continuing with substitute.", self.name, agent.name, exc)
            context.results._record(agent.name, substitute)
            return _Outcome(substitute)
        logger.warning("Pipeline %s: agent %s failed (%s); aborting.", self.name, agent.name, exc)
        return _Outcome(recovery.result, aborted=True)

    def _run_branch(
        self,
        branch: BranchDefinition,
        step: StepRunner,
        last: Any,
        context: PipelineContext,
        step_index: int,
    ) -> _Outcome:
        key = branch.condition(last, context)
        selected, branch_steps = self.select_branch(branch, key)
        logger.debug("Pipeline %s: branch %s -> %s (condition returned %r).", self.name, branch.name, selected, key)
        self.hooks.on_branch_selected(branch.name, key, selected, context)

        branch_input = branch.map_input(last, context) if branch.map_input is not None else last
        outcome = self._run_sequence(branch_steps, step, branch_input, context, step_index)
        if outcome.aborted:
            return outcome

        context.results._record(branch.name, outcome.value)
        return outcome


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def create_simple_pipeline(
    name: str,
    agents: list[tuple[str, Callable[..., Any]]],
    hooks: PipelineHooks | None = None,
) -> Pipeline:
    """A linear pipeline where each agent receives the previous result."""
    return Pipeline(name, [define_agent(agent_name, run) for agent_name, run in agents], hooks=hooks)


def run_agents_in_parallel(
    step: StepRunner,
    agents: list[AgentDefinition],
    input: Any,
    session_id: str | None = None,
    max_workers: int | None = None,
) -> dict[str, Any]:
    """
    Fan independent agents out on a thread pool and merge results by name.

    Each agent gets its own step namespace. The first failure fails the
    whole fan-out; agents not yet started are not started.
    """
    names = [agent.name for agent in agents]
    if len(set(names)) != len(names):
        raise ValueError(f"Parallel agents need unique names, got {names}.")
    if not agents:
        return {}

    def run_one(agent: AgentDefinition) -> Any:
        result = agent.run(NamespacedStepRunner(step, agent.name), input, session_id)
        if agent.output_schema is not None:
            result = validate_against(agent.output_schema, result)
        return result

    results: dict[str, Any] = {}
    pool = ThreadPoolExecutor(max_workers=max_workers or len(agents))
    try:
        futures = {pool.submit(run_one, agent): agent.name for agent in agents}
        for future in as_completed(futures):
            results[futures[future]] = future.result()
    except Exception:
        pool.shutdown(wait=True, cancel_futures=True)
        raise
    pool.shutdown(wait=True)
    return {name: results[name] for name in names}
