import threading
from unittest.mock import MagicMock

import pytest
from pydantic import BaseModel
from typing_extensions import TypedDict

from agentline.agent import run_agent
from agentline.models import LLMConfig
from agentline.pipeline import (
    AgentDefinition,
    BranchDefinition,
    ContractViolationError,
    ErrorRecovery,
    Pipeline,
    PipelineHooks,
    PipelineValidationError,
    UnknownBranchError,
    create_simple_pipeline,
    define_agent,
    define_branch,
    run_agents_in_parallel,
    validate_pipeline,
)
from agentline.prompt import Prompt, PromptMessage
from agentline.steps import LocalStepRunner


class Value(BaseModel):
    value: int


class ValueDict(TypedDict):
    value: float


def add_one(step, input, session_id):
    return {"value": input["value"] + 1}


def constant(result):
    return lambda step, input, session_id: result


def failing(error):
    def run(step, input, session_id):
        raise error
    return run


# ---------------------------------------------------------------------------
# Linear execution
# ---------------------------------------------------------------------------

def test_linear_pipeline_threads_results():
    pipeline = create_simple_pipeline("count", [("A", add_one), ("B", add_one), ("C", add_one)])

    run = pipeline.execute(LocalStepRunner(), {"value": 0})

    assert run.result == {"value": 3}
    assert dict(run.context.results) == {"A": {"value": 1}, "B": {"value": 2}, "C": {"value": 3}}
    assert run.aborted is False

def test_linear_pipeline_with_output_schemas():
    pipeline = Pipeline("abc", [
        define_agent("A", constant({"value": 1}), output_schema=ValueDict),
        define_agent(
            "B",
            lambda step, input, session_id: {"value": input + 1},
            output_schema=ValueDict,
            map_input=lambda prev, ctx: ctx.results["A"]["value"],
        ),
        define_agent("C", add_one, output_schema=ValueDict),
    ])

    run = pipeline.execute(LocalStepRunner(), None)

    assert run.result == {"value": 3}
    assert list(run.context.results) == ["A", "B", "C"]

def test_map_input_reads_earlier_results():
    pipeline = Pipeline("mapper", [
        define_agent("A", add_one),
        define_agent("B", add_one),
        define_agent(
            "C",
            lambda step, input, session_id: input,
            map_input=lambda prev, ctx: {"first": ctx.results["A"], "initial": ctx.initial_input},
        ),
    ])

    result = pipeline.run(LocalStepRunner(), {"value": 10}, session_id="s1")

    assert result == {"first": {"value": 11}, "initial": {"value": 10}}

def test_skipped_agent_stores_skip_result():
    received = []
    pipeline = Pipeline("skip", [
        define_agent("A", add_one),
        define_agent("B", add_one, should_run=lambda prev, ctx: False, skip_result={"value": -1}),
        define_agent("C", lambda step, input, session_id: received.append(input) or input),
    ])

    run = pipeline.execute(LocalStepRunner(), {"value": 0})

    assert run.context.results["B"] == {"value": -1}
    assert received == [{"value": -1}]

def test_skipped_agent_without_skip_result_passes_previous_through():
    pipeline = Pipeline("skip", [
        define_agent("A", add_one),
        define_agent("B", add_one, should_run=lambda prev, ctx: False),
    ])
    run = pipeline.execute(LocalStepRunner(), {"value": 0})
    assert run.result == {"value": 1}
    assert run.context.results["B"] == {"value": 1}

def test_missing_result_names_available_steps():
    seen = {}

    def peek(prev, ctx):
        with pytest.raises(KeyError) as excinfo:
            ctx.results["later"]
        seen["message"] = str(excinfo.value)
        return prev

    pipeline = Pipeline("peek", [define_agent("A", add_one), define_agent("B", add_one, map_input=peek)])
    pipeline.run(LocalStepRunner(), {"value": 0})

    assert "No result for step 'later'" in seen["message"]
    assert "A" in seen["message"]

# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

def test_output_schema_parses_results():
    pipeline = Pipeline("typed", [define_agent("A", add_one, output_schema=Value)])
    assert pipeline.run(LocalStepRunner(), {"value": 1}) == Value(value=2)

def test_input_violation_bypasses_recovery():
    hooks = MagicMock(spec=PipelineHooks)
    hooks.on_agent_error.return_value = ErrorRecovery(action="skip")
    pipeline = Pipeline(
        "typed", [define_agent("A", add_one, input_schema=Value)], hooks=hooks,
    )

    with pytest.raises(ContractViolationError) as excinfo:
        pipeline.run(LocalStepRunner(), {"value": "not a number"})

    assert excinfo.value.direction == "input"
    hooks.on_agent_error.assert_not_called()
    hooks.on_pipeline_error.assert_called_once()

def test_output_violation_is_recoverable():
    hooks = MagicMock(spec=PipelineHooks)
    hooks.on_agent_error.return_value = ErrorRecovery(action="skip", result={"value": 0})
    pipeline = Pipeline(
        "typed", [define_agent("A", constant({"wrong": True}), output_schema=Value)], hooks=hooks,
    )

    assert pipeline.run(LocalStepRunner(), {}) == {"value": 0}
    failure = hooks.on_agent_error.call_args.args[0]
    assert isinstance(failure.error, ContractViolationError)
    assert failure.error.direction == "output"

# ---------------------------------------------------------------------------
# Branches
# ---------------------------------------------------------------------------

def routing_pipeline(hooks=None, default_branch="trivia"):
    return Pipeline("router", [
        define_agent("classify", lambda step, input, session_id: {"category": input}),
        define_branch(
            "route",
            condition=lambda prev, ctx: prev["category"],
            branches={
                "trivia": [define_agent("answer", constant("trivia answer"))],
                "twenty-questions": [
                    define_agent("ask", constant("clues")),
                    define_agent("guess", lambda step, input, session_id: f"guess from {input}"),
                ],
            },
            default_branch=default_branch,
        ),
    ], hooks=hooks)

def test_branch_runs_selected_steps_and_stores_under_branch_name():
    run = routing_pipeline().execute(LocalStepRunner(), "twenty-questions")

    assert run.result == "guess from clues"
    assert run.context.results["route"] == "guess from clues"
    assert "answer" not in run.context.results

def test_unmapped_key_falls_back_to_default():
    hooks = MagicMock(spec=PipelineHooks)
    run = routing_pipeline(hooks=hooks).execute(LocalStepRunner(), "unknownKey")

    assert run.result == "trivia answer"
    hooks.on_branch_selected.assert_called_once()
    assert hooks.on_branch_selected.call_args.args[:3] == ("route", "unknownKey", "trivia")

def test_unmapped_key_without_default_raises():
    with pytest.raises(UnknownBranchError) as excinfo:
        routing_pipeline(default_branch=None).run(LocalStepRunner(), "recipe")

    assert excinfo.value.key == "recipe"
    assert excinfo.value.available == ["trivia", "twenty-questions"]
    assert "no default_branch" in str(excinfo.value)

def test_unhashable_condition_key_falls_back_to_default():
    pipeline = Pipeline("router", [
        define_branch(
            "route",
            condition=lambda prev, ctx: [prev],
            branches={"trivia": [define_agent("answer", constant("trivia answer"))]},
            default_branch="trivia",
        ),
    ])

    assert pipeline.run(LocalStepRunner(), "trivia") == "trivia answer"

def test_unhashable_condition_key_without_default_raises():
    pipeline = routing_pipeline(default_branch=None)

    with pytest.raises(UnknownBranchError) as excinfo:
        pipeline.select_branch(pipeline.steps[1], {"category": "trivia"})

    assert excinfo.value.key == {"category": "trivia"}

def test_every_branch_key_is_reachable():
    pipeline = routing_pipeline(default_branch=None)
    branch = pipeline.steps[1]
    for key in branch.branches:
        selected, steps = pipeline.select_branch(branch, key)
        assert selected == key
        assert steps

def test_nested_branches():
    pipeline = Pipeline("nested", [
        define_agent("start", constant({"outer": "a", "inner": "y"})),
        define_branch(
            "outer",
            condition=lambda prev, ctx: prev["outer"],
            branches={
                "a": [
                    define_branch(
                        "inner",
                        condition=lambda prev, ctx: prev["inner"],
                        branches={
                            "x": [define_agent("x-agent", constant("x"))],
                            "y": [define_agent("y-agent", constant("y"))],
                        },
                    )
                ],
                "b": [define_agent("b-agent", constant("b"))],
            },
        ),
    ])

    run = pipeline.execute(LocalStepRunner(), None)

    assert run.result == "y"
    assert run.context.results["inner"] == "y"
    assert run.context.results["outer"] == "y"
    assert pipeline.agent_names() == ["start", "x-agent", "y-agent", "b-agent"]

# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------

def test_hooks_observe_a_completed_run():
    hooks = MagicMock(spec=PipelineHooks)

    run = routing_pipeline(hooks=hooks).execute(LocalStepRunner(), "twenty-questions", session_id="s1")

    hooks.on_pipeline_start.assert_called_once_with("twenty-questions", "s1")
    assert [c.args[:2] for c in hooks.on_agent_start.call_args_list] == [("classify", 0), ("ask", 1), ("guess", 1)]
    ended = [(c.args[0], c.args[1], c.args[2]) for c in hooks.on_agent_end.call_args_list]
    assert ended == [
        ("classify", 0, {"category": "twenty-questions"}),
        ("ask", 1, "clues"),
        ("guess", 1, "guess from clues"),
    ]
    assert all(isinstance(c.args[3], int) for c in hooks.on_agent_end.call_args_list)
    assert hooks.on_branch_selected.call_args.args[:3] == ("route", "twenty-questions", "twenty-questions")

    hooks.on_pipeline_end.assert_called_once()
    result, duration_ms, ctx = hooks.on_pipeline_end.call_args.args
    assert result == run.result == "guess from clues"
    assert duration_ms >= 0
    assert ctx is run.context
    hooks.on_pipeline_error.assert_not_called()

# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def test_validation_collects_every_error():
    steps = [
        define_agent("A", add_one),
        define_agent("A", add_one),
        BranchDefinition(name="route", branches={"x": []}, default_branch="missing"),
        AgentDefinition(name="no-run"),
    ]

    validation = validate_pipeline("broken", steps)

    assert not validation.valid
    assert 'steps[1]: Duplicate name "A"' in validation.errors
    assert any("Branch condition function is required" in e for e in validation.errors)
    assert any('branches["x"]: Branch must have at least one step' in e for e in validation.errors)
    assert any('default_branch "missing"' in e for e in validation.errors)
    assert any("Agent run function is required" in e for e in validation.errors)

def test_validation_warns_about_missing_map_input():
    validation = validate_pipeline("ok", [define_agent("A", add_one), define_agent("B", add_one)])
    assert validation.valid
    assert validation.warnings == [
        'steps[1] ("B"): No map_input defined. Previous output will be passed directly as input.'
    ]

def test_invalid_pipeline_is_rejected_at_construction():
    with pytest.raises(PipelineValidationError) as excinfo:
        Pipeline("", [])
    assert excinfo.value.errors == ["Pipeline name is required", "Pipeline must have at least one step"]

def test_define_helpers_reject_malformed_input():
    with pytest.raises(ValueError):
        define_agent("", add_one)
    with pytest.raises(ValueError):
        define_branch("route", condition=lambda prev, ctx: "x", branches={})

# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------

def recovering_pipeline(recovery):
    hooks = MagicMock(spec=PipelineHooks)
    hooks.on_agent_error.return_value = recovery
    pipeline = Pipeline("recover", [
        define_agent("A", add_one),
        define_agent("B", failing(RuntimeError("model unavailable"))),
        define_agent("C", add_one),
    ], hooks=hooks)
    return pipeline, hooks

def test_skip_recovery_substitutes_and_continues():
    pipeline, hooks = recovering_pipeline(ErrorRecovery(action="skip", result={"value": 100}))

    run = pipeline.execute(LocalStepRunner(), {"value": 0})

    assert run.result == {"value": 101}
    assert run.context.results["B"] == {"value": 100}
    failure = hooks.on_agent_error.call_args.args[0]
    assert failure.agent_name == "B"
    assert failure.step_index == 1
    assert failure.previous_results == {"A": {"value": 1}}

def test_abort_recovery_returns_immediately():
    pipeline, hooks = recovering_pipeline(ErrorRecovery(action="abort", result="partial"))

    run = pipeline.execute(LocalStepRunner(), {"value": 0})

    assert run.result == "partial"
    assert run.aborted is True
    assert "C" not in run.context.results
    hooks.on_pipeline_end.assert_not_called()

def test_raise_recovery_propagates_original_error():
    pipeline, hooks = recovering_pipeline(None)

    with pytest.raises(RuntimeError, match="model unavailable"):
        pipeline.run(LocalStepRunner(), {"value": 0})

    hooks.on_pipeline_error.assert_called_once()

# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------

def test_replay_does_not_rerun_journaled_steps():
    work = MagicMock(side_effect=lambda: {"value": 1})

    def journaled(step, input, session_id):
        return step.run("work", work)

    pipeline = Pipeline("replay", [define_agent("A", journaled)])
    first = LocalStepRunner()
    original = pipeline.run(first, None)

    replay = LocalStepRunner(journal=first.journal)
    assert pipeline.run(replay, None) == original
    assert work.call_count == 1
    assert replay.executed == []

def test_shared_agent_function_runs_once_per_step(scripted, text):
    provider = scripted([text("first"), text("second")])
    prompt = Prompt(messages=[PromptMessage(role="user", content="Summarize {{ topic }}")], variables={"topic": "tides"})

    def summarize(step, input, session_id):
        return run_agent(step, "summarizer", provider, prompt, LLMConfig(model="test-model"), fn=str)

    pipeline = Pipeline("shared", [define_agent("A", summarize), define_agent("B", summarize)])
    run = pipeline.execute(LocalStepRunner(), None)

    assert run.context.results["A"] == "first"
    assert run.context.results["B"] == "second"
    assert len(provider.calls) == 2

# ---------------------------------------------------------------------------
# Parallel fan-out
# ---------------------------------------------------------------------------

def test_parallel_agents_merge_results_by_name():
    barrier = threading.Barrier(2, timeout=5)

    def together(label):
        def run(step, input, session_id):
            barrier.wait()
            return step.run("work", lambda: f"{label}:{input}")
        return run

    step = LocalStepRunner()
    results = run_agents_in_parallel(
        step,
        [define_agent("left", together("L")), define_agent("right", together("R"))],
        "x",
    )

    assert results == {"left": "L:x", "right": "R:x"}
    assert set(step.journal) == {"left:work", "right:work"}

def test_parallel_failure_fails_the_fan_out():
    with pytest.raises(RuntimeError, match="boom"):
        run_agents_in_parallel(
            LocalStepRunner(),
            [define_agent("ok", constant(1)), define_agent("bad", failing(RuntimeError("boom")))],
            None,
        )

def test_parallel_requires_unique_names():
    with pytest.raises(ValueError):
        run_agents_in_parallel(LocalStepRunner(), [define_agent("a", constant(1))] * 2, None)
    assert run_agents_in_parallel(LocalStepRunner(), [], None) == {}
