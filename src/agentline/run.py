# run.py
# Entry point for the demo pipeline. Config and wiring only.
#
# classify ─┬─ trivia            → answer
#           └─ twenty-questions  → ask the user → guess
#
# Swap MODEL for any OpenRouter-supported model.
# https://openrouter.ai/models

import datetime
import logging
from functools import lru_cache
from typing import Any, Literal

from pydantic import BaseModel
from rich.prompt import Prompt as ConsolePrompt

from agentline import display
from agentline.agent import StreamingConfig, parse_json_response, run_agent
from agentline.config import ANSWERS_EVENT_NAME, DEFAULT_MODEL
from agentline.models import LLMConfig
from agentline.pipeline import Pipeline, define_agent, define_branch
from agentline.prompt import Prompt, PromptMessage
from agentline.providers import Provider, get_provider
from agentline.questions import answers_event, ask_user, format_answers_as_context
from agentline.steps import LocalStepRunner, StepRunner
from agentline.streaming import Broadcaster
from agentline.tools import CallableTool, ContextTool, ToolExecutionContext, ToolParameter

MODEL = DEFAULT_MODEL

PROMPTS = [
    # Routed to trivia, uses the fact lookup tool
    "Who painted the ceiling of the Sistine Chapel, and when?",
    # Routed to twenty-questions, asks the user before guessing
    "Let's play: I'm thinking of an animal. Can you guess it?",
]

FACTS = {
    "sistine chapel": "Michelangelo painted the Sistine Chapel ceiling between 1508 and 1512.",
    "hamlet": "Hamlet was written by William Shakespeare around 1600.",
    "everest": "Mount Everest is 8,849 metres tall.",
}


# ---------------------------------------------------------------------------
# Result shapes
# ---------------------------------------------------------------------------


class Classification(BaseModel):
    category: Literal["trivia", "twenty-questions"]
    question: str


class Answer(BaseModel):
    answer: str


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


def _today() -> dict[str, str]:
    return {"today": datetime.date.today().isoformat()}


def _lookup_fact(args: dict[str, Any], context: ToolExecutionContext) -> str:
    topic = str(args.get("topic", "")).strip().lower()
    context.report_progress(f"Looking up '{topic}'")
    for key, fact in FACTS.items():
        if key in topic or topic in key:
            return fact
    raise LookupError(f"No fact stored for '{topic}'.")


TODAY = ContextTool(name="today", description="Current date.", execute=_today)

LOOKUP_FACT = CallableTool(
    name="lookup_fact",
    description="Look up a stored fact about a topic.",
    parameters=[ToolParameter(name="topic", type="string", description="Topic to look up.", required=True)],
    execute=_lookup_fact,
)


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def provider() -> Provider:
    return get_provider()


broadcaster = Broadcaster(on_message=display.stream_printer())


def classify(step: StepRunner, input: dict, session_id: str | None) -> Classification:
    prompt = Prompt(
        messages=[
            PromptMessage(
                role="system",
                content=(
                    "Classify the user's message. Respond with JSON only: "
                    '{"category": "trivia" | "twenty-questions", "question": "<the message>"}'
                ),
            ),
            PromptMessage(role="user", content="{{ question }}"),
        ],
        variables={"question": input["question"]},
    )
    return run_agent(
        step, "classify", provider(), prompt, LLMConfig(model=MODEL, temperature=0),
        fn=parse_json_response, result_schema=Classification,
        session_id=session_id, broadcaster=broadcaster,
    )


def trivia(step: StepRunner, input: Classification, session_id: str | None) -> Answer:
    prompt = Prompt(
        messages=[
            PromptMessage(
                role="system",
                content=(
                    "Today is {{ today }}. Answer the trivia question, using lookup_fact when it helps. "
                    'Respond with JSON only: {"answer": "<answer>"}'
                ),
            ),
            PromptMessage(role="user", content="{{ question }}"),
        ],
        variables={"question": input.question},
    )
    return run_agent(
        step, "trivia", provider(), prompt, LLMConfig(model=MODEL),
        tools=[TODAY, LOOKUP_FACT], fn=parse_json_response, result_schema=Answer,
        session_id=session_id, broadcaster=broadcaster,
        streaming=StreamingConfig(),
    )


def gather_clues(step: StepRunner, input: Classification, session_id: str | None) -> dict:
    questions = ["Does it live in water?", "Is it bigger than a cat?", "Does it have fur?"]

    def collect_answers(asked: list[str], session: str) -> None:
        # Stands in for a front end posting the answer event.
        answers = {q: ConsolePrompt.ask(f"[yellow]{q}[/yellow]", default="") for q in asked}
        step.send_event(ANSWERS_EVENT_NAME, answers_event(session, answers))

    answers = ask_user(
        step, questions, session_id or "demo", step_id="twenty-questions-clues",
        timeout="5m", on_questions_ready=collect_answers, broadcaster=broadcaster,
    )
    return {"question": input.question, "clues": format_answers_as_context(answers)}


def guess(step: StepRunner, input: dict, session_id: str | None) -> Answer:
    prompt = Prompt(
        messages=[
            PromptMessage(
                role="system",
                content='Guess the animal from the clues. Respond with JSON only: {"answer": "<animal>"}',
            ),
            PromptMessage(role="user", content="{{ question }}\n\n{{ clues }}"),
        ],
        variables=input,
    )
    return run_agent(
        step, "guess", provider(), prompt, LLMConfig(model=MODEL),
        fn=parse_json_response, result_schema=Answer,
        session_id=session_id, broadcaster=broadcaster,
    )


PIPELINE = Pipeline(
    "question-router",
    [
        define_agent("classify", classify, description="Route the message", output_schema=Classification),
        define_branch(
            "route",
            condition=lambda prev, ctx: prev.category,
            branches={
                "trivia": [define_agent("trivia", trivia, output_schema=Answer)],
                "twenty-questions": [
                    define_agent("gather-clues", gather_clues),
                    define_agent("guess", guess, output_schema=Answer),
                ],
            },
            default_branch="trivia",
        ),
    ],
    hooks=display.ConsolePipelineHooks(),
    description="Classify a message, then answer trivia or play a guessing game.",
)


def main() -> None:
    display.configure_logging(logging.WARNING)
    display.console.print(display.pipeline_tree(PIPELINE))

    for index, question in enumerate(PROMPTS):
        PIPELINE.run(LocalStepRunner(), {"question": question}, session_id=f"demo-{index}")


if __name__ == "__main__":
    main()
