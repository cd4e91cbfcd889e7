# questions.py
# Human-input gate: ask the user, suspend on the step substrate, resume with
# the answers.
#
# The step_id must be identical on every replay of a run. A changing id
# (timestamps, random suffixes) cannot be matched against the recorded
# answer, so the resumed run waits forever. validate_step_id flags the
# usual mistakes; ask_user logs its warning.

import logging
import re
from collections.abc import Callable

from pydantic import BaseModel, Field

from agentline.config import ANSWERS_EVENT_NAME, DEFAULT_ANSWER_TIMEOUT
from agentline.models import Event
from agentline.steps import StepRunner
from agentline.streaming import Broadcaster, questions_message

logger = logging.getLogger(__name__)


class MissingAnswersError(ValueError):
    """Raised when require_all_answers is set and some questions came back blank, timeouts included."""

    def __init__(self, unanswered: list[str]) -> None:
        self.unanswered = unanswered
        super().__init__("Missing answers for questions: " + ", ".join(f'"{q}"' for q in unanswered))


class AskUserResult(BaseModel):
    answers: dict[str, str]
    complete: bool
    unanswered: list[str] = Field(default_factory=list)
    questions: list[str] = Field(default_factory=list)


class StepIdCheck(BaseModel):
    valid: bool
    warning: str | None = None


_SUSPICIOUS_STEP_IDS = [
    (re.compile(r"\d{13,}"), "contains timestamp-like number (13+ digits)"),
    (re.compile(r"[a-f0-9]{8,}$", re.IGNORECASE), "ends with hex string (possible random ID)"),
    (re.compile(r"random|uuid|unique", re.IGNORECASE), "contains 'random', 'uuid', or 'unique'"),
]


def validate_step_id(step_id: str) -> StepIdCheck:
    """Heuristic check that a step id is stable across replays."""
    if not step_id or not step_id.strip():
        return StepIdCheck(valid=False, warning="step_id cannot be empty")

    for pattern, reason in _SUSPICIOUS_STEP_IDS:
        if pattern.search(step_id):
            return StepIdCheck(
                valid=False,
                warning=(
                    f'step_id "{step_id}" may not be deterministic: {reason}. '
                    "Replays will not find the recorded answers. Use a stable, predictable id."
                ),
            )
    return StepIdCheck(valid=True)


def answers_event(session_id: str, answers: dict[str, str]) -> dict:
    """Payload a front end sends (with step.send_event) to answer the gate."""
    return {"session_id": session_id, "answers": dict(answers)}


def _unanswered(questions: list[str], answers: dict[str, str]) -> list[str]:
    return [q for q in questions if not answers.get(q, "").strip()]


def ask_user(
    step: StepRunner,
    questions: list[str],
    session_id: str,
    step_id: str,
    timeout: str | float | None = DEFAULT_ANSWER_TIMEOUT,
    event_name: str = ANSWERS_EVENT_NAME,
    on_questions_ready: Callable[[list[str], str], None] | None = None,
    require_all_answers: bool = False,
    broadcaster: Broadcaster | None = None,
    agent_name: str = "ask-user",
) -> dict[str, str]:
    """
    Ask questions and wait for the answer event of this session.

    Returns an answer for every question asked; anything unanswered, or
    everything on timeout, maps to "". With require_all_answers a blank
    answer raises MissingAnswersError instead.

    Example:
        answers = ask_user(
            step,
            ["What is the target audience?", "What problem does this solve?"],
            session_id="session-123",
            step_id="gather-context-questions",
            timeout="15m",
        )
    """
    check = validate_step_id(step_id)
    if not step_id or not step_id.strip():
        raise ValueError(check.warning)
    if not check.valid:
        logger.warning(check.warning)

    questions = list(questions)

    if on_questions_ready is not None or broadcaster is not None:

        def notify() -> None:
            if broadcaster is not None:
                broadcaster.add_message(session_id, questions_message(agent_name, questions))
            if on_questions_ready is not None:
                on_questions_ready(questions, session_id)

        step.run(f"{step_id}:notify-questions", notify)

    logger.debug("Waiting for %s (session=%s, step_id=%s).", event_name, session_id, step_id)

    def for_this_session(event: Event) -> bool:
        return event.data.get("session_id") == session_id

    event = step.wait_for_event(step_id, event_name, match=for_this_session, timeout=timeout)
    if event is None:
        logger.info("No answers for session %s before timeout; continuing with blanks.", session_id)

    raw = (event.data.get("answers") if event is not None else None) or {}
    answers = {question: str(raw.get(question) or "") for question in questions}

    if require_all_answers:
        missing = _unanswered(questions, answers)
        if missing:
            raise MissingAnswersError(missing)
    return answers


def ask_user_with_metadata(step: StepRunner, questions: list[str], session_id: str, step_id: str, **options) -> AskUserResult:
    """ask_user that never raises on blanks and reports what is missing."""
    options["require_all_answers"] = False
    answers = ask_user(step, questions, session_id, step_id, **options)
    unanswered = _unanswered(list(questions), answers)
    return AskUserResult(
        answers=answers,
        complete=not unanswered,
        unanswered=unanswered,
        questions=list(questions),
    )


def format_answers_as_context(
    answers: dict[str, str],
    question_prefix: str = "Q: ",
    answer_prefix: str = "A: ",
    separator: str = "\n\n",
    skip_empty: bool = True,
) -> str:
    """Render answers as Q/A pairs for the next prompt."""
    pairs = [
        f"{question_prefix}{question}\n{answer_prefix}{answer}"
        for question, answer in answers.items()
        if not (skip_empty and not (answer or "").strip())
    ]
    return separator.join(pairs)
