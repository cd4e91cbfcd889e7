import time
from unittest.mock import MagicMock

import pytest

from agentline.config import ANSWERS_EVENT_NAME
from agentline.questions import (
    MissingAnswersError,
    answers_event,
    ask_user,
    ask_user_with_metadata,
    format_answers_as_context,
    validate_step_id,
)
from agentline.steps import LocalStepRunner
from agentline.streaming import Broadcaster

QUESTIONS = ["What is the target audience?", "What problem does this solve?"]


def answering(step, session_id, answers):
    """on_questions_ready callback that answers straight away, like a fast front end."""
    def ready(questions, session):
        step.send_event(ANSWERS_EVENT_NAME, answers_event(session_id, answers))
    return ready


# ---------------------------------------------------------------------------
# Waiting for answers
# ---------------------------------------------------------------------------

def test_timeout_returns_blank_answers():
    answers = ask_user(LocalStepRunner(), QUESTIONS, "s1", "gather-context", timeout=0.05)
    assert answers == {q: "" for q in QUESTIONS}

def test_one_second_timeout_resolves_within_window():
    started = time.monotonic()
    answers = ask_user(LocalStepRunner(), QUESTIONS, "s1", "gather-context", timeout="1s")
    elapsed = time.monotonic() - started

    assert answers == {q: "" for q in QUESTIONS}
    assert 0.9 <= elapsed < 5

def test_answers_event_resumes_with_answers():
    step = LocalStepRunner()
    ready = answering(step, "s1", {QUESTIONS[0]: "Developers", "unrelated": "ignored"})

    answers = ask_user(step, QUESTIONS, "s1", "gather-context", timeout="5s", on_questions_ready=ready)

    assert answers == {QUESTIONS[0]: "Developers", QUESTIONS[1]: ""}

def test_events_for_other_sessions_are_ignored():
    step = LocalStepRunner()
    step.send_event(ANSWERS_EVENT_NAME, answers_event("other", {QUESTIONS[0]: "wrong"}))

    answers = ask_user(step, QUESTIONS, "s1", "gather-context", timeout=0.05)

    assert answers[QUESTIONS[0]] == ""

def test_require_all_answers_raises_on_blanks():
    step = LocalStepRunner()
    ready = answering(step, "s1", {QUESTIONS[0]: "Developers", QUESTIONS[1]: "  "})

    with pytest.raises(MissingAnswersError) as excinfo:
        ask_user(
            step, QUESTIONS, "s1", "gather-context",
            timeout="5s", on_questions_ready=ready, require_all_answers=True,
        )

    assert excinfo.value.unanswered == [QUESTIONS[1]]
    assert str(excinfo.value) == f'Missing answers for questions: "{QUESTIONS[1]}"'

def test_require_all_answers_raises_on_timeout():
    with pytest.raises(MissingAnswersError):
        ask_user(LocalStepRunner(), QUESTIONS, "s1", "gather-context", timeout=0.05, require_all_answers=True)

def test_empty_step_id_is_rejected():
    with pytest.raises(ValueError, match="step_id cannot be empty"):
        ask_user(LocalStepRunner(), QUESTIONS, "s1", "  ")

# ---------------------------------------------------------------------------
# Notification and replay
# ---------------------------------------------------------------------------

def test_questions_are_broadcast_and_callback_runs_once_across_replay():
    broadcaster = Broadcaster()
    step = LocalStepRunner()
    callback = MagicMock(side_effect=answering(step, "s1", {q: "yes" for q in QUESTIONS}))

    first = ask_user(
        step, QUESTIONS, "s1", "gather-context",
        timeout="5s", on_questions_ready=callback, broadcaster=broadcaster,
    )

    replay = LocalStepRunner(journal=step.journal)
    again = ask_user(
        replay, QUESTIONS, "s1", "gather-context",
        timeout=0, on_questions_ready=callback, broadcaster=broadcaster,
    )

    assert first == again == {q: "yes" for q in QUESTIONS}
    callback.assert_called_once_with(QUESTIONS, "s1")
    messages = broadcaster.get_messages("s1")
    assert [m.type for m in messages] == ["questions"]
    assert messages[0].questions == QUESTIONS
    assert set(step.journal) == {"gather-context:notify-questions", "gather-context"}

def test_ask_user_with_metadata_reports_missing():
    step = LocalStepRunner()
    ready = answering(step, "s1", {QUESTIONS[0]: "Developers"})

    result = ask_user_with_metadata(step, QUESTIONS, "s1", "gather-context", timeout="5s", on_questions_ready=ready)

    assert result.complete is False
    assert result.unanswered == [QUESTIONS[1]]
    assert result.questions == QUESTIONS
    assert result.answers[QUESTIONS[0]] == "Developers"

# ---------------------------------------------------------------------------
# Formatting and step ids
# ---------------------------------------------------------------------------

def test_format_answers_as_context():
    answers = {"Audience?": "Developers", "Budget?": "", "Deadline?": "Friday"}

    assert format_answers_as_context(answers) == "Q: Audience?\nA: Developers\n\nQ: Deadline?\nA: Friday"
    assert format_answers_as_context(answers, skip_empty=False, separator="\n").count("Q: ") == 3

def test_validate_step_id_flags_unstable_ids():
    assert validate_step_id("gather-context-questions").valid
    assert not validate_step_id("questions-1700000000000").valid
    assert not validate_step_id("questions-deadbeef12").valid
    assert "random" in validate_step_id("random-questions").warning
    assert validate_step_id("").warning == "step_id cannot be empty"
