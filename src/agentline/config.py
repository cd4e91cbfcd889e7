# config.py
# Environment-backed defaults. Values are read once, at import.
#
# Every engine takes these as keyword defaults, so callers can always
# override per run without touching the environment.

import os
import re

from dotenv import load_dotenv

load_dotenv()


_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str | int | float | None) -> float | None:
    """
    Convert "30s", "15m", "1h", "2d", "250ms" or a bare number of seconds
    into seconds. None passes through (meaning "no limit").
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must be non-negative, got {value!r}.")
        return float(value)

    match = _DURATION.match(value)
    if not match:
        raise ValueError(f"Unrecognised duration {value!r}. Use e.g. '30s', '15m', '1h'.")
    amount, unit = match.groups()
    return float(amount) * _UNIT_SECONDS[unit or "s"]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


DEFAULT_MODEL = os.getenv("AGENTLINE_MODEL", "openai/gpt-4o-mini")
DEFAULT_BASE_URL = os.getenv("AGENTLINE_BASE_URL", "https://openrouter.ai/api/v1")
API_KEY = (
    os.getenv("AGENTLINE_API_KEY")
    or os.getenv("OPENROUTER_API_KEY")
    or os.getenv("OPENAI_API_KEY")
)

DEFAULT_MAX_ITERATIONS = _int_env("AGENTLINE_MAX_ITERATIONS", 10)
DEFAULT_STREAM_INTERVAL_MS = _int_env("AGENTLINE_STREAM_INTERVAL_MS", 50)

DEFAULT_ANSWER_TIMEOUT = os.getenv("AGENTLINE_ANSWER_TIMEOUT", "1h")
ANSWERS_EVENT_NAME = os.getenv("AGENTLINE_ANSWERS_EVENT", "user.answers.provided")

SESSION_TTL_SECONDS = parse_duration(os.getenv("AGENTLINE_SESSION_TTL") or None)
