# prompt.py
# Prompt templates and their hydration into canonical messages.
#
# Placeholders are jinja2 expressions, usually plain `{{ name }}`.
# Undefined variables render as the empty string.

import json
import re
from typing import Any, Literal

from jinja2 import Environment
from pydantic import BaseModel, Field

from agentline.models import Message

_env = Environment(autoescape=False, keep_trailing_newline=True)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class PromptMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str = Field(..., description="Template text with {{ variable }} placeholders.")


class Prompt(BaseModel):
    messages: list[PromptMessage]
    variables: dict[str, Any] = Field(default_factory=dict)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def render_template(template: str, variables: dict[str, Any]) -> str:
    context = {key: _stringify(value) for key, value in variables.items()}
    return _env.from_string(template).render(**context)


def hydrate_prompt(prompt: Prompt, extra_variables: dict[str, Any] | None = None) -> list[Message]:
    """
    Render every message of the prompt.

    `extra_variables` (e.g. from context tools) override the prompt's own.
    """
    variables = {**prompt.variables, **(extra_variables or {})}
    return [
        Message(role=message.role, content=render_template(message.content, variables))
        for message in prompt.messages
    ]


def extract_variables(template: str, rendered: str) -> dict[str, str]:
    """
    Recover the variable values a rendering was produced from.

    Works for templates whose placeholders are separated by literal text.
    A variable used more than once must render identically each time.
    Raises ValueError when `rendered` does not fit the template.
    """
    pattern: list[str] = []
    seen: set[str] = set()
    position = 0
    for match in _PLACEHOLDER.finditer(template):
        pattern.append(re.escape(template[position:match.start()]))
        name = match.group(1)
        if name in seen:
            pattern.append(f"(?P={name})")
        else:
            pattern.append(f"(?P<{name}>.*?)")
            seen.add(name)
        position = match.end()
    pattern.append(re.escape(template[position:]))

    found = re.fullmatch("".join(pattern), rendered, re.DOTALL)
    if found is None:
        raise ValueError("Rendered text does not match the template.")
    return found.groupdict()
