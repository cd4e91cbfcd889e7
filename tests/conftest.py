import json

import pytest

from agentline.models import LLMResponse, ToolCallRequest


class ScriptedProvider:
    """Returns queued responses in order; repeats the last one when the queue runs dry."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def complete(self, messages, llm_config):
        self.calls.append((list(messages), llm_config))
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def text_response(content):
    return LLMResponse(content=content, finish_reason="stop")


def tool_response(*calls):
    """calls: (function_name, args_dict_or_raw_json) pairs."""
    requests = []
    for index, (name, args) in enumerate(calls):
        raw = args if isinstance(args, str) else json.dumps(args)
        requests.append(ToolCallRequest(id=f"call_{index}", function_name=name, arguments_json=raw))
    return LLMResponse(content="", finish_reason="tool_calls", tool_calls=requests)


@pytest.fixture
def scripted():
    return ScriptedProvider


@pytest.fixture
def text():
    return text_response


@pytest.fixture
def tool_calls():
    return tool_response
