"""Tests for prompt coercion, props patching and usage merging."""

import pytest
from pydantic import ValidationError

from rein.schemas import (
    AgentPatch,
    AgentProps,
    DequeueMode,
    Prompt,
    ToolResultOutput,
    ToolResultPart,
    Usage,
    UserMessage,
)
from rein.tools import AgentTool


class TestPrompt:
    def test_needs_exactly_one_field(self):
        with pytest.raises(ValidationError):
            Prompt()
        with pytest.raises(ValidationError):
            Prompt(text="a", messages=())

    def test_coerce_string(self):
        assert Prompt.coerce("hi").to_messages() == (UserMessage(content="hi"),)

    def test_coerce_dict(self):
        assert Prompt.coerce({"text": "hi"}).text == "hi"

    def test_coerce_message_models(self):
        prompt = Prompt.coerce([UserMessage(content="a")])
        assert prompt.messages == (UserMessage(content="a"),)

    def test_coerce_copies_caller_data(self):
        data = [{"role": "user", "content": [{"type": "text", "text": "a"}]}]
        prompt = Prompt.coerce(data)
        data[0]["content"][0]["text"] = "changed"
        assert prompt.messages[0].text == "a"

    def test_describe(self):
        assert Prompt(text="hello").describe() == "'hello'"
        assert Prompt.coerce([{"role": "user", "content": "x"}]).describe() == "<1 messages>"


class TestAgentProps:
    def test_patch_applies_only_set_fields(self):
        props = AgentProps(model="m", system_prompt="keep", temperature=0.1)
        updated = props.apply(AgentPatch(temperature=0.9))
        assert updated.system_prompt == "keep"
        assert updated.temperature == 0.9
        assert props.temperature == 0.1

    def test_explicit_none_clears_optional(self):
        props = AgentProps(model="m", system_prompt="old")
        assert props.apply(AgentPatch(system_prompt=None)).system_prompt is None

    def test_none_never_clears_required(self):
        props = AgentProps(model="m", steering_mode=DequeueMode.ALL)
        updated = props.apply(AgentPatch(model=None, steering_mode=None))
        assert updated.model == "m"
        assert updated.steering_mode == DequeueMode.ALL

    def test_provider_options_copied(self):
        options = {"anthropic": {"thinking": {"type": "enabled"}}}
        props = AgentProps(model="m").apply(AgentPatch(provider_options=options))
        options["anthropic"]["thinking"]["type"] = "disabled"
        assert props.provider_options["anthropic"]["thinking"]["type"] == "enabled"

    def test_tools_become_tuple(self):
        tool = AgentTool(name="t", description="d", execute=lambda args, token: None)
        props = AgentProps(model="m").apply(AgentPatch(tools=[tool]))
        assert props.tools == (tool,)

    def test_merge_later_wins(self):
        merged = AgentPatch(model="a", top_k=3).merge(AgentPatch(model="b"))
        assert merged.changes() == {"model": "b", "top_k": 3}

    def test_empty_patch_is_falsy(self):
        assert not AgentPatch()
        assert AgentPatch(system_prompt=None)

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            AgentPatch(temprature=1.0)


class TestUsage:
    def test_merge_sums_fields(self):
        total = Usage(input_tokens=10, output_tokens=5).merge(Usage(input_tokens=3, reasoning_tokens=2))
        assert total.input_tokens == 13
        assert total.output_tokens == 5
        assert total.reasoning_tokens == 2
        assert total.total_tokens is None

    def test_merge_with_none(self):
        usage = Usage(input_tokens=1)
        assert usage.merge(None) is usage


class TestToolResultPart:
    def test_is_error(self):
        ok = ToolResultPart(tool_call_id="c", tool_name="t", output=ToolResultOutput(value=1))
        failed = ToolResultPart(
            tool_call_id="c",
            tool_name="t",
            output=ToolResultOutput(type="error-json", value={"name": "ValueError"}),
        )
        assert not ok.is_error
        assert failed.is_error
