import asyncio

import pytest

from agentflow.errors import ModelHardError, ModelUnavailableError, WorkflowCancelledError
from agentflow.llm import GenerationOptions
from agentflow.model_policy import APOLOGY_TEXT
from tests.fakes import FakeChatClient, make_policy


MESSAGES = [{"role": "user", "content": "hello"}]


def unavailable(model: str) -> ModelUnavailableError:
    return ModelUnavailableError(model, "model_decommissioned", status_code=400)


@pytest.mark.asyncio
async def test_first_candidate_answers():
    client = FakeChatClient(responses={"a": "first"})
    policy = make_policy(client)
    result = await policy.invoke(["a", "b"], MESSAGES)
    assert result.ok
    assert result.text == "first"
    assert result.model == "a"
    assert client.models_called == ["a"]


@pytest.mark.asyncio
async def test_unavailable_model_is_skipped_in_order():
    client = FakeChatClient(responses={"a": unavailable("a"), "b": "second", "c": "third"})
    policy = make_policy(client)
    result = await policy.invoke(["a", "b", "c"], MESSAGES)
    assert result.text == "second"
    assert result.attempts == ["a", "b"]
    assert client.models_called == ["a", "b"]


@pytest.mark.asyncio
async def test_hard_error_stops_candidate_list():
    client = FakeChatClient(responses={"a": ModelHardError("a", "rate limited", status_code=429), "b": "never"})
    policy = make_policy(client)
    result = await policy.invoke(["a", "b"], MESSAGES)
    assert result.outcome == "aborted"
    assert result.text is None
    assert client.models_called == ["a"]


@pytest.mark.asyncio
async def test_unexpected_exception_aborts():
    client = FakeChatClient(responses={"a": RuntimeError("socket closed"), "b": "never"})
    policy = make_policy(client)
    result = await policy.invoke(["a", "b"], MESSAGES)
    assert result.outcome == "aborted"
    assert "socket closed" in result.error
    assert client.models_called == ["a"]


@pytest.mark.asyncio
async def test_timeout_is_abort_class():
    client = FakeChatClient(responses={"a": "slow"}, delay_seconds=0.2)
    policy = make_policy(client, call_timeout_s=0.01)
    result = await policy.invoke(["a", "b"], MESSAGES)
    assert result.outcome == "aborted"
    assert client.models_called == ["a"]


@pytest.mark.asyncio
async def test_empty_output_moves_to_next_candidate():
    client = FakeChatClient(responses={"a": "   ", "b": "filled"})
    policy = make_policy(client)
    result = await policy.invoke(["a", "b"], MESSAGES)
    assert result.text == "filled"
    assert result.attempts == ["a", "b"]


@pytest.mark.asyncio
async def test_all_empty_is_exhausted():
    client = FakeChatClient(responses={"a": "", "b": ""})
    policy = make_policy(client)
    result = await policy.invoke(["a", "b"], MESSAGES)
    assert result.outcome == "exhausted"
    assert result.text is None


@pytest.mark.asyncio
async def test_duplicate_candidates_tried_once():
    client = FakeChatClient(responses={"a": unavailable("a"), "b": "ok-b"})
    policy = make_policy(client)
    result = await policy.invoke(["a", "a", "b", "a"], MESSAGES)
    assert result.text == "ok-b"
    assert client.models_called == ["a", "b"]


@pytest.mark.asyncio
async def test_options_are_forwarded():
    client = FakeChatClient(responses={"a": "x"})
    policy = make_policy(client)
    await policy.invoke(["a"], MESSAGES, GenerationOptions(temperature=0.0, max_tokens=10))
    options = client.calls[0]["options"]
    assert options.temperature == 0.0
    assert options.max_tokens == 10


@pytest.mark.asyncio
async def test_generate_falls_through_to_fast_tier():
    client = FakeChatClient(
        responses={"plan-a": unavailable("plan-a"), "plan-b": unavailable("plan-b"), "fast-a": "from fast"}
    )
    policy = make_policy(client)
    text = await policy.generate("planning", MESSAGES, fallback="fallback")
    assert text == "from fast"
    assert client.models_called == ["plan-a", "plan-b", "fast-a"]


@pytest.mark.asyncio
async def test_generate_apologizes_when_every_tier_is_unavailable():
    client = FakeChatClient(
        responses={
            "plan-a": unavailable("plan-a"),
            "plan-b": unavailable("plan-b"),
            "fast-a": unavailable("fast-a"),
        }
    )
    policy = make_policy(client)
    text = await policy.generate("planning", MESSAGES)
    assert text == APOLOGY_TEXT


@pytest.mark.asyncio
async def test_generate_uses_caller_fallback_on_abort():
    client = FakeChatClient(responses={"plan-a": ModelHardError("plan-a", "server error", status_code=500)})
    policy = make_policy(client)
    text = await policy.generate("planning", MESSAGES, fallback="I've processed your request.")
    assert text == "I've processed your request."
    # An aborted tier does not fall through to the secondary tier.
    assert client.models_called == ["plan-a"]


@pytest.mark.asyncio
async def test_secondary_tier_skips_models_already_attempted():
    client = FakeChatClient(responses={"shared": unavailable("shared"), "fast-only": "done"})
    policy = make_policy(client, planning=["shared"], fast=["shared", "fast-only"])
    result = await policy.invoke_tier("planning", MESSAGES)
    assert result.text == "done"
    assert result.attempts == ["shared", "fast-only"]
    assert client.models_called == ["shared", "fast-only"]


@pytest.mark.asyncio
async def test_generate_never_returns_empty_text():
    client = FakeChatClient(responses={"plan-a": "", "plan-b": "", "fast-a": ""})
    policy = make_policy(client)
    text = await policy.generate("planning", MESSAGES)
    assert text == APOLOGY_TEXT


@pytest.mark.asyncio
async def test_cancel_signal_checked_before_attempt():
    client = FakeChatClient(responses={"a": "x"})
    policy = make_policy(client)
    cancel = asyncio.Event()
    cancel.set()
    with pytest.raises(WorkflowCancelledError):
        await policy.invoke(["a"], MESSAGES, cancel_event=cancel)
    assert client.calls == []
