"""Tests for the agent loop (llm_agent.agent).

Tests cover:
- Final-answer turn, tool round-trip, budget exhaustion, stop tool, failing tools
- Streaming snapshots: prefix growth, no half-built tool calls
- History store bookkeeping and per-call override
- Configuration validation (tool binding, duplicate names, budget)
- Result ordering under randomized tool latency
- Sync facades
"""

# mock-ok: chat model is scripted; tools and loop are real

from __future__ import annotations

import asyncio
import json
import random

import pytest
from pydantic import BaseModel

from agent_fakes import ScriptedChatModel, text_turn, tool_turn
from llm_agent import (
    AgentConfig,
    AgentConfigurationError,
    AIMessage,
    AIMessageChunk,
    BudgetExhaustedError,
    HumanMessage,
    InMemoryHistory,
    ToolCallChunk,
    ToolMessage,
    acall_agent,
    astream_agent,
    call_agent,
    stream_agent,
    tool,
)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class EchoArgs(BaseModel):
    text: str


class StopArgs(BaseModel):
    answer: str


def _echo(args: EchoArgs) -> dict[str, str]:
    return {"echoed": args.text}


def _fail(args: dict) -> None:
    raise RuntimeError("tool exploded")


echo = tool("echo", "Echo text back.", EchoArgs, _echo)
fail = tool("fail", "Always fails.", None, _fail)
stop = tool("stop", "Finish with an answer.", StopArgs, lambda args: {"answer": args.answer})


def _config(model: ScriptedChatModel, **kwargs) -> AgentConfig:
    return AgentConfig(model=model, **kwargs)


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestAgentLoop:
    async def test_final_answer_without_tools(self) -> None:
        model = ScriptedChatModel([text_turn("hello there")])
        result = await acall_agent(_config(model), "hi")

        assert len(result) == 1
        assert isinstance(result[0], AIMessage)
        assert result[0].text == "hello there"
        assert result[0].tool_calls == []
        assert model.turns_taken == 1
        assert model.tool_choice == "auto"

    async def test_tool_round_trip(self) -> None:
        model = ScriptedChatModel([
            tool_turn(("call_1", "echo", {"text": "ping"})),
            text_turn("done"),
        ])
        result = await acall_agent(_config(model, tools=(echo,)), "echo ping")

        assert [m.type for m in result] == ["ai", "tool", "ai"]
        assert result[0].tool_calls[0].name == "echo"
        assert result[0].tool_calls[0].args == {"text": "ping"}
        assert isinstance(result[1], ToolMessage)
        assert result[1].content == '{"echoed":"ping"}'
        assert result[1].status == "success"
        assert result[1].tool_call_id == "call_1"
        assert result[2].text == "done"
        assert model.turns_taken == 2

    async def test_model_sees_prior_turns(self) -> None:
        model = ScriptedChatModel([
            tool_turn(("call_1", "echo", {"text": "ping"})),
            text_turn("done"),
        ])
        await acall_agent(_config(model, tools=(echo,)), "echo ping")

        second_context = model.calls[1]
        assert [m.type for m in second_context] == ["human", "ai", "tool"]
        assert second_context[0].content == "echo ping"

    async def test_budget_exhausted_after_tool_turn(self) -> None:
        model = ScriptedChatModel([
            tool_turn(("call_1", "echo", {"text": "ping"})),
            text_turn("never reached"),
        ])
        with pytest.raises(BudgetExhaustedError) as exc_info:
            await acall_agent(_config(model, tools=(echo,), max_turns=1), "echo ping")

        assert exc_info.value.max_turns == 1
        assert model.turns_taken == 1

    async def test_budget_zero_fails_before_first_turn(self) -> None:
        model = ScriptedChatModel([text_turn("hi")])
        with pytest.raises(BudgetExhaustedError):
            await acall_agent(_config(model, max_turns=0), "hi")
        assert model.turns_taken == 0

    async def test_budget_one_allows_single_answer(self) -> None:
        model = ScriptedChatModel([text_turn("only turn")])
        result = await acall_agent(_config(model, max_turns=1), "hi")
        assert result[-1].text == "only turn"

    @pytest.mark.parametrize("budget", [1, 2, 3, 5])
    async def test_at_most_budget_turns(self, budget: int) -> None:
        turns = [tool_turn((f"call_{i}", "echo", {"text": str(i)})) for i in range(budget + 1)]
        model = ScriptedChatModel(turns)
        with pytest.raises(BudgetExhaustedError):
            await acall_agent(_config(model, tools=(echo,), max_turns=budget), "loop forever")
        assert model.turns_taken == budget

    async def test_stop_tool_ends_loop_after_results(self) -> None:
        model = ScriptedChatModel([
            tool_turn(
                ("call_1", "echo", {"text": "ping"}),
                ("call_2", "stop", {"answer": "42"}),
            ),
        ])
        result = await acall_agent(_config(model, tools=(echo,), stop_tool=stop), "go")

        assert [m.type for m in result] == ["ai", "tool", "tool"]
        assert [m.tool_call_id for m in result[1:]] == ["call_1", "call_2"]
        assert json.loads(result[2].content) == {"answer": "42"}
        assert model.turns_taken == 1
        assert model.bound_tools == ["echo", "stop"]
        assert model.tool_choice == "any"

    async def test_stop_tool_ends_loop_even_when_sibling_fails(self) -> None:
        model = ScriptedChatModel([
            tool_turn(("call_1", "fail", {}), ("call_2", "stop", {"answer": "x"})),
        ])
        result = await acall_agent(_config(model, tools=(fail,), stop_tool=stop), "go")

        assert [m.status for m in result[1:]] == ["error", "success"]
        assert model.turns_taken == 1

    async def test_stop_tool_listed_in_tools_is_bound_once(self) -> None:
        model = ScriptedChatModel([tool_turn(("call_1", "stop", {"answer": "x"}))])
        await acall_agent(_config(model, tools=(echo, stop), stop_tool=stop), "go")
        assert model.bound_tools == ["echo", "stop"]

    async def test_failing_tool_is_recovered(self) -> None:
        model = ScriptedChatModel([
            tool_turn(("call_1", "fail", {})),
            text_turn("I saw the failure"),
        ])
        result = await acall_agent(_config(model, tools=(fail,)), "try it")

        assert result[1].status == "error"
        assert json.loads(result[1].content) == {"error": "tool exploded"}
        assert result[2].text == "I saw the failure"
        assert model.turns_taken == 2

    async def test_unknown_tool_is_recovered(self) -> None:
        model = ScriptedChatModel([
            tool_turn(("call_1", "nope", {"x": 1})),
            text_turn("ok"),
        ])
        result = await acall_agent(_config(model, tools=(echo,)), "go")

        assert result[1].status == "error"
        assert json.loads(result[1].content) == {
            "success": False,
            "error": 'Tool "nope" was not found.',
        }

    async def test_invalid_arguments_are_recovered(self) -> None:
        model = ScriptedChatModel([
            tool_turn(("call_1", "echo", {"wrong": "field"})),
            text_turn("retrying is for later"),
        ])
        result = await acall_agent(_config(model, tools=(echo,)), "go")

        assert result[1].status == "error"
        assert "Invalid arguments" in json.loads(result[1].content)["error"]
        assert model.turns_taken == 2

    async def test_malformed_json_arguments_are_recovered(self) -> None:
        broken = [AIMessageChunk(tool_call_chunks=[
            ToolCallChunk(index=0, id="call_1", name="echo", args='{"text": '),
        ])]
        model = ScriptedChatModel([broken, text_turn("ok")])
        result = await acall_agent(_config(model, tools=(echo,)), "go")

        assert result[0].tool_calls == []
        assert result[0].invalid_tool_calls[0].id == "call_1"
        assert result[1].status == "error"
        assert result[1].tool_call_id == "call_1"
        assert result[2].text == "ok"

    async def test_malformed_call_keeps_its_place_in_results(self) -> None:
        turn = [
            AIMessageChunk(tool_call_chunks=[
                ToolCallChunk(index=0, id="call_1", name="echo", args='{"text": '),
            ]),
            AIMessageChunk(tool_call_chunks=[
                ToolCallChunk(index=1, id="call_2", name="echo", args='{"text": "ok"}'),
            ]),
        ]
        model = ScriptedChatModel([turn, text_turn("done")])
        result = await acall_agent(_config(model, tools=(echo,)), "go")

        assert [m.tool_call_id for m in result[1:3]] == ["call_1", "call_2"]
        assert [m.status for m in result[1:3]] == ["error", "success"]

    async def test_session_length_tracks_messages(self) -> None:
        model = ScriptedChatModel([
            tool_turn(("a", "echo", {"text": "1"}), ("b", "echo", {"text": "2"})),
            tool_turn(("c", "echo", {"text": "3"})),
            text_turn("done"),
        ])
        result = await acall_agent(_config(model, tools=(echo,)), "go")

        ai_count = sum(1 for m in result if m.type == "ai")
        tool_count = sum(1 for m in result if m.type == "tool")
        assert ai_count == 3
        assert tool_count == 3
        assert len(result) == ai_count + tool_count
        assert [m.type for m in result] == ["ai", "tool", "tool", "ai", "tool", "ai"]


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestToolOrdering:
    async def test_results_follow_call_order_not_completion_order(self) -> None:
        class SlowArgs(BaseModel):
            n: int

        async def _slow(args: SlowArgs) -> dict[str, int]:
            await asyncio.sleep(random.uniform(0, 0.03))
            return {"n": args.n}

        slow = tool("slow", "Sleeps randomly.", SlowArgs, _slow)
        calls = [(f"call_{i}", "slow", {"n": i}) for i in range(8)]

        for _ in range(5):
            model = ScriptedChatModel([tool_turn(*calls), text_turn("done")])
            result = await acall_agent(_config(model, tools=(slow,)), "go")
            tool_messages = [m for m in result if m.type == "tool"]
            assert [m.tool_call_id for m in tool_messages] == [c[0] for c in calls]
            assert [json.loads(m.content)["n"] for m in tool_messages] == list(range(8))

    async def test_calls_run_concurrently(self) -> None:
        running = 0
        peak = 0

        async def _track(args: dict) -> str:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return "ok"

        track = tool("track", "Tracks concurrency.", None, _track)
        model = ScriptedChatModel([
            tool_turn(*[(f"c{i}", "track", {}) for i in range(4)]),
            text_turn("done"),
        ])
        await acall_agent(_config(model, tools=(track,)), "go")
        assert peak == 4


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestAgentStream:
    async def test_snapshots_grow_and_end_with_final_history(self) -> None:
        model = ScriptedChatModel([
            tool_turn(("call_1", "echo", {"text": "ping"}), text="Let me check."),
            text_turn("all done now"),
        ])
        snapshots = [s async for s in astream_agent(_config(model, tools=(echo,)), "go")]

        assert snapshots
        final = snapshots[-1]
        assert [m.type for m in final] == ["ai", "tool", "ai"]
        lengths = [len(s) for s in snapshots]
        assert lengths == sorted(lengths)
        # Text streams word by word in the final turn
        final_turn_texts = [s[-1].text for s in snapshots if len(s) == 3]
        assert final_turn_texts[0] == "all"
        assert final_turn_texts[-1] == "all done now"

    async def test_no_snapshot_exposes_partial_tool_call(self) -> None:
        model = ScriptedChatModel([
            tool_turn(("call_1", "echo", {"text": "ping"}), ("call_2", "echo", {"text": "pong"})),
            text_turn("done"),
        ])
        async for snapshot in astream_agent(_config(model, tools=(echo,)), "go"):
            for message in snapshot:
                if isinstance(message, AIMessage):
                    for call in message.tool_calls:
                        assert call.args in ({"text": "ping"}, {"text": "pong"})

    async def test_tool_turn_snapshots_only_after_args_complete(self) -> None:
        model = ScriptedChatModel([
            tool_turn(("call_1", "echo", {"text": "ping"})),
            text_turn("done"),
        ])
        snapshots = [s async for s in astream_agent(_config(model, tools=(echo,)), "go")]
        first_turn = [s for s in snapshots if len(s) == 1]
        assert first_turn
        assert all(s[0].tool_calls for s in first_turn)

    async def test_consumer_can_stop_early(self) -> None:
        model = ScriptedChatModel([
            tool_turn(("call_1", "echo", {"text": "ping"})),
            text_turn("done"),
        ])
        agen = astream_agent(_config(model, tools=(echo,)), "go")
        first = await agen.__anext__()
        await agen.aclose()
        assert len(first) == 1
        assert model.turns_taken == 1


# ---------------------------------------------------------------------------
# History store
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestAgentHistory:
    async def test_prior_history_is_context_not_result(self) -> None:
        store = InMemoryHistory([HumanMessage(content="earlier"), AIMessage(content="noted")])
        model = ScriptedChatModel([text_turn("sure")])
        result = await acall_agent(_config(model, history=store), "and now?")

        assert [m.type for m in result] == ["ai"]
        assert [m.type for m in model.calls[0]] == ["human", "ai", "human"]
        assert [m.type for m in store.messages] == ["human", "ai", "human", "ai"]

    async def test_store_receives_tool_results(self) -> None:
        store = InMemoryHistory()
        model = ScriptedChatModel([
            tool_turn(("call_1", "echo", {"text": "ping"})),
            text_turn("done"),
        ])
        await acall_agent(_config(model, tools=(echo,)), "go", history=store)
        assert [m.type for m in store.messages] == ["human", "ai", "tool", "ai"]

    async def test_call_history_overrides_config_history(self) -> None:
        configured = InMemoryHistory()
        per_call = InMemoryHistory()
        model = ScriptedChatModel([text_turn("a")])
        await acall_agent(_config(model, history=configured), "hi", history=per_call)
        assert len(configured) == 0
        assert len(per_call) == 2

    async def test_message_list_input(self) -> None:
        model = ScriptedChatModel([text_turn("ok")])
        await acall_agent(
            _config(model),
            [{"role": "system", "content": "be brief"}, ("user", "hello")],
        )
        assert [m.type for m in model.calls[0]] == ["system", "human"]

    async def test_blank_text_blocks_are_cleaned_from_context(self) -> None:
        store = InMemoryHistory([
            AIMessage(content=[{"type": "text", "text": "  "}, {"type": "text", "text": "kept"}]),
        ])
        model = ScriptedChatModel([text_turn("ok")])
        await acall_agent(_config(model, history=store), "hi")
        assert model.calls[0][0].content == [{"type": "text", "text": "kept"}]

    async def test_shared_config_concurrent_invocations(self) -> None:
        class PerCallModel:
            def bind_tools(self, tools, tool_choice="auto"):
                return self

            async def stream(self, messages):
                yield AIMessageChunk(content=f"echo:{messages[-1].content}")

        config = AgentConfig(model=PerCallModel(), max_turns=1)
        results = await asyncio.gather(*(acall_agent(config, f"q{i}") for i in range(5)))
        assert [r[0].text for r in results] == [f"echo:q{i}" for i in range(5)]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestAgentConfiguration:
    async def test_model_without_bind_tools(self) -> None:
        class NoTools:
            async def stream(self, messages):
                yield AIMessageChunk(content="x")

        with pytest.raises(AgentConfigurationError):
            await acall_agent(AgentConfig(model=NoTools()), "hi")

    async def test_bind_tools_not_implemented(self) -> None:
        class Unsupported:
            def bind_tools(self, tools, tool_choice="auto"):
                raise NotImplementedError

        with pytest.raises(AgentConfigurationError):
            await acall_agent(AgentConfig(model=Unsupported()), "hi")

    async def test_configuration_error_before_history_is_touched(self) -> None:
        store = InMemoryHistory()
        with pytest.raises(AgentConfigurationError):
            await acall_agent(AgentConfig(model=object(), history=store), "hi")
        assert len(store) == 0


class TestAgentConfigValidation:
    def test_duplicate_tool_names(self) -> None:
        other_echo = tool("echo", "Another echo.", EchoArgs, _echo)
        with pytest.raises(AgentConfigurationError, match="Duplicate"):
            AgentConfig(model=ScriptedChatModel([]), tools=(echo, other_echo))

    def test_stop_tool_name_clash(self) -> None:
        fake_stop = tool("echo", "Clashes.", None, lambda a: None)
        with pytest.raises(AgentConfigurationError):
            AgentConfig(model=ScriptedChatModel([]), tools=(echo,), stop_tool=fake_stop)

    def test_negative_budget(self) -> None:
        with pytest.raises(AgentConfigurationError):
            AgentConfig(model=ScriptedChatModel([]), max_turns=-1)

    def test_from_settings(self) -> None:
        from llm_agent import AgentSettings, LiteLLMChatModel

        config = AgentConfig.from_settings(
            "gpt-4o", [echo], settings=AgentSettings(max_turns=3, tool_result_max_length=100),
        )
        assert isinstance(config.model, LiteLLMChatModel)
        assert config.model.model == "gpt-4o"
        assert config.max_turns == 3
        assert config.tool_result_max_length == 100
        assert config.tools == (echo,)

    def test_from_settings_overrides(self) -> None:
        from llm_agent import AgentSettings

        config = AgentConfig.from_settings(
            None, settings=AgentSettings(default_model="gpt-4o-mini"), max_turns=7,
        )
        assert config.model.model == "gpt-4o-mini"
        assert config.max_turns == 7


# ---------------------------------------------------------------------------
# Sync facades
# ---------------------------------------------------------------------------


class TestSyncFacades:
    def test_call_agent(self) -> None:
        model = ScriptedChatModel([
            tool_turn(("call_1", "echo", {"text": "ping"})),
            text_turn("done"),
        ])
        result = call_agent(_config(model, tools=(echo,)), "go")
        assert [m.type for m in result] == ["ai", "tool", "ai"]

    def test_stream_agent(self) -> None:
        model = ScriptedChatModel([text_turn("one two three")])
        snapshots = list(stream_agent(_config(model), "go"))
        assert snapshots[-1][-1].text == "one two three"
        assert [s[-1].text for s in snapshots[:3]] == ["one", "one two", "one two three"]

    def test_stream_agent_propagates_budget_error(self) -> None:
        model = ScriptedChatModel([tool_turn(("call_1", "echo", {"text": "x"}))])
        with pytest.raises(BudgetExhaustedError):
            list(stream_agent(_config(model, tools=(echo,), max_turns=1), "go"))
