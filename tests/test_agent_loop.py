"""
Tests for the agent loop state machine, driven by scripted model backends.
"""

import json

import pytest

from cardsage.agent.loop import Turn, TurnState
from cardsage.agent.stub_models import FailingBackend, ScriptedBackend
from cardsage.agent.tools import build_tool_registry
from cardsage.agent.types import (
    Message,
    Role,
    StepFinished,
    TextDelta,
    ToolCallFinished,
    ToolCallRequest,
    ToolCallStarted,
    TurnCompleted,
    TurnFailed,
)
from cardsage.core.errors import ModelBackendError


async def run_turn(loop, turn):
    events = []

    async def publish(event):
        events.append(event)

    await loop.run(turn, publish)
    return events


def user_turn(text="What does card X do?", model_key="chat-model"):
    return Turn("conv-1", model_key, [Message(Role.USER, text)])


STUB_TEXT = ["Card X ", "destroys one ", "monster on the field."]
RULES_CALL = ToolCallRequest(id="call_rules", name="getRules", arguments={"query": "battle phase"})


@pytest.mark.asyncio
async def test_direct_answer_takes_one_invocation(make_loop) -> None:
    backend = ScriptedBackend("chat-model", [STUB_TEXT])
    turn = user_turn()
    events = await run_turn(make_loop(backend), turn)

    assert backend.invocations == 1
    assert [e.text for e in events if isinstance(e, TextDelta)] == STUB_TEXT
    assert isinstance(events[-1], TurnCompleted)
    assert events[-1].finish_reason == "stop"
    assert events[-1].answer == "".join(STUB_TEXT)
    assert turn.state is TurnState.COMPLETED
    assert [m.role for m in turn.history] == [Role.USER, Role.ASSISTANT]


@pytest.mark.asyncio
async def test_tool_round_trip_builds_four_message_history(make_loop, rules_adapter) -> None:
    backend = ScriptedBackend("chat-model", [[RULES_CALL], ["The battle phase ", "has four steps."]])
    turn = user_turn("How does the battle phase work?")
    events = await run_turn(make_loop(backend), turn)

    assert backend.invocations == 2
    history = turn.history
    assert [m.role for m in history] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
    assert history[1].tool_calls == (RULES_CALL,)
    assert history[2].tool_call_id == "call_rules"
    assert len(json.loads(history[2].content)) == 2
    assert history[3].content == "The battle phase has four steps."
    assert rules_adapter.queries == ["battle phase"]

    # second invocation saw the tool result
    assert backend.calls[1][-1] == history[2]
    kinds = [type(e) for e in events]
    assert kinds.index(ToolCallStarted) < kinds.index(ToolCallFinished) < kinds.index(TurnCompleted)


@pytest.mark.asyncio
async def test_system_instruction_and_tools_are_submitted(make_loop) -> None:
    backend = ScriptedBackend("chat-model", [["ok"]])
    await run_turn(make_loop(backend), user_turn())
    submitted = backend.calls[0]
    assert submitted[0].role is Role.SYSTEM
    assert "getRules" in submitted[0].content
    assert {t["function"]["name"] for t in backend.tools_seen[0]} == {"getInformation", "getRules"}


@pytest.mark.asyncio
async def test_backend_without_tool_support_gets_no_tools(make_loop) -> None:
    backend = ScriptedBackend("title-model", [["A title"]], supports_tools=False)
    await run_turn(make_loop(backend), user_turn(model_key="title-model"))
    assert backend.tools_seen == [[]]


@pytest.mark.asyncio
async def test_empty_messages_are_not_submitted(make_loop) -> None:
    backend = ScriptedBackend("chat-model", [["ok"]])
    turn = Turn("conv-1", "chat-model", [
        Message(Role.USER, "first"),
        Message(Role.ASSISTANT, ""),
        Message(Role.USER, "   "),
        Message(Role.ASSISTANT, "reply"),
        Message(Role.USER, "second"),
    ])
    await run_turn(make_loop(backend), turn)

    assert turn.dropped == 2
    submitted = [(m.role, m.content) for m in backend.calls[0][1:]]
    assert submitted == [
        (Role.USER, "first"),
        (Role.ASSISTANT, "reply"),
        (Role.USER, "second"),
    ]


class TestInboundToolHistory:
    @pytest.mark.asyncio
    async def test_unanswerable_tool_result_is_not_submitted(self, make_loop) -> None:
        backend = ScriptedBackend("chat-model", [["ok"]])
        turn = Turn("conv-1", "chat-model", [
            Message(Role.USER, "How does the battle phase work?"),
            Message(Role.ASSISTANT, "Checking rules."),
            Message(Role.TOOL, "[]", tool_call_id="call_x"),
            Message(Role.USER, "Well?"),
        ])
        await run_turn(make_loop(backend), turn)

        assert turn.orphaned == 1
        submitted = backend.calls[0][1:]
        assert [m.role for m in submitted] == [Role.USER, Role.ASSISTANT, Role.USER]
        requested = {c.id for m in submitted for c in m.tool_calls}
        assert all(m.tool_call_id in requested for m in submitted if m.role is Role.TOOL)

    @pytest.mark.asyncio
    async def test_answered_tool_call_keeps_its_result(self, make_loop) -> None:
        backend = ScriptedBackend("chat-model", [["ok"]])
        turn = Turn("conv-1", "chat-model", [
            Message(Role.USER, "How does the battle phase work?"),
            Message(Role.ASSISTANT, "", tool_calls=(RULES_CALL,)),
            Message(Role.TOOL, "[]", tool_call_id="call_rules"),
            Message(Role.TOOL, "[]", tool_call_id="call_rules"),
            Message(Role.USER, "Thanks, and the damage step?"),
        ])
        await run_turn(make_loop(backend), turn)

        assert turn.orphaned == 1
        roles = [m.role for m in backend.calls[0][1:]]
        assert roles == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.USER]

    @pytest.mark.asyncio
    async def test_new_calls_do_not_reuse_inbound_ids(self, make_loop) -> None:
        backend = ScriptedBackend("chat-model", [[RULES_CALL], ["done"]])
        turn = Turn("conv-1", "chat-model", [
            Message(Role.USER, "How does the battle phase work?"),
            Message(Role.ASSISTANT, "", tool_calls=(RULES_CALL,)),
            Message(Role.TOOL, "[]", tool_call_id="call_rules"),
            Message(Role.USER, "Check again."),
        ])
        await run_turn(make_loop(backend), turn)

        tool_ids = [m.tool_call_id for m in turn.history if m.role is Role.TOOL]
        assert len(tool_ids) == 2
        assert len(set(tool_ids)) == 2


class TestStepBudget:
    @pytest.mark.asyncio
    async def test_model_that_always_calls_tools_stops_at_budget(self, make_loop) -> None:
        backend = ScriptedBackend("chat-model", [[RULES_CALL]])
        turn = user_turn()
        events = await run_turn(make_loop(backend, max_steps=8), turn)

        assert backend.invocations == 8
        assert turn.invocations == 8
        assert turn.state is TurnState.COMPLETED
        assert events[-1] == TurnCompleted(finish_reason="step_budget", answer="", steps=8)
        assert sum(isinstance(e, StepFinished) for e in events) == 8

    @pytest.mark.asyncio
    async def test_budget_keeps_partial_answer(self, make_loop) -> None:
        backend = ScriptedBackend("chat-model", [["Checking. ", RULES_CALL]])
        turn = user_turn()
        events = await run_turn(make_loop(backend, max_steps=3), turn)
        assert events[-1].finish_reason == "step_budget"
        assert events[-1].answer == "Checking. " * 3

    @pytest.mark.asyncio
    async def test_every_tool_result_matches_exactly_one_request(self, make_loop) -> None:
        backend = ScriptedBackend("chat-model", [[RULES_CALL, RULES_CALL]])
        turn = user_turn()
        await run_turn(make_loop(backend, max_steps=4), turn)

        requested = [tc.id for m in turn.history for tc in m.tool_calls]
        answered = [m.tool_call_id for m in turn.history if m.role is Role.TOOL]
        assert len(requested) == len(set(requested)) == 8
        assert answered == requested
        for i, m in enumerate(turn.history):
            if m.role is Role.TOOL:
                earlier = [tc.id for prev in turn.history[:i] for tc in prev.tool_calls]
                assert earlier.count(m.tool_call_id) == 1


@pytest.mark.asyncio
async def test_missing_call_id_is_assigned(make_loop) -> None:
    call = ToolCallRequest(id="", name="getRules", arguments={"query": "battle phase"})
    backend = ScriptedBackend("chat-model", [[call], ["done"]])
    turn = user_turn()
    await run_turn(make_loop(backend), turn)
    assert turn.history[1].tool_calls[0].id == "call_0_0"
    assert turn.history[2].tool_call_id == "call_0_0"


@pytest.mark.asyncio
async def test_tool_failure_is_reported_to_the_model(make_loop, fake_adapter, unavailable_adapter) -> None:
    tools = build_tool_registry(information=fake_adapter(), rules=unavailable_adapter)
    backend = ScriptedBackend("chat-model", [[RULES_CALL], ["Sorry, the rules are unavailable."]])
    turn = user_turn()
    events = await run_turn(make_loop(backend, tools=tools), turn)

    finished = next(e for e in events if isinstance(e, ToolCallFinished))
    assert finished.result.is_error is True
    tool_message = turn.history[2]
    assert "timed out" in json.loads(tool_message.content)["error"]
    assert events[-1].finish_reason == "stop"
    assert backend.invocations == 2


@pytest.mark.asyncio
async def test_unknown_tool_aborts_turn(make_loop) -> None:
    backend = ScriptedBackend("chat-model", [[ToolCallRequest(id="c1", name="buildDeck")], ["never"]])
    turn = user_turn()
    events = await run_turn(make_loop(backend), turn)
    assert events[-1] == TurnFailed(kind="unknown_tool", message="Unknown tool: 'buildDeck'")
    assert turn.state is TurnState.ABORTED
    assert backend.invocations == 1


@pytest.mark.asyncio
async def test_unknown_model_aborts_before_generation(make_loop) -> None:
    backend = ScriptedBackend("chat-model", [["hi"]])
    turn = user_turn(model_key="gpt-unknown")
    events = await run_turn(make_loop(backend), turn)
    assert len(events) == 1
    assert events[0].kind == "unknown_model"
    assert backend.invocations == 0
    assert turn.state is TurnState.ABORTED


@pytest.mark.asyncio
async def test_backend_fault_keeps_streamed_text(make_loop) -> None:
    backend = FailingBackend("chat-model", ModelBackendError("upstream closed"), prefix=["Partial "])
    events = await run_turn(make_loop(backend), user_turn())
    assert events == [TextDelta("Partial "), TurnFailed(kind="model_unavailable", message="upstream closed")]


@pytest.mark.asyncio
async def test_unexpected_backend_error_is_reported(make_loop) -> None:
    backend = FailingBackend("chat-model", RuntimeError("boom"))
    events = await run_turn(make_loop(backend), user_turn())
    assert events == [TurnFailed(kind="internal_error", message="boom")]


@pytest.mark.asyncio
async def test_silent_backend_times_out(make_loop) -> None:
    backend = ScriptedBackend("chat-model", [["late"]], delay=0.5)
    turn = user_turn()
    events = await run_turn(make_loop(backend, model_timeout=0.05), turn)
    assert isinstance(events[-1], TurnFailed)
    assert events[-1].kind == "model_unavailable"
    assert turn.state is TurnState.ABORTED


def test_max_steps_must_be_positive(make_loop) -> None:
    with pytest.raises(ValueError):
        make_loop(ScriptedBackend("chat-model", [["x"]]), max_steps=0)
