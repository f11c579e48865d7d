import asyncio

import pytest
from pydantic import BaseModel

from apai_agent.agents import APAI_AGENT, AgentSpec, build_apai_agent
from apai_agent.errors import (
    ProviderError,
    ProviderOverloadedError,
    StepConflictError,
    ToolExecutionError,
    UnknownToolError,
)
from apai_agent.orchestrator import NO_ANSWER, OVERLOADED_ANSWER, AgentNetwork, RunObserver
from apai_agent.postprocess import STALLED_ANSWER_TEMPLATE
from apai_agent.schemas import TextMessage, ToolCallMessage, ToolInvocation, ToolResultMessage
from apai_agent.steps import step_key
from apai_agent.tools import DoneInput, ToolDescriptor, ToolRegistry, build_default_registry, finish_tool
from tests.conftest import make_settings
from tests.fakes import FakeRemoteExecutor, ScriptedModelClient, call, calls, text

AGREEMENT = {"agreementId": "A1", "clauses": [{"title": "Late payment", "penalty": "5%"}]}


def make_network(settings, script, remote=None, registry=None, **kwargs):
    model = ScriptedModelClient(script, **kwargs.pop("model_kwargs", {}))
    network = AgentNetwork(
        kwargs.pop("agent", APAI_AGENT),
        registry or build_default_registry(settings),
        model,
        settings,
        remote=remote if remote is not None else FakeRemoteExecutor({"getAgreement": AGREEMENT}),
        **kwargs,
    )
    return network, model


def tool_results(history):
    return [msg for msg in history if isinstance(msg, ToolResultMessage)]


@pytest.mark.asyncio
async def test_fetch_then_finish_returns_answer(settings):
    remote = FakeRemoteExecutor({"getAgreement": AGREEMENT})
    network, model = make_network(
        settings,
        [
            [text("Let me fetch it."), call("apai-getAgreement", agreementId="A1")],
            [call("done", answer="Penalty is 5% for late payment.")],
        ],
        remote=remote,
    )
    outcome = await network.run("fetch agreement A1 and summarize penalties")

    assert outcome.status == "completed"
    assert outcome.answer == "Penalty is 5% for late payment."
    assert outcome.turns == 2
    assert remote.calls == [{"server": "apai", "tool": "getAgreement", "arguments": {"agreementId": "A1"}}]
    results = tool_results(outcome.history)
    assert [r.tool.name for r in results] == ["apai-getAgreement", "done"]
    assert results[0].content == AGREEMENT
    # The second inference sees the fetched agreement.
    assert any(isinstance(m, ToolResultMessage) for m in model.calls[1]["history"])
    assert outcome.state["answer"] == "Penalty is 5% for late payment."


@pytest.mark.asyncio
async def test_history_starts_with_user_prompt_and_only_agent_tools_exposed(settings):
    network, model = make_network(settings, [[call("done", answer="ok")]])
    outcome = await network.run("hello")

    first = model.calls[0]
    assert first["system"] == APAI_AGENT.system
    assert first["tools"] == ["apai-getAgreement", "apai-getTemplate", "done"]
    assert isinstance(first["history"][0], TextMessage)
    assert first["history"][0].role == "user"
    assert first["history"][0].content == "hello"
    assert outcome.history[0].content == "hello"


@pytest.mark.asyncio
async def test_repeated_tool_call_synthesizes_finish(settings):
    remote = FakeRemoteExecutor({"getAgreement": AGREEMENT})
    network, model = make_network(
        settings,
        [
            [call("apai-getAgreement", agreementId="A1")],
            [call("apai-getAgreement", agreementId="A1")],
            [call("done", answer="never reached")],
        ],
        remote=remote,
    )
    outcome = await network.run("summarize A1")

    assert outcome.status == "completed"
    assert outcome.answer == STALLED_ANSWER_TEMPLATE.format(tool="apai-getAgreement")
    assert outcome.turns == 2
    assert len(remote.calls) == 1
    assert len(model.calls) == 2
    last_call = [m for m in outcome.history if isinstance(m, ToolCallMessage)][-1]
    assert last_call.tools[0].name == "done"


@pytest.mark.asyncio
async def test_overloaded_provider_returns_fixed_answer(settings):
    network, _ = make_network(settings, [ProviderOverloadedError("busy", status_code=529)])
    outcome = await network.run("anything")

    assert outcome.status == "overloaded"
    assert outcome.answer == OVERLOADED_ANSWER


@pytest.mark.asyncio
async def test_turn_cap_uses_latest_assistant_text(tmp_path):
    settings = make_settings(tmp_path, max_turns=3)
    script = [[text("thinking 1")], [text("thinking 2")], [text("still thinking")], [text("too late")]]
    network, model = make_network(settings, script)
    outcome = await network.run("loop forever")

    assert outcome.status == "exhausted"
    assert outcome.answer == "still thinking"
    assert outcome.turns == 3
    assert len(model.calls) == 3


@pytest.mark.asyncio
async def test_turn_cap_without_text_uses_fixed_string(tmp_path):
    settings = make_settings(tmp_path, max_turns=2)
    network, _ = make_network(settings, [[], [], []])
    outcome = await network.run("silent model")

    assert outcome.status == "exhausted"
    assert outcome.answer == NO_ANSWER


@pytest.mark.asyncio
async def test_invalid_tool_input_is_reported_back(settings):
    remote = FakeRemoteExecutor({"getAgreement": AGREEMENT})
    network, model = make_network(
        settings,
        [
            [call("apai-getAgreement", agreementID="A1")],
            [call("apai-getAgreement", agreementId="A1")],
            [call("done", answer="fixed")],
        ],
        remote=remote,
    )
    outcome = await network.run("typo first")

    assert outcome.answer == "fixed"
    results = tool_results(outcome.history)
    assert results[0].error is True
    assert "invalid input" in results[0].content["error"]
    assert results[1].error is False
    assert len(remote.calls) == 1


@pytest.mark.asyncio
async def test_invalid_finish_input_keeps_running(settings):
    network, _ = make_network(
        settings,
        [[call("done", reply="wrong field")], [call("done", answer="right field")]],
    )
    outcome = await network.run("finish twice")

    assert outcome.status == "completed"
    assert outcome.answer == "right field"
    assert outcome.turns == 2


@pytest.mark.asyncio
async def test_empty_answer_still_ends_run(settings):
    network, model = make_network(settings, [[call("done", answer="")], [call("done", answer="again")]])
    outcome = await network.run("empty")

    assert outcome.answer == ""
    assert len(model.calls) == 1


@pytest.mark.asyncio
async def test_remote_failure_becomes_error_result(settings):
    remote = FakeRemoteExecutor({"getTemplate": ToolExecutionError("server unavailable")})
    network, _ = make_network(
        settings,
        [[call("apai-getTemplate", templateId="T1")], [call("done", answer="could not fetch")]],
        remote=remote,
    )
    outcome = await network.run("template please")

    results = tool_results(outcome.history)
    assert results[0].error is True
    assert results[0].content == {"error": "server unavailable"}
    assert outcome.answer == "could not fetch"


@pytest.mark.asyncio
async def test_tool_timeout_becomes_error_result(tmp_path):
    settings = make_settings(tmp_path, tool_timeout_s=0.01)
    remote = FakeRemoteExecutor({"getAgreement": AGREEMENT}, delay_seconds=0.5)
    network, _ = make_network(
        settings,
        [[call("apai-getAgreement", agreementId="A1")], [call("done", answer="timed out")]],
        remote=remote,
    )
    outcome = await network.run("slow")

    results = tool_results(outcome.history)
    assert results[0].error is True
    assert "exceeded" in results[0].content["error"]
    assert outcome.answer == "timed out"


@pytest.mark.asyncio
async def test_model_timeout_propagates(tmp_path):
    settings = make_settings(tmp_path, model_timeout_s=0.01)
    network, _ = make_network(
        settings, [[call("done", answer="late")]], model_kwargs={"delay_seconds": 0.5}
    )
    with pytest.raises(ProviderError) as excinfo:
        await network.run("slow model")
    assert "exceeded" in str(excinfo.value)


@pytest.mark.asyncio
async def test_provider_error_propagates(settings):
    network, _ = make_network(settings, [ProviderError("bad request", status_code=400)])
    with pytest.raises(ProviderError):
        await network.run("boom")


@pytest.mark.asyncio
async def test_unknown_tool_aborts_run(settings):
    network, _ = make_network(settings, [[call("not-a-tool", x=1)]])
    with pytest.raises(UnknownToolError):
        await network.run("unknown")


@pytest.mark.asyncio
async def test_cancel_before_first_turn(settings):
    network, model = make_network(settings, [[call("done", answer="never")]])
    cancel = asyncio.Event()
    cancel.set()
    outcome = await network.run("cancelled", cancel_event=cancel)

    assert outcome.status == "cancelled"
    assert outcome.answer is None
    assert model.calls == []


@pytest.mark.asyncio
async def test_cancel_between_turns(settings):
    cancel = asyncio.Event()

    def fetch_then_cancel(history):
        cancel.set()
        return [call("apai-getAgreement", agreementId="A1")]

    network, model = make_network(settings, [fetch_then_cancel, [call("done", answer="never")]])
    outcome = await network.run("cancel midway", cancel_event=cancel)

    assert outcome.status == "cancelled"
    assert outcome.turns == 1
    assert len(model.calls) == 1


@pytest.mark.asyncio
async def test_parallel_calls_dispatch_first_of_each_name(settings):
    remote = FakeRemoteExecutor({"getAgreement": AGREEMENT, "getTemplate": {"templateId": "T1"}})
    output = calls(
        ToolInvocation(id="a", name="apai-getAgreement", input={"agreementId": "A1"}),
        ToolInvocation(id="b", name="apai-getAgreement", input={"agreementId": "A2"}),
        ToolInvocation(id="c", name="apai-getTemplate", input={"templateId": "T1"}),
    )
    network, _ = make_network(settings, [[output], [call("done", answer="both")]], remote=remote)
    outcome = await network.run("both")

    assert [c["tool"] for c in remote.calls] == ["getAgreement", "getTemplate"]
    assert [r.tool.id for r in tool_results(outcome.history)][:2] == ["a", "c"]
    assert outcome.answer == "both"


@pytest.mark.asyncio
async def test_local_tool_handler_runs_without_remote(settings):
    class EchoInput(BaseModel):
        value: str

    async def echo(params, ctx):
        ctx.state.set("echoed", params.value)
        return {"echo": params.value}

    registry = ToolRegistry()
    registry.register(ToolDescriptor("echo", "Echo a value", EchoInput, echo))
    registry.register(finish_tool())
    agent = AgentSpec(name="echo-agent", system="Echo things.")
    network, model = make_network(
        settings,
        [[call("echo", value="hi")], [call("done", answer="echoed hi")]],
        registry=registry,
        agent=agent,
    )
    outcome = await network.run("echo hi")

    assert model.calls[0]["tools"] == ["echo", "done"]
    assert outcome.state["echoed"] == "hi"
    assert tool_results(outcome.history)[0].content == {"echo": "hi"}


@pytest.mark.asyncio
async def test_step_conflict_aborts_run(settings):
    class SlowInput(BaseModel):
        n: int

    async def reenter(params, ctx):
        return await ctx.steps.run(step_key("slow", {"n": params.n}), lambda: asyncio.sleep(0))

    registry = ToolRegistry()
    registry.register(ToolDescriptor("slow", "Slow tool", SlowInput, reenter))
    registry.register(finish_tool())
    network, _ = make_network(settings, [[call("slow", n=1)]], registry=registry, agent=AgentSpec("a", "s"))

    with pytest.raises(StepConflictError):
        await network.run("conflict")


@pytest.mark.asyncio
async def test_observer_sees_lifecycle_in_order(settings):
    seen = []

    class Recorder(RunObserver):
        async def run_started(self, ctx, agent):
            seen.append("run_started")

        async def turn_started(self, ctx, turn, agent):
            seen.append(f"turn_started:{turn}")

        async def tool_dispatched(self, ctx, result):
            seen.append(f"tool:{result.tool.name}")

        async def run_finished(self, ctx, outcome):
            seen.append(f"run_finished:{outcome.status}")

    network, _ = make_network(
        settings,
        [[call("apai-getAgreement", agreementId="A1")], [call("done", answer="ok")]],
        observer=Recorder(),
    )
    await network.run("observe")

    assert seen == [
        "run_started",
        "turn_started:1",
        "tool:apai-getAgreement",
        "turn_started:2",
        "tool:done",
        "run_finished:completed",
    ]


@pytest.mark.asyncio
async def test_failing_observer_does_not_change_outcome(settings):
    class Broken(RunObserver):
        async def turn_started(self, ctx, turn, agent):
            raise RuntimeError("observer bug")

    network, _ = make_network(settings, [[call("done", answer="fine")]], observer=Broken())
    outcome = await network.run("still works")
    assert outcome.answer == "fine"


@pytest.mark.asyncio
async def test_history_mirrored_into_state(settings):
    network, _ = make_network(settings, [[call("done", answer="ok")]])
    outcome = await network.run("mirror")
    assert outcome.state["history"] == outcome.history
    assert outcome.state["initialized"] is True


@pytest.mark.asyncio
async def test_finish_result_supplies_answer_when_handler_does_not(settings):
    async def finish_without_state(params, ctx):
        return params.answer

    registry = ToolRegistry()
    registry.register(ToolDescriptor("done", "Finish.", DoneInput, finish_without_state))
    network, model = make_network(
        settings,
        [[call("done", answer="from the result")]],
        registry=registry,
        agent=AgentSpec(name="bare-agent", system="Finish."),
        model_kwargs={"repeat_last": True},
    )
    outcome = await network.run("finish")

    assert outcome.status == "completed"
    assert outcome.answer == "from the result"
    assert outcome.turns == 1
    assert len(model.calls) == 1


@pytest.mark.asyncio
async def test_server_name_setting_renames_exposed_tools(tmp_path):
    settings = make_settings(tmp_path, apai_server_name="contracts")
    remote = FakeRemoteExecutor({"getAgreement": AGREEMENT})
    network, model = make_network(
        settings,
        [[call("contracts-getAgreement", agreementId="A1")], [call("done", answer="fetched")]],
        remote=remote,
        agent=build_apai_agent("contracts"),
    )
    outcome = await network.run("fetch A1")

    assert model.calls[0]["tools"] == ["contracts-getAgreement", "contracts-getTemplate", "done"]
    assert "contracts-getAgreement" in model.calls[0]["system"]
    assert remote.calls == [{"server": "contracts", "tool": "getAgreement", "arguments": {"agreementId": "A1"}}]
    assert outcome.answer == "fetched"
