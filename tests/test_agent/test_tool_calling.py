import asyncio

import pytest

from agentloop.agent import STUCK_PROMPT, AgentStatus, RunOutcome
from agentloop.exceptions import InvalidStateError, LLMAPIError, ToolCallRequiredError
from agentloop.execution_tracker import EventType, ExecutionTracker
from agentloop.llm import LLMProvider, LLMResponse, Message, Role, ToolCall, ToolChoice
from agentloop.memory import Memory
from agentloop.toolcall_agent import ToolCallAgent
from agentloop.tools import TerminateTool, ToolRegistry, ToolResult, tool
from agentloop.tools.registry import Tool


class ScriptedProvider(LLMProvider):
    """Replays canned responses; exceptions in the script are raised."""

    def __init__(self, responses=None, delay: float = 0.0, **kwargs):
        super().__init__(**kwargs)
        self.responses = list(responses or [])
        self.delay = delay
        self.calls: list[dict] = []

    async def complete(self, messages, tools=None, tool_choice=ToolChoice.AUTO):
        self.calls.append({"messages": list(messages), "tools": tools, "tool_choice": tool_choice})
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self.responses.pop(0) if self.responses else LLMResponse(content="")
        if isinstance(item, Exception):
            raise item
        return item


@tool(description="Echo the given text back.")
def echo(text: str) -> str:
    return text


class ExplodingTool(Tool):
    name = "explode"
    description = "Always fails"

    async def execute(self, **kwargs):
        raise RuntimeError("boom")


class ChattyTool(Tool):
    name = "chatty"
    description = "Returns a lot of output"

    async def execute(self, **kwargs):
        return ToolResult(content="x" * 500, base64_image="aW1n")


class FlakyFinishTool(Tool):
    name = "finish"
    description = "Fails once, then reports completion"

    def __init__(self):
        self.calls = 0

    async def execute(self, **kwargs):
        self.calls += 1
        if self.calls == 1:
            return ToolResult(success=False, error="not yet")
        return ToolResult(content="done")


def call(name: str, call_id: str, **arguments) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


def make_agent(provider: LLMProvider, *tools, **kwargs) -> ToolCallAgent:
    registry = ToolRegistry(tools or [echo, TerminateTool()])
    kwargs.setdefault("special_tool_names", ["terminate"])
    return ToolCallAgent(name="tester", provider=provider, tools=registry, **kwargs)


def nudged(provider: ScriptedProvider, call_index: int) -> bool:
    messages = provider.calls[call_index]["messages"]
    return any(m.role == Role.USER and m.content.startswith(STUCK_PROMPT) for m in messages)


def test_missing_provider_is_rejected():
    with pytest.raises(ValueError):
        ToolCallAgent(name="broken", provider=None)


@pytest.mark.asyncio
async def test_run_refuses_when_not_idle_and_leaves_memory_alone():
    agent = make_agent(ScriptedProvider())
    agent.update_memory(Role.USER, "earlier")
    agent.status = AgentStatus.RUNNING
    before = agent.memory.messages

    with pytest.raises(InvalidStateError, match="RUNNING"):
        await agent.run("new task")

    assert agent.memory.messages == before


@pytest.mark.asyncio
async def test_terminate_finishes_run_after_rest_of_batch():
    provider = ScriptedProvider([
        LLMResponse(
            content="wrapping up",
            tool_calls=[
                call("echo", "c1", text="first"),
                call("terminate", "c2", status="success"),
                call("echo", "c3", text="last"),
            ],
        ),
    ])
    agent = make_agent(provider, max_steps=5)

    transcript = await agent.run("do it")

    assert transcript.startswith("Step 1: Observed output of cmd `echo` executed:\nfirst")
    assert "Reached max steps" not in transcript
    assert agent.last_outcome is RunOutcome.FINISHED
    assert agent.status is AgentStatus.IDLE
    assert agent.current_step == 0
    tool_messages = [m for m in agent.memory if m.role == Role.TOOL]
    assert [m.tool_call_id for m in tool_messages] == ["c1", "c2", "c3"]
    assert tool_messages[2].content.endswith("last")
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_special_tool_finishes_only_after_successful_call():
    provider = ScriptedProvider([
        LLMResponse(content="", tool_calls=[call("finish", "c1")]),
        LLMResponse(content="", tool_calls=[call("finish", "c2")]),
    ])
    agent = make_agent(provider, FlakyFinishTool(), special_tool_names=["FINISH"], max_steps=5)

    transcript = await agent.run("task")

    assert transcript.splitlines() == [
        "Step 1: Error: Tool 'finish' encountered a problem: not yet",
        "Step 2: Observed output of cmd `finish` executed:",
        "done",
    ]
    assert agent.last_outcome is RunOutcome.FINISHED
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_finishing_on_last_step_has_no_exhaustion_marker():
    provider = ScriptedProvider([
        LLMResponse(content="done", tool_calls=[call("terminate", "c1", status="success")]),
    ])
    agent = make_agent(provider, max_steps=1)

    transcript = await agent.run("task")

    assert transcript.count("Step ") == 1
    assert "Terminated" not in transcript


@pytest.mark.asyncio
async def test_max_steps_marker_only_when_budget_exhausted():
    provider = ScriptedProvider([LLMResponse(content=f"thought {i}") for i in range(3)])
    agent = make_agent(provider, max_steps=3)

    transcript = await agent.run("think a lot")
    lines = transcript.splitlines()

    assert lines == [
        "Step 1: thought 0",
        "Step 2: thought 1",
        "Step 3: thought 2",
        "Terminated: Reached max steps (3)",
    ]
    assert agent.last_outcome is RunOutcome.EXHAUSTED


@pytest.mark.asyncio
async def test_test_mode_caps_step_budget():
    provider = ScriptedProvider([LLMResponse(content=f"thought {i}") for i in range(10)])
    agent = make_agent(provider, max_steps=10)
    agent.enable_test_mode()

    transcript = await agent.run("task")

    assert transcript.endswith("Terminated: Reached max steps (3)")
    agent.disable_test_mode()
    assert agent.effective_max_steps == 10


@pytest.mark.asyncio
async def test_wall_clock_timeout_stops_loop():
    provider = ScriptedProvider(
        [LLMResponse(content=f"slow {i}") for i in range(10)],
        delay=0.1,
    )
    agent = make_agent(provider, max_steps=10, timeout_seconds=0.15)

    transcript = await agent.run("task")

    assert transcript.endswith("Terminated: Execution timeout after 0.15 seconds")
    assert "Reached max steps" not in transcript
    assert agent.last_outcome is RunOutcome.TIMEOUT
    assert agent.status is AgentStatus.IDLE


@pytest.mark.asyncio
async def test_repeated_answers_add_stuck_nudge_to_next_prompt():
    provider = ScriptedProvider([LLMResponse(content="same answer") for _ in range(3)])
    agent = make_agent(provider, max_steps=3)

    await agent.run("task")

    assert not nudged(provider, 1)
    assert nudged(provider, 2)
    assert agent.next_step_prompt.startswith(STUCK_PROMPT)


@pytest.mark.asyncio
async def test_repeated_tool_calling_replies_are_nudged():
    provider = ScriptedProvider([
        LLMResponse(content="let me check", tool_calls=[call("echo", f"c{i}", text="x")])
        for i in range(4)
    ])
    agent = make_agent(provider, max_steps=4)

    await agent.run("task")

    assert [nudged(provider, i) for i in range(4)] == [False, False, True, True]
    assert agent.memory.last().role == Role.TOOL


@pytest.mark.asyncio
async def test_required_tool_choice_without_calls_fails_the_run():
    provider = ScriptedProvider([LLMResponse(content="I refuse to use tools")])
    agent = make_agent(provider, tool_choice=ToolChoice.REQUIRED)

    transcript = await agent.run("task")

    assert transcript == "Agent execution failed: Tool call is required but no tools were called"
    assert agent.status is AgentStatus.ERROR
    assert agent.last_outcome is RunOutcome.ERROR

    with pytest.raises(InvalidStateError):
        await agent.run("again")

    await agent.cleanup()
    assert agent.status is AgentStatus.IDLE


@pytest.mark.asyncio
async def test_act_raises_when_required_and_no_calls():
    agent = make_agent(ScriptedProvider(), tool_choice="required")
    agent.tool_calls = []
    with pytest.raises(ToolCallRequiredError):
        await agent.act()


@pytest.mark.asyncio
async def test_tool_failures_become_observations():
    provider = ScriptedProvider([
        LLMResponse(
            content="",
            tool_calls=[
                call("explode", "c1"),
                call("missing", "c2"),
                call("terminate", "c3", status="failure"),
            ],
        ),
    ])
    agent = make_agent(provider, ExplodingTool(), TerminateTool())

    await agent.run("task")

    observations = [m.content for m in agent.memory if m.role == Role.TOOL]
    assert observations[0].startswith("Error: Tool 'explode' encountered a problem:")
    assert "boom" in observations[0]
    assert observations[1] == "Error: Unknown tool 'missing'"
    assert agent.last_outcome is RunOutcome.FINISHED


@pytest.mark.asyncio
async def test_observations_are_truncated_and_images_forwarded():
    provider = ScriptedProvider([
        LLMResponse(content="", tool_calls=[call("chatty", "c1")]),
    ])
    agent = make_agent(provider, ChattyTool(), max_observe=40, max_steps=1)

    await agent.run("task")

    tool_message = next(m for m in agent.memory if m.role == Role.TOOL)
    assert len(tool_message.content) == 40
    assert tool_message.name == "chatty"
    assert tool_message.base64_image == "aW1n"


@pytest.mark.asyncio
async def test_provider_error_is_recorded_and_step_continues():
    provider = ScriptedProvider([LLMAPIError("Ollama API error 500: Internal Server Error")])
    agent = make_agent(provider, max_steps=1)

    transcript = await agent.run("task")

    assert transcript.startswith("Step 1: Thinking complete - no action needed")
    assert agent.memory.last().content.startswith("Error encountered while processing: Ollama API error 500")


@pytest.mark.asyncio
async def test_tool_choice_none_ignores_tool_calls():
    provider = ScriptedProvider([
        LLMResponse(content="just text", tool_calls=[call("echo", "c1", text="nope")]),
    ])
    agent = make_agent(provider, tool_choice=ToolChoice.NONE, max_steps=1)

    transcript = await agent.run("task")

    assert transcript.startswith("Step 1: just text")
    assert not any(m.role == Role.TOOL for m in agent.memory)
    assert provider.calls[0]["tools"] is None


@pytest.mark.asyncio
async def test_system_and_next_step_prompts_are_sent():
    provider = ScriptedProvider([LLMResponse(content="ok")])
    agent = make_agent(
        provider,
        system_prompt="be brief",
        next_step_prompt="what next?",
        max_steps=1,
    )

    await agent.run("task")

    sent = provider.calls[0]["messages"]
    assert sent[0] == Message.system("be brief")
    assert [m.content for m in sent[1:]] == ["task", "what next?"]
    assert all(m.role != Role.SYSTEM for m in agent.memory)


@pytest.mark.asyncio
async def test_tracker_records_run_and_tool_events():
    tracker = ExecutionTracker()
    provider = ScriptedProvider([
        LLMResponse(content="", tool_calls=[call("echo", "c1", text="hi"), call("terminate", "c2", status="success")]),
    ])
    agent = make_agent(provider, tracker=tracker, session_id="s-1")

    await agent.run("task")

    events = tracker.events("s-1")
    assert [e.event_type for e in events] == [
        EventType.AGENT_START,
        EventType.TOOL_CALL,
        EventType.TOOL_CALL,
        EventType.AGENT_END,
    ]
    assert events[1].metadata == {"tool_name": "echo"}
    assert tracker.active_sessions() == {}


@pytest.mark.asyncio
async def test_cleanup_closes_tools():
    closed: list[bool] = []

    class Closable(ChattyTool):
        async def close(self):
            closed.append(True)

    agent = make_agent(ScriptedProvider(), Closable())
    await agent.cleanup()
    assert closed == [True]


@pytest.mark.asyncio
async def test_run_without_request_uses_existing_memory():
    memory = Memory([Message.system("persisted rules")])
    agent = make_agent(ScriptedProvider([LLMResponse(content="fine")]), memory=memory, max_steps=1)
    await agent.run()
    assert agent.memory is memory
    assert [m.content for m in memory] == ["persisted rules", "fine"]
