import json

import httpx
import pytest

from agentloop.exceptions import LLMAPIError, TokenLimitExceededError
from agentloop.llm import (
    OPENAI_BASE_URL,
    LLMProvider,
    LLMResponse,
    Message,
    OllamaProvider,
    OpenAICompatibleProvider,
    Role,
    ToolCall,
    ToolChoice,
    ToolDefinition,
    create_provider,
    pair_tool_messages,
)
from agentloop.memory import Memory


class RecordingProvider(LLMProvider):
    def __init__(self, content: str = "ok", **kwargs):
        super().__init__(**kwargs)
        self.content = content
        self.calls: list[dict] = []

    async def complete(self, messages, tools=None, tool_choice=ToolChoice.AUTO):
        self.calls.append({"messages": messages, "tools": tools, "tool_choice": tool_choice})
        return LLMResponse(content=self.content)


ECHO_DEF = ToolDefinition(
    name="echo",
    description="Echo text",
    parameters={"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
)


def test_create_provider_supports_ollama():
    provider = create_provider(
        provider="ollama",
        model="llama3.2",
        base_url="http://localhost:11434",
        max_input_tokens=1000,
    )
    assert isinstance(provider, OllamaProvider)
    assert provider.model == "llama3.2"
    assert provider.base_url == "http://localhost:11434"
    assert provider.max_input_tokens == 1000


def test_create_provider_supports_chatgpt_alias():
    provider = create_provider(provider="chatgpt", model="gpt-4o-mini", api_key="sk-test")
    assert isinstance(provider, OpenAICompatibleProvider)
    assert provider.base_url == OPENAI_BASE_URL
    assert provider._headers()["Authorization"] == "Bearer sk-test"


def test_create_provider_rejects_unknown_provider():
    with pytest.raises(ValueError, match="not supported"):
        create_provider(provider="carrier-pigeon")


def test_tool_message_requires_call_id():
    with pytest.raises(ValueError):
        Message(role=Role.TOOL, content="orphan")


@pytest.mark.asyncio
async def test_ask_tool_prepends_system_messages_and_counts_tokens():
    provider = RecordingProvider(content="x" * 40, max_input_tokens=1000)
    response = await provider.ask_tool(
        [Message.user("u" * 80)],
        system_messages=[Message.system("s" * 20)],
        tools=[ECHO_DEF],
    )

    assert response.content == "x" * 40
    sent = provider.calls[0]["messages"]
    assert [msg.role for msg in sent] == [Role.SYSTEM, Role.USER]
    assert provider.calls[0]["tools"] == [ECHO_DEF]
    assert provider.total_input_tokens == 25
    assert provider.total_completion_tokens == 10


@pytest.mark.asyncio
async def test_ask_tool_omits_tools_for_tool_choice_none():
    provider = RecordingProvider()
    await provider.ask_tool([Message.user("hi")], tools=[ECHO_DEF], tool_choice=ToolChoice.NONE)
    assert provider.calls[0]["tools"] is None


@pytest.mark.asyncio
async def test_ask_tool_raises_token_limit_before_calling_backend():
    provider = RecordingProvider(max_input_tokens=5)
    with pytest.raises(TokenLimitExceededError, match="Max: 5"):
        await provider.ask_tool([Message.user("a" * 400)])
    assert provider.calls == []


def test_should_reset_context_uses_watermark():
    provider = RecordingProvider(max_input_tokens=100, reset_threshold=0.5)
    provider.update_token_count(40, 0)
    assert provider.should_reset_context() is False
    provider.update_token_count(20, 0)
    assert provider.should_reset_context() is True
    provider.reset_token_count()
    assert provider.total_input_tokens == 0
    assert provider.should_reset_context() is False


@pytest.mark.asyncio
async def test_ollama_complete_parses_tool_calls():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "message": {
                "content": "",
                "tool_calls": [{"function": {"name": "echo", "arguments": {"text": "hi"}}}],
            },
            "prompt_eval_count": 7,
            "eval_count": 3,
        })

    provider = OllamaProvider(base_url="http://ollama.test")
    provider.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    try:
        response = await provider.complete([Message.user("say hi")], tools=[ECHO_DEF])
    finally:
        await provider.close()

    assert seen["url"] == "http://ollama.test/api/chat"
    assert seen["body"]["tools"][0]["function"]["name"] == "echo"
    assert response.tool_calls == [ToolCall(id="ollama_call_0", name="echo", arguments={"text": "hi"})]
    assert response.usage["total_tokens"] == 10


@pytest.mark.asyncio
async def test_openai_complete_sends_tool_choice_and_keeps_raw_arguments():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "model": "gpt-4o-mini",
            "choices": [{
                "message": {
                    "content": "calling",
                    "tool_calls": [{
                        "id": "call_abc",
                        "type": "function",
                        "function": {"name": "echo", "arguments": "{\"text\": \"hi\"}"},
                    }],
                },
            }],
            "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
        })

    provider = OpenAICompatibleProvider(base_url="http://openai.test/v1")
    provider.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    try:
        response = await provider.complete(
            [Message.user("say hi")],
            tools=[ECHO_DEF],
            tool_choice=ToolChoice.REQUIRED,
        )
    finally:
        await provider.close()

    assert seen["body"]["tool_choice"] == "required"
    assert response.content == "calling"
    assert response.tool_calls[0].id == "call_abc"
    assert response.tool_calls[0].arguments == "{\"text\": \"hi\"}"


@pytest.mark.asyncio
async def test_openai_payload_after_trim_has_no_orphan_tool_messages():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "next"}}]})

    memory = Memory([
        Message.user("list files"),
        Message.assistant("", tool_calls=[ToolCall(id="a", name="bash"), ToolCall(id="b", name="bash")]),
        Message.tool("one.txt", tool_call_id="a", name="bash"),
        Message.tool("two.txt", tool_call_id="b", name="bash"),
    ])
    memory.trim(keep_last=2)

    provider = OpenAICompatibleProvider(base_url="http://openai.test/v1")
    provider.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    try:
        await provider.complete(memory.messages)
    finally:
        await provider.close()

    sent = seen["body"]["messages"]
    assert [m["role"] for m in sent] == ["assistant", "assistant"]
    assert sent[0]["content"] == "[tool_context:bash] one.txt"
    assert all("tool_call_id" not in m for m in sent)


def test_pair_tool_messages_drops_unanswered_calls_and_keeps_matched_results():
    messages = [
        Message.user("go"),
        Message.assistant("working", tool_calls=[ToolCall(id="a", name="echo"), ToolCall(id="b", name="echo")]),
        Message.tool("done a", tool_call_id="a", name="echo"),
        Message.user("continue"),
        Message.tool("late b", tool_call_id="b", name="echo"),
    ]

    paired = pair_tool_messages(messages)

    assert [m.role for m in paired] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.USER, Role.ASSISTANT]
    assert [tc.id for tc in paired[1].tool_calls] == ["a"]
    assert paired[2] is messages[2]
    assert paired[4].content == "[tool_context:echo] late b"

    complete = [
        Message.assistant("", tool_calls=[ToolCall(id="x", name="echo")]),
        Message.tool("ok", tool_call_id="x", name="echo"),
    ]
    assert pair_tool_messages(complete) == complete


@pytest.mark.asyncio
async def test_http_errors_map_to_llm_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        if "overflow" in str(request.url):
            return httpx.Response(400, text="This model's maximum context length is 8192 tokens")
        return httpx.Response(500, text="Internal Server Error")

    overflow = OpenAICompatibleProvider(base_url="http://overflow.test/v1", max_input_tokens=8192)
    overflow.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    broken = OllamaProvider(base_url="http://broken.test")
    broken.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(TokenLimitExceededError):
            await overflow.complete([Message.user("hi")])
        with pytest.raises(LLMAPIError) as exc_info:
            await broken.complete([Message.user("hi")])
        assert exc_info.value.status_code == 500
    finally:
        await overflow.close()
        await broken.close()
