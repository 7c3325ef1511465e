"""LLM message model and providers (direct HTTP calls via httpx)."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

import httpx

from agentloop.exceptions import LLMAPIError, LLMError, TokenLimitExceededError
from agentloop.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"
OPENAI_BASE_URL = "https://api.openai.com/v1"

_CONTEXT_OVERFLOW_MARKERS = (
    "context_length_exceeded",
    "maximum context length",
    "context window",
    "too many tokens",
)


class Role(str, Enum):
    """Conversation roles."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolChoice(str, Enum):
    """How the model may use tools on a turn."""

    NONE = "none"
    AUTO = "auto"
    REQUIRED = "required"


@dataclass(frozen=True)
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any] | str = field(default_factory=dict)

    def arguments_json(self) -> str:
        """Arguments as a JSON string (raw strings pass through)."""
        if isinstance(self.arguments, str):
            return self.arguments
        return json.dumps(self.arguments, ensure_ascii=False)


@dataclass(frozen=True)
class Message:
    """A message in the conversation."""

    role: Role
    content: str = ""
    base64_image: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        if self.role == Role.TOOL and not self.tool_call_id:
            raise ValueError("Tool messages require a tool_call_id")

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str, base64_image: str | None = None) -> "Message":
        return cls(role=Role.USER, content=content, base64_image=base64_image)

    @classmethod
    def assistant(cls, content: str, tool_calls: list[ToolCall] | None = None) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tuple(tool_calls or ()))

    @classmethod
    def tool(
        cls,
        content: str,
        tool_call_id: str,
        name: str | None = None,
        base64_image: str | None = None,
    ) -> "Message":
        return cls(
            role=Role.TOOL,
            content=content,
            tool_call_id=tool_call_id,
            name=name,
            base64_image=base64_image,
        )


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


def _definition_fields(tool: ToolDefinition | dict[str, Any]) -> tuple[str, str, dict[str, Any]]:
    """Read name/description/parameters from a ToolDefinition or dict."""
    if isinstance(tool, dict):
        return (
            str(tool.get("name") or ""),
            str(tool.get("description") or ""),
            tool.get("parameters") or {},
        )
    return tool.name, tool.description or "", tool.parameters or {}


def convert_tools(tools: list[ToolDefinition | dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert tool definitions to OpenAI function-calling format."""
    result = []
    for tool in tools:
        name, description, parameters = _definition_fields(tool)
        if name:
            result.append({
                "type": "function",
                "function": {
                    "name": name,
                    "description": description,
                    "parameters": parameters,
                },
            })
    return result


def pair_tool_messages(messages: list[Message]) -> list[Message]:
    """Line tool results up with the assistant calls that requested them.

    Trimming can drop the assistant message that asked for a tool, or the
    tool message answering a call. OpenAI-style backends reject both, so a
    tool message with no pending call becomes assistant context and calls
    left unanswered are removed from their assistant message.
    """
    paired: list[Message] = []
    pending: set[str] = set()
    pending_idx: int | None = None

    def _settle_pending() -> None:
        nonlocal pending, pending_idx
        if pending and pending_idx is not None:
            owner = paired[pending_idx]
            answered = tuple(tc for tc in owner.tool_calls if tc.id not in pending)
            paired[pending_idx] = replace(owner, tool_calls=answered)
        pending = set()
        pending_idx = None

    for msg in messages:
        if msg.role == Role.TOOL:
            if msg.tool_call_id in pending:
                pending.discard(msg.tool_call_id)
                paired.append(msg)
                continue
            _settle_pending()
            label = msg.name or "tool"
            paired.append(Message.assistant(f"[tool_context:{label}] {msg.content}".strip()))
            continue

        _settle_pending()
        paired.append(msg)
        if msg.role == Role.ASSISTANT and msg.tool_calls:
            pending = {tc.id for tc in msg.tool_calls}
            pending_idx = len(paired) - 1

    _settle_pending()
    return paired


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    Subclasses implement `complete`; `ask_tool` layers system messages, input
    token accounting and the token-limit check on top of it.
    """

    max_input_tokens: int | None = None
    reset_threshold: float = 0.8
    total_input_tokens: int = 0
    total_completion_tokens: int = 0

    def __init__(
        self,
        max_input_tokens: int | None = None,
        reset_threshold: float = 0.8,
    ):
        self.max_input_tokens = max_input_tokens
        self.reset_threshold = reset_threshold
        self.total_input_tokens = 0
        self.total_completion_tokens = 0

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        tool_choice: ToolChoice = ToolChoice.AUTO,
    ) -> LLMResponse:
        pass

    def count_tokens(self, text: str) -> int:
        """Rough estimate: ~1 token per 4 characters."""
        return len(text or "") // 4

    def estimate_message_tokens(self, messages: list[Message]) -> int:
        return sum(self.count_tokens(msg.content) for msg in messages)

    def check_token_limit(self, input_tokens: int) -> None:
        """Raise TokenLimitExceededError when a request cannot fit."""
        if self.max_input_tokens is None:
            return
        if input_tokens > self.max_input_tokens:
            raise TokenLimitExceededError(
                self.total_input_tokens,
                input_tokens,
                self.max_input_tokens,
            )

    def update_token_count(self, input_tokens: int, completion_tokens: int) -> None:
        self.total_input_tokens += input_tokens
        self.total_completion_tokens += completion_tokens
        log.debug(
            "Token usage",
            input=input_tokens,
            completion=completion_tokens,
            cumulative_input=self.total_input_tokens,
            cumulative_completion=self.total_completion_tokens,
        )

    def reset_token_count(self) -> None:
        self.total_input_tokens = 0
        self.total_completion_tokens = 0
        log.info("Token counters reset")

    def should_reset_context(self) -> bool:
        """Whether cumulative input usage crossed the reset watermark."""
        if self.max_input_tokens is None:
            return False
        return self.total_input_tokens > self.max_input_tokens * self.reset_threshold

    async def ask_tool(
        self,
        messages: list[Message],
        system_messages: list[Message] | None = None,
        tools: list[ToolDefinition] | None = None,
        tool_choice: ToolChoice = ToolChoice.AUTO,
    ) -> LLMResponse:
        """Ask the model for a decision, optionally with tools.

        Raises:
            TokenLimitExceededError: request does not fit the input budget
            LLMError: any other provider failure
        """
        full_messages = list(system_messages or []) + list(messages)
        input_tokens = self.estimate_message_tokens(full_messages)
        self.check_token_limit(input_tokens)

        response = await self.complete(
            full_messages,
            tools=tools if tools and tool_choice != ToolChoice.NONE else None,
            tool_choice=tool_choice,
        )
        if response is None:
            raise LLMError("No response received from the LLM")

        self.update_token_count(input_tokens, self.count_tokens(response.content))
        return response

    async def close(self) -> None:
        return None


class _HTTPProvider(LLMProvider):
    """Shared httpx plumbing for HTTP chat backends."""

    def __init__(
        self,
        model: str,
        base_url: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        max_input_tokens: int | None = None,
        reset_threshold: float = 0.8,
        request_timeout: float = 120.0,
    ):
        super().__init__(max_input_tokens=max_input_tokens, reset_threshold=reset_threshold)
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key

        self.client = httpx.AsyncClient(
            timeout=request_timeout,
            follow_redirects=True,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _raise_for_response(self, response: httpx.Response, label: str) -> None:
        if response.is_success:
            return
        error_text = response.text
        lowered = error_text.lower()
        if any(marker in lowered for marker in _CONTEXT_OVERFLOW_MARKERS):
            raise TokenLimitExceededError(
                self.total_input_tokens,
                0,
                self.max_input_tokens or 0,
            )
        raise LLMAPIError(
            f"{label} API error {response.status_code}: {error_text}",
            status_code=response.status_code,
        )

    async def _post(self, url: str, body: dict[str, Any], label: str) -> dict[str, Any]:
        try:
            log.debug("Calling LLM", provider=label, model=self.model, url=url)
            response = await self.client.post(url, json=body, headers=self._headers())
            log.debug("LLM response status", provider=label, status=response.status_code)
            self._raise_for_response(response, label)
            return response.json()
        except (LLMAPIError, TokenLimitExceededError):
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"{label} HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise LLMError(f"{label} response decode error: {e}")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


class OllamaProvider(_HTTPProvider):
    """Direct Ollama API provider."""

    def __init__(self, model: str = "llama3.2", base_url: str = OLLAMA_NATIVE_BASE_URL, **kwargs: Any):
        super().__init__(model=model, base_url=base_url, **kwargs)

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role.value, "content": msg.content or ""}
            if msg.base64_image:
                entry["images"] = [msg.base64_image]
            if msg.role == Role.ASSISTANT and msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "function": {
                            "name": tc.name,
                            "arguments": tc.arguments if isinstance(tc.arguments, dict) else {},
                        }
                    }
                    for tc in msg.tool_calls
                ]
            if msg.role == Role.TOOL and msg.name:
                entry["tool_name"] = msg.name
            result.append(entry)
        return result

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        tool_choice: ToolChoice = ToolChoice.AUTO,
    ) -> LLMResponse:
        """Generate a completion."""
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": False,
            "options": {
                "num_ctx": 65536,
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }
        # Ollama has no tool_choice; NONE is honored by omitting tools.
        if tools:
            body["tools"] = convert_tools(tools)

        data = await self._post(f"{self.base_url}/api/chat", body, "Ollama")
        message = data.get("message", {}) or {}

        tool_calls = []
        for idx, tc in enumerate(message.get("tool_calls") or []):
            function = tc.get("function", {}) or {}
            tool_calls.append(ToolCall(
                id=str(tc.get("id") or f"ollama_call_{idx}"),
                name=function.get("name", ""),
                arguments=function.get("arguments", {}),
            ))

        prompt_tokens = int(data.get("prompt_eval_count", 0) or 0)
        completion_tokens = int(data.get("eval_count", 0) or 0)
        return LLMResponse(
            content=message.get("content", "") or "",
            tool_calls=tool_calls,
            model=self.model,
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        )


class OpenAICompatibleProvider(_HTTPProvider):
    """Provider for OpenAI-style `/chat/completions` endpoints."""

    def __init__(self, model: str = "gpt-4o-mini", base_url: str = OPENAI_BASE_URL, **kwargs: Any):
        super().__init__(model=model, base_url=base_url, **kwargs)

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        result = []
        for msg in pair_tool_messages(messages):
            entry: dict[str, Any] = {"role": msg.role.value}
            if msg.base64_image and msg.role == Role.USER:
                entry["content"] = [
                    {"type": "text", "text": msg.content or ""},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:image/png;base64,{msg.base64_image}"},
                    },
                ]
            else:
                entry["content"] = msg.content or ""
            if msg.role == Role.ASSISTANT and msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": tc.arguments_json()},
                    }
                    for tc in msg.tool_calls
                ]
            if msg.role == Role.TOOL:
                entry["tool_call_id"] = msg.tool_call_id
            result.append(entry)
        return result

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        tool_choice: ToolChoice = ToolChoice.AUTO,
    ) -> LLMResponse:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if tools:
            body["tools"] = convert_tools(tools)
            body["tool_choice"] = tool_choice.value

        data = await self._post(f"{self.base_url}/chat/completions", body, "OpenAI")
        choices = data.get("choices") or []
        if not choices:
            raise LLMError("OpenAI response contained no choices")
        message = choices[0].get("message", {}) or {}

        tool_calls = [
            ToolCall(
                id=str(tc.get("id") or f"call_{idx}"),
                name=(tc.get("function") or {}).get("name", ""),
                arguments=(tc.get("function") or {}).get("arguments") or "{}",
            )
            for idx, tc in enumerate(message.get("tool_calls") or [])
        ]
        usage = data.get("usage") or {}
        return LLMResponse(
            content=message.get("content") or "",
            tool_calls=tool_calls,
            model=str(data.get("model") or self.model),
            usage={key: int(value) for key, value in usage.items() if isinstance(value, int)},
        )


def create_provider(
    provider: str = "ollama",
    model: str = "llama3.2",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    max_input_tokens: int | None = None,
    reset_threshold: float = 0.8,
    request_timeout: float = 120.0,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (ollama, openai)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Max tokens to generate
        max_input_tokens: Input budget used for the token-limit check
        reset_threshold: Fraction of the input budget that triggers context reset

    Returns:
        Configured LLMProvider instance
    """
    key = (provider or "").strip().lower()
    common: dict[str, Any] = {
        "model": model,
        "temperature": temperature,
        "max_tokens": max_tokens,
        "api_key": api_key,
        "max_input_tokens": max_input_tokens,
        "reset_threshold": reset_threshold,
        "request_timeout": request_timeout,
    }
    if key == "ollama":
        return OllamaProvider(base_url=base_url or OLLAMA_NATIVE_BASE_URL, **common)
    if key in {"openai", "chatgpt", "openai_compatible"}:
        return OpenAICompatibleProvider(base_url=base_url or OPENAI_BASE_URL, **common)
    raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or 'openai'.")
