"""Custom exceptions for agentloop."""


class AgentLoopError(Exception):
    """Base exception for agentloop."""

    pass


class ConfigurationError(AgentLoopError):
    """Configuration-related errors."""

    pass


class LLMError(AgentLoopError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TokenLimitExceededError(LLMError):
    """Request would exceed the provider input token budget."""

    def __init__(self, current_tokens: int, needed_tokens: int, max_tokens: int):
        super().__init__(
            "Request may exceed input token limit "
            f"(Current: {current_tokens}, Needed: {needed_tokens}, Max: {max_tokens})"
        )
        self.current_tokens = current_tokens
        self.needed_tokens = needed_tokens
        self.max_tokens = max_tokens


class AgentError(AgentLoopError):
    """Agent lifecycle errors."""

    pass


class InvalidStateError(AgentError):
    """Agent operation invoked from a state that does not allow it."""

    def __init__(self, state: str):
        super().__init__(f"Cannot run agent from state: {state}")
        self.state = state


class ToolCallRequiredError(AgentError):
    """Tool choice is REQUIRED but the model returned no tool calls."""

    def __init__(self):
        super().__init__("Tool call is required but no tools were called")


class ToolError(AgentLoopError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class UnknownCapabilityError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class TimedOutError(ToolError):
    """Shell session did not return within its deadline."""

    def __init__(self, timeout: float):
        label = int(timeout) if float(timeout).is_integer() else timeout
        super().__init__(
            f"timed out: bash has not returned in {label} seconds and must be restarted"
        )
        self.timeout = timeout


class SessionError(AgentLoopError):
    """Execution-tracking session errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id
