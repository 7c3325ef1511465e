"""Tool dispatch helpers for ToolCallAgent."""

import time

from agentloop.agent import AgentStatus
from agentloop.llm import ToolCall
from agentloop.logging import get_logger

log = get_logger(__name__)


class AgentToolLoopMixin:
    """Turn tool calls into observation strings and track special tools."""

    @staticmethod
    def _clip_observation(observation: str, max_chars: int | None) -> str:
        """Cut an observation down to `max_chars` characters (no-op when unset)."""
        if max_chars is None or max_chars <= 0 or len(observation) <= max_chars:
            return observation
        return observation[:max_chars]

    def _is_special_tool(self, name: str) -> bool:
        target = (name or "").strip().lower()
        return any(target == special.lower() for special in self.special_tool_names)

    def _handle_special_tool(self, name: str) -> None:
        """Finish the run when a special tool has run successfully."""
        if not self._is_special_tool(name):
            return
        log.info("Special tool finished the task", agent=self.name, tool=name)
        self.status = AgentStatus.FINISHED

    def _track_tool_call(
        self,
        call: ToolCall,
        output: str,
        success: bool,
        error: str | None,
        started: float,
    ) -> None:
        if self.tracker is None:
            return
        self.tracker.record_tool_call(
            self.session_id,
            self.name,
            call.name,
            input=call.arguments,
            output=output,
            success=success,
            error=error,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def _execute_tool(self, call: ToolCall | None) -> str:
        """Dispatch one call through the registry and describe the outcome.

        Never raises; every failure becomes an `Error: ...` observation.
        """
        if call is None or not getattr(call, "name", None):
            return "Error: Invalid command format"

        name = call.name
        if not self.tools.has_tool(name):
            return f"Error: Unknown tool '{name}'"

        started = time.monotonic()
        try:
            log.info("Activating tool", agent=self.name, tool=name, call_id=call.id)
            result = await self.tools.execute(name, call.arguments, call_id=call.id)
        except Exception as e:
            observation = f"Error: Tool '{name}' encountered a problem: {e}"
            log.error("Tool failed", agent=self.name, tool=name, error=str(e))
            self._track_tool_call(call, observation, False, str(e), started)
            return observation

        if result.base64_image:
            self.current_base64_image = result.base64_image

        if not result.success:
            observation = f"Error: Tool '{name}' encountered a problem: {result.error}"
            self._track_tool_call(call, observation, False, result.error, started)
            return observation

        self._handle_special_tool(name)

        if result.content:
            observation = f"Observed output of cmd `{name}` executed:\n{result.content}"
        else:
            observation = f"Cmd `{name}` completed with no output"
        self._track_tool_call(call, observation, True, None, started)
        return observation
