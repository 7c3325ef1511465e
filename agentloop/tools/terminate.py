"""Completion tool that ends an agent run."""

from typing import Any

from agentloop.logging import get_logger
from agentloop.tools.registry import Tool, ToolResult

log = get_logger(__name__)


class TerminateTool(Tool):
    """Signal that the task is done (or cannot proceed)."""

    name = "terminate"
    description = (
        "Terminate the interaction when the request is met OR if the assistant cannot proceed "
        "further with the task.\nWhen you have finished all the tasks, call this tool to end the work."
    )
    parameters = {
        "type": "object",
        "properties": {
            "status": {
                "type": "string",
                "description": "The finish status of the interaction.",
                "enum": ["success", "failure"],
            },
        },
        "required": ["status"],
    }

    async def execute(self, status: str | None = None, **kwargs: Any) -> ToolResult:
        log.info("Terminating interaction", status=status)
        return ToolResult(content=f"The interaction has been completed with status: {status}")
