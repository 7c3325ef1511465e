"""ReAct agent that acts through registered tools."""

from collections.abc import Iterable

from agentloop.agent import ReActAgent
from agentloop.agent_tool_loop_mixin import AgentToolLoopMixin
from agentloop.exceptions import TokenLimitExceededError, ToolCallRequiredError
from agentloop.llm import Message, ToolCall, ToolChoice
from agentloop.logging import get_logger
from agentloop.tools.registry import ToolRegistry

log = get_logger(__name__)

TOKEN_RESET_NOTICE = "Context was reset due to token limits. Let me continue with a fresh start."


class ToolCallAgent(AgentToolLoopMixin, ReActAgent):
    """Think with the LLM, then run the tool calls it asked for."""

    def __init__(
        self,
        *args,
        tools: ToolRegistry | None = None,
        tool_choice: ToolChoice | str = ToolChoice.AUTO,
        special_tool_names: Iterable[str] | None = None,
        max_observe: int | None = 10000,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.tools = tools if tools is not None else ToolRegistry()
        self.tool_choice = ToolChoice(tool_choice)
        self.special_tool_names: set[str] = set(special_tool_names or ())
        self.max_observe = max_observe
        self.tool_calls: list[ToolCall] = []
        self.current_base64_image: str | None = None

    async def think(self) -> bool:
        """Ask the LLM for the next move and record it in memory."""
        try:
            if self.should_reset_context():
                self.reset_context()

            if self.next_step_prompt:
                self.memory.add(Message.user(self.next_step_prompt))

            system_messages = [Message.system(self.system_prompt)] if self.system_prompt else []
            response = await self.provider.ask_tool(
                self.memory.messages,
                system_messages=system_messages,
                tools=self.tools.get_definitions(),
                tool_choice=self.tool_choice,
            )

            self.tool_calls = list(response.tool_calls or [])
            content = response.content or ""

            log.info(
                "Agent thoughts",
                agent=self.name,
                content=content,
                tool_count=len(self.tool_calls),
                tools=[tc.name for tc in self.tool_calls],
            )

            if self.tool_choice == ToolChoice.NONE:
                if self.tool_calls:
                    log.warning("Model tried to use tools when they were not available", agent=self.name)
                    self.tool_calls = []
                if content:
                    self.memory.add(Message.assistant(content))
                    return True
                return False

            self.memory.add(Message.assistant(content, tool_calls=self.tool_calls))

            if self.tool_choice == ToolChoice.REQUIRED and not self.tool_calls:
                return True

            if self.tool_choice == ToolChoice.AUTO and not self.tool_calls:
                return bool(content)

            return bool(self.tool_calls)

        except TokenLimitExceededError as e:
            log.error("Token limit exceeded", agent=self.name, error=str(e))
            self.reset_context()
            self.tool_calls = []
            self.memory.add(Message.assistant(TOKEN_RESET_NOTICE))
            return True
        except Exception as e:
            log.error("Thinking failed", agent=self.name, error=str(e))
            self.tool_calls = []
            self.memory.add(Message.assistant(f"Error encountered while processing: {e}"))
            return False

    async def act(self) -> str:
        """Run pending tool calls in order and record their observations.

        Raises:
            ToolCallRequiredError: tool choice is REQUIRED and no call was made
        """
        if not self.tool_calls:
            if self.tool_choice == ToolChoice.REQUIRED:
                raise ToolCallRequiredError()
            last = self.memory.last()
            if last is not None and last.content:
                return last.content
            return "No content or commands to execute"

        observations: list[str] = []
        for index, call in enumerate(self.tool_calls):
            self.current_base64_image = None

            observation = await self._execute_tool(call)
            observation = self._clip_observation(observation, self.max_observe)

            name = getattr(call, "name", None)
            log.info("Tool completed", agent=self.name, tool=name, result=observation[:200])
            self.memory.add(Message.tool(
                observation,
                tool_call_id=getattr(call, "id", None) or f"call_{index}",
                name=name,
                base64_image=self.current_base64_image,
            ))
            observations.append(observation)

        return "\n\n".join(observations)

    async def cleanup(self) -> None:
        """Reset state and close every tool that holds resources."""
        await super().cleanup()
        log.info("Cleaning up agent resources", agent=self.name)
        await self.tools.close_all()
        log.info("Agent cleanup complete", agent=self.name)
