"""Agent execution state machine and the think/act step."""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from enum import Enum

from agentloop.exceptions import InvalidStateError, ToolCallRequiredError
from agentloop.execution_tracker import ExecutionStatus, ExecutionTracker
from agentloop.llm import LLMProvider, Message, Role
from agentloop.logging import get_logger, run_context
from agentloop.memory import Memory

log = get_logger(__name__)

STUCK_PROMPT = (
    "Observed duplicate responses. Consider new strategies and avoid repeating "
    "ineffective paths already attempted."
)


class AgentStatus(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    ERROR = "ERROR"


class RunOutcome(str, Enum):
    """Why the last run loop stopped."""

    COMPLETED = "completed"
    FINISHED = "finished"
    EXHAUSTED = "exhausted"
    TIMEOUT = "timeout"
    ERROR = "error"


_OUTCOME_STATUS = {
    RunOutcome.COMPLETED: ExecutionStatus.SUCCESS,
    RunOutcome.FINISHED: ExecutionStatus.SUCCESS,
    RunOutcome.EXHAUSTED: ExecutionStatus.SUCCESS,
    RunOutcome.TIMEOUT: ExecutionStatus.TIMEOUT,
}


class BaseAgent(ABC):
    """Bounded step loop over a single Memory.

    Status moves IDLE -> RUNNING -> FINISHED/ERROR. A normal exit returns to
    IDLE; after ERROR the agent stays put until `cleanup()`.
    """

    def __init__(
        self,
        name: str,
        provider: LLMProvider,
        memory: Memory | None = None,
        description: str = "",
        system_prompt: str | None = None,
        next_step_prompt: str | None = None,
        max_steps: int = 10,
        timeout_seconds: float = 30.0,
        test_max_steps: int = 3,
        test_timeout_seconds: float = 5.0,
        duplicate_threshold: int = 2,
        tracker: ExecutionTracker | None = None,
        session_id: str | None = None,
    ):
        """Initialize the agent.

        Args:
            name: Agent name used in logs and tracking
            provider: LLM provider; required
            memory: Conversation memory (a fresh one when omitted)
            max_steps: Step budget per run
            timeout_seconds: Wall-clock budget per run, checked between steps
            tracker: Optional execution tracker receiving run events
            session_id: Tracking key; generated when a tracker is given
        """
        if provider is None:
            raise ValueError("provider cannot be None; pass a configured LLMProvider")

        self.name = name
        self.description = description
        self.provider = provider
        self.memory = memory if memory is not None else Memory()
        self.system_prompt = system_prompt
        self.next_step_prompt = next_step_prompt

        self.status = AgentStatus.IDLE
        self.max_steps = max_steps
        self.current_step = 0
        self.timeout_seconds = timeout_seconds
        self.test_max_steps = test_max_steps
        self.test_timeout_seconds = test_timeout_seconds
        self.duplicate_threshold = duplicate_threshold
        self.test_mode = False
        self.last_outcome: RunOutcome | None = None

        self.tracker = tracker
        self.session_id = session_id or (uuid.uuid4().hex if tracker is not None else None)

    @property
    def effective_max_steps(self) -> int:
        if self.test_mode:
            return min(self.max_steps, self.test_max_steps)
        return self.max_steps

    @property
    def effective_timeout(self) -> float:
        return self.test_timeout_seconds if self.test_mode else self.timeout_seconds

    def enable_test_mode(self) -> None:
        self.test_mode = True
        log.debug("Test mode enabled", agent=self.name)

    def disable_test_mode(self) -> None:
        self.test_mode = False
        log.debug("Test mode disabled", agent=self.name)

    def update_memory(
        self,
        role: Role,
        content: str,
        base64_image: str | None = None,
        tool_call_id: str | None = None,
        name: str | None = None,
    ) -> None:
        """Append a message of the given role to memory."""
        if role == Role.USER:
            message = Message.user(content, base64_image=base64_image)
        elif role == Role.SYSTEM:
            message = Message.system(content)
        elif role == Role.ASSISTANT:
            message = Message.assistant(content)
        elif role == Role.TOOL:
            message = Message.tool(content, tool_call_id=tool_call_id or "", name=name, base64_image=base64_image)
        else:
            raise ValueError(f"Unsupported message role: {role}")
        self.memory.add(message)

    async def run(self, request: str | None = None) -> str:
        """Run the step loop until finished, exhausted or timed out.

        Returns:
            Newline-joined transcript of step results and termination markers

        Raises:
            InvalidStateError: the agent is not IDLE
        """
        if self.status != AgentStatus.IDLE:
            raise InvalidStateError(self.status.value)

        if request and request.strip():
            self.update_memory(Role.USER, request)

        if self.tracker is not None:
            self.tracker.start(self.session_id, self.name, input=request)

        with run_context(agent=self.name, session_id=self.session_id):
            return await self._run_steps()

    async def _run_steps(self) -> str:
        results: list[str] = []
        started = time.monotonic()
        timeout = self.effective_timeout
        max_steps = self.effective_max_steps
        outcome = RunOutcome.COMPLETED

        try:
            self.status = AgentStatus.RUNNING

            while self.current_step < max_steps and self.status != AgentStatus.FINISHED:
                if time.monotonic() - started > timeout:
                    label = int(timeout) if float(timeout).is_integer() else timeout
                    results.append(f"Terminated: Execution timeout after {label} seconds")
                    outcome = RunOutcome.TIMEOUT
                    break

                self.current_step += 1
                log.info("Executing step", agent=self.name, step=self.current_step, max_steps=max_steps)
                step_result = await self.step()

                if self.is_stuck():
                    self.handle_stuck_state()

                results.append(f"Step {self.current_step}: {step_result}")

            if self.status == AgentStatus.FINISHED:
                outcome = RunOutcome.FINISHED
            elif outcome != RunOutcome.TIMEOUT and 0 < max_steps <= self.current_step:
                results.append(f"Terminated: Reached max steps ({max_steps})")
                outcome = RunOutcome.EXHAUSTED

            self.current_step = 0
            self.status = AgentStatus.IDLE
        except asyncio.CancelledError:
            self.status = AgentStatus.ERROR
            self._record_outcome(RunOutcome.ERROR, "cancelled")
            raise
        except Exception as e:
            self.status = AgentStatus.ERROR
            log.error("Agent execution failed", agent=self.name, error=str(e), exc_info=True)
            self._record_outcome(RunOutcome.ERROR, str(e))
            return f"Agent execution failed: {e}"

        transcript = "\n".join(results) if results else "No steps executed"
        self._record_outcome(outcome, transcript)
        return transcript

    def _record_outcome(self, outcome: RunOutcome, detail: str) -> None:
        self.last_outcome = outcome
        if self.tracker is None:
            return
        if outcome == RunOutcome.ERROR:
            self.tracker.record_error(self.session_id, self.name, detail)
        else:
            self.tracker.end(self.session_id, self.name, output=detail, status=_OUTCOME_STATUS[outcome])

    @abstractmethod
    async def step(self) -> str:
        """Execute a single step and describe what happened."""

    def is_stuck(self) -> bool:
        """Whether the newest assistant reply repeats earlier ones.

        Assistant messages byte-identical to the newest assistant message are
        counted, the newest included. Tool messages appended after it do not
        hide it. The agent is stuck once the count reaches
        `duplicate_threshold`.
        """
        repeats = self.memory.count_repeated_assistant()
        return repeats > 0 and repeats >= self.duplicate_threshold

    def handle_stuck_state(self) -> None:
        """Prefix the next-step prompt with a change-of-strategy nudge."""
        if self.next_step_prompt and self.next_step_prompt.startswith(STUCK_PROMPT):
            return
        self.next_step_prompt = f"{STUCK_PROMPT}\n{self.next_step_prompt or ''}"
        log.warning("Agent detected stuck state", agent=self.name)

    def should_reset_context(self) -> bool:
        return self.provider.should_reset_context()

    def reset_context(self) -> None:
        """Trim memory to system messages plus the last two others."""
        self.provider.reset_token_count()
        before = len(self.memory)
        dropped = self.memory.trim(keep_last=2)
        log.info("Context reset", kept=before - dropped, total=before)

    async def cleanup(self) -> None:
        """Return to IDLE so the agent can run again."""
        self.status = AgentStatus.IDLE
        self.current_step = 0


class ReActAgent(BaseAgent):
    """Agent whose step is think, then act when thinking asks for it."""

    @abstractmethod
    async def think(self) -> bool:
        """Decide the next action; True when act() should run."""

    @abstractmethod
    async def act(self) -> str:
        """Carry out the decided action."""

    async def step(self) -> str:
        try:
            should_act = await self.think()
            if not should_act:
                return "Thinking complete - no action needed"
            return await self.act()
        except ToolCallRequiredError:
            raise
        except Exception as e:
            log.error("Step failed", agent=self.name, step=self.current_step, error=str(e))
            return f"Error during step execution: {e}"
