"""Persistent interactive shell session and the bash tool built on it."""

import asyncio
import os
import re
import shlex
import signal
from dataclasses import dataclass
from typing import Any

from agentloop.config import ShellToolConfig
from agentloop.exceptions import TimedOutError, ToolError
from agentloop.logging import get_logger
from agentloop.tools.registry import Tool, ToolResult

log = get_logger(__name__)

INTERRUPT_COMMAND = "ctrl+c"
STREAM_LIMIT = 8 * 1024 * 1024
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time", "env"}
_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")


def _split_shell_segments(command: str) -> list[list[str]]:
    """Split a command into token lists separated by control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    segments: list[list[str]] = []
    current: list[str] = []
    for token in lexer:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _base_command(tokens: list[str]) -> str:
    for token in tokens:
        if token in _SHELL_WRAPPER_TOKENS or _ASSIGNMENT_RE.match(token):
            continue
        return token.rsplit("/", 1)[-1]
    return ""


def find_blocked_pattern(command: str, blocked_patterns: list[str]) -> str | None:
    """Return the first blocked pattern the command matches, if any.

    Single-word patterns match executable names; anything else matches the
    whitespace-normalized command text.
    """
    normalized = " ".join(command.split())
    try:
        segments = _split_shell_segments(command)
    except ValueError:
        segments = []
    base_commands = {_base_command(segment) for segment in segments}

    for raw_pattern in blocked_patterns or []:
        pattern = " ".join(str(raw_pattern or "").split())
        if not pattern:
            continue
        if re.fullmatch(r"[\w.-]+", pattern):
            if pattern in base_commands:
                return pattern
        elif pattern in normalized:
            return pattern
    return None


@dataclass
class CLIResult:
    """Output of one shell interaction."""

    output: str = ""
    error: str = ""
    system: str = ""
    exit_code: int = 0
    success: bool = True


class ShellSession:
    """One long-lived shell process driven through stdin/stdout.

    Each command is followed by `echo '<sentinel>'`; the reader collects
    output lines until the sentinel line shows up or the deadline passes.
    A session that timed out refuses further commands until `restart()`.
    """

    def __init__(
        self,
        shell: str = "/bin/bash",
        timeout: float = 120.0,
        output_delay: float = 0.2,
        sentinel: str = "<<exit>>",
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ):
        self.shell = shell
        self.timeout = float(timeout)
        self.output_delay = float(output_delay)
        self.sentinel = sentinel
        self.env = env
        self.cwd = cwd
        self.started = False
        self.timed_out = False
        self._process: asyncio.subprocess.Process | None = None
        self._stdout_queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._stderr_queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._pump_tasks: list[asyncio.Task[None]] = []

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def max_polls(self) -> int:
        return max(1, int(self.timeout / self.output_delay)) if self.output_delay > 0 else 1

    async def start(self) -> None:
        """Spawn the shell process; no-op when already started."""
        if self.started:
            return

        env = dict(os.environ if self.env is None else self.env)
        env["TERM"] = "xterm"
        self._stdout_queue = asyncio.Queue()
        self._stderr_queue = asyncio.Queue()
        self._process = await asyncio.create_subprocess_exec(
            self.shell,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=self.cwd,
            start_new_session=True,
            limit=STREAM_LIMIT,
        )
        self._pump_tasks = [
            asyncio.create_task(self._pump(self._process.stdout, self._stdout_queue)),
            asyncio.create_task(self._pump(self._process.stderr, self._stderr_queue)),
        ]
        self.started = True
        log.info("Shell session started", shell=self.shell, pid=self._process.pid)

    @staticmethod
    async def _pump(stream: asyncio.StreamReader | None, queue: asyncio.Queue[str | None]) -> None:
        """Forward lines from a process stream into a queue; None marks EOF."""
        if stream is None:
            await queue.put(None)
            return
        try:
            while True:
                raw = await stream.readline()
                if not raw:
                    break
                await queue.put(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        finally:
            await queue.put(None)

    async def run(self, command: str | None) -> CLIResult:
        """Send one command (or poll/interrupt) and collect its output.

        Raises:
            TimedOutError: the session timed out now or on an earlier command
        """
        if self.timed_out:
            raise TimedOutError(self.timeout)

        if not self.started:
            await self.start()

        if not self.is_alive:
            returncode = self._process.returncode if self._process is not None else "unknown"
            return CLIResult(
                error=f"bash has exited with returncode {returncode}",
                system="tool must be restarted",
                exit_code=-1,
                success=False,
            )

        cleaned = (command or "").strip()
        if cleaned.lower() == INTERRUPT_COMMAND:
            await self._interrupt()
            return CLIResult(output="Process interrupted.")

        if not cleaned:
            return await self._read_output(wait_for_sentinel=False, max_polls=1)

        assert self._process is not None and self._process.stdin is not None
        log.debug("Writing shell command", command=cleaned)
        # `cmd &; echo` is a syntax error, so a trailing & or ; is the separator.
        separator = " " if cleaned.endswith(("&", ";")) and not cleaned.endswith("&&") else "; "
        self._process.stdin.write(f"{cleaned}{separator}echo '{self.sentinel}'\n".encode("utf-8"))
        await self._process.stdin.drain()

        try:
            return await asyncio.wait_for(
                self._read_output(wait_for_sentinel=True, max_polls=self.max_polls),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            self.timed_out = True
            log.warning("Shell command timed out", command=cleaned, timeout=self.timeout)
            raise TimedOutError(self.timeout)

    def _drain_stdout(self, lines: list[str]) -> bool:
        """Move buffered stdout lines into `lines`; True once the sentinel is seen."""
        while True:
            try:
                line = self._stdout_queue.get_nowait()
            except asyncio.QueueEmpty:
                return False
            if line is None:
                return False
            if line == self.sentinel:
                return True
            if line.endswith(self.sentinel):
                # Output without a trailing newline shares the sentinel's line.
                lines.append(line[: -len(self.sentinel)])
                return True
            lines.append(line)

    def _drain_stderr(self, lines: list[str]) -> None:
        while True:
            try:
                line = self._stderr_queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            if line is None:
                return
            lines.append(line)

    async def _read_output(self, wait_for_sentinel: bool, max_polls: int) -> CLIResult:
        output: list[str] = []
        error: list[str] = []
        found = False
        for _ in range(max_polls):
            await asyncio.sleep(self.output_delay)
            found = self._drain_stdout(output)
            self._drain_stderr(error)
            if found or not wait_for_sentinel:
                break
            if not self.is_alive:
                found = self._drain_stdout(output)
                self._drain_stderr(error)
                break

        system = ""
        if wait_for_sentinel and not found:
            system = "command still running; send an empty command to fetch more output"
        return CLIResult(
            output="\n".join(output),
            error="\n".join(error),
            system=system,
            exit_code=0 if found or not wait_for_sentinel else -1,
        )

    def _signal_group(self, sig: int) -> None:
        if self._process is None or self._process.returncode is not None:
            return
        try:
            os.killpg(self._process.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass
        except AttributeError:
            self._process.send_signal(sig)

    async def _wait_exit(self, timeout: float) -> bool:
        if self._process is None:
            return True
        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _interrupt(self) -> None:
        """Interrupt the running process group, destroying it if it lingers."""
        log.info("Interrupting shell session", pid=self.pid)
        self._signal_group(signal.SIGINT)
        if not await self._wait_exit(max(self.output_delay * 5, 0.5)):
            self._signal_group(signal.SIGKILL)
            await self._wait_exit(2.0)

    async def stop(self) -> None:
        """Terminate the shell process."""
        if not self.started:
            raise ToolError("Session has not started.")
        if self.is_alive:
            self._signal_group(signal.SIGTERM)
            if not await self._wait_exit(2.0):
                self._signal_group(signal.SIGKILL)
                await self._wait_exit(2.0)

    async def close(self) -> None:
        """Destroy the shell process and release its resources. Idempotent."""
        process = self._process
        if process is not None and process.returncode is None:
            self._signal_group(signal.SIGKILL)
            await self._wait_exit(2.0)
        if process is not None and process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        for task in self._pump_tasks:
            if not task.done():
                task.cancel()
        if self._pump_tasks:
            await asyncio.gather(*self._pump_tasks, return_exceptions=True)
        self._pump_tasks = []
        if process is not None:
            log.info("Shell session closed", pid=process.pid)
        self._process = None
        self.started = False

    async def restart(self) -> None:
        """Replace the shell with a fresh process and clear the timeout flag."""
        await self.close()
        self.timed_out = False
        await self.start()


class BashTool(Tool):
    """Execute commands in a persistent bash session."""

    name = "bash"
    description = (
        "Execute a bash command in the terminal.\n"
        "* Long running commands: For commands that may run indefinitely, run them in the "
        "background and redirect output to a file, e.g. command = `python3 app.py > server.log 2>&1 &`.\n"
        "* Interactive: If a command is still running, send a second call with an empty `command` "
        "to retrieve additional output, or send command=`ctrl+c` to interrupt the process.\n"
        "* Timeout: If a command times out, restart the tool with `restart: true` and retry the "
        "command in the background."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The bash command to execute. Empty to fetch more output, `ctrl+c` to interrupt.",
            },
            "restart": {
                "type": "boolean",
                "description": "Restart the shell session before doing anything else.",
            },
        },
        "required": ["command"],
    }

    def __init__(self, config: ShellToolConfig | None = None, session: ShellSession | None = None):
        self.config = config or ShellToolConfig()
        self.session = session or ShellSession(
            shell=self.config.shell,
            timeout=self.config.timeout,
            output_delay=self.config.output_delay,
            sentinel=self.config.sentinel,
        )
        # The session enforces its own deadline; this only guards a wedged read.
        self.timeout_seconds = self.session.timeout + 10.0

    async def execute(self, command: str | None = None, restart: bool = False, **kwargs: Any) -> ToolResult:
        """Run a command in the session.

        Raises:
            TimedOutError: the command (or an earlier one) exceeded the deadline
        """
        if restart:
            await self.session.restart()
            if not (command or "").strip():
                return ToolResult(content="tool has been restarted.")

        cleaned = (command or "").strip()
        if cleaned and cleaned.lower() != INTERRUPT_COMMAND:
            matched = find_blocked_pattern(cleaned, self.config.blocked)
            if matched:
                log.warning("Blocked unsafe command", command=cleaned, pattern=matched)
                return ToolResult(success=False, error=f"Command blocked: matches pattern '{matched}'")

        result = await self.session.run(command)

        parts = [result.output] if result.output else []
        if result.error:
            parts.append(f"[stderr] {result.error}")
        if result.system:
            parts.append(f"[system] {result.system}")
        content = "\n".join(parts)

        if not result.success:
            detail = "; ".join(part for part in (result.error, result.system) if part)
            return ToolResult(success=False, content=content, error=detail)
        return ToolResult(content=content)

    async def close(self) -> None:
        await self.session.close()
