"""Command-line entry point and composition root for agentloop."""

import asyncio
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from agentloop import __version__
from agentloop.config import Config
from agentloop.execution_tracker import ExecutionTracker
from agentloop.llm import LLMProvider, create_provider
from agentloop.logging import configure_logging, get_logger
from agentloop.memory import Memory
from agentloop.toolcall_agent import ToolCallAgent
from agentloop.tools import BashTool, StrReplaceEditorTool, TerminateTool, ToolRegistry

log = get_logger(__name__)

app = typer.Typer(help="agentloop - bounded think/act agent over a persistent shell")
console = Console()


def build_registry(config: Config) -> ToolRegistry:
    """Register the built-in tools enabled in config."""
    enabled = {name.strip().lower() for name in config.tools.enabled}
    registry = ToolRegistry()
    if "bash" in enabled:
        registry.register(BashTool(config.tools.shell))
    if "str_replace_editor" in enabled:
        registry.register(StrReplaceEditorTool(config.tools.editor))
    if "terminate" in enabled:
        registry.register(TerminateTool())
    return registry


def build_provider(config: Config) -> LLMProvider:
    model = config.model
    return create_provider(
        provider=model.provider,
        model=model.model,
        api_key=model.api_key or None,
        base_url=model.base_url or None,
        temperature=model.temperature,
        max_tokens=model.max_tokens,
        max_input_tokens=model.max_input_tokens,
        reset_threshold=model.reset_threshold,
        request_timeout=model.request_timeout,
    )


def build_agent(
    config: Config,
    provider: LLMProvider | None = None,
    tracker: ExecutionTracker | None = None,
    registry: ToolRegistry | None = None,
) -> ToolCallAgent:
    """Wire config, provider, tools and tracker into a ready agent."""
    agent_cfg = config.agent
    if tracker is None and config.tracking.enabled:
        tracker = ExecutionTracker(max_sessions=config.tracking.max_sessions)

    agent = ToolCallAgent(
        name=agent_cfg.name,
        provider=provider or build_provider(config),
        memory=Memory(max_messages=agent_cfg.memory_max_messages),
        system_prompt=agent_cfg.system_prompt or None,
        next_step_prompt=agent_cfg.next_step_prompt or None,
        max_steps=agent_cfg.max_steps,
        timeout_seconds=agent_cfg.timeout_seconds,
        test_max_steps=agent_cfg.test_max_steps,
        test_timeout_seconds=agent_cfg.test_timeout_seconds,
        duplicate_threshold=agent_cfg.duplicate_threshold,
        tracker=tracker,
        tools=registry if registry is not None else build_registry(config),
        tool_choice=agent_cfg.tool_choice,
        special_tool_names=agent_cfg.special_tools,
        max_observe=agent_cfg.max_observe,
    )
    log.debug(
        "Agent built",
        agent=agent.name,
        tools=agent.tools.list_tools(),
        provider=config.model.provider,
        model=config.model.model,
    )
    return agent


async def run_task(agent: ToolCallAgent, task: str) -> str:
    """Run one task, then release tools and the provider client."""
    try:
        return await agent.run(task)
    finally:
        await agent.cleanup()
        await agent.provider.close()


def load_config(config: str = "", model: str = "", provider: str = "", max_steps: int | None = None) -> Config:
    """Load config from file or defaults and apply CLI overrides."""
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            log.error("Failed to load config", path=config, error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()

    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    if max_steps is not None:
        cfg.agent.max_steps = max_steps
    return cfg


def main(
    task: str,
    config: str = "",
    model: str = "",
    provider: str = "",
    max_steps: int | None = None,
    test_mode: bool = False,
    verbose: bool = False,
) -> None:
    """Run a single task to completion and print the transcript."""
    cfg = load_config(config, model, provider, max_steps)
    configure_logging(cfg, verbose=verbose)

    agent = build_agent(cfg)
    if test_mode:
        agent.enable_test_mode()

    try:
        transcript = asyncio.run(run_task(agent, task))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(130)
    except Exception as e:
        log.error("Fatal error", error=str(e))
        sys.exit(1)

    outcome = agent.last_outcome.value if agent.last_outcome else "unknown"
    style = "red" if outcome in {"error", "timeout"} else "green"
    console.print(Panel(Text(transcript), title=escape(f"{agent.name} [{outcome}]"), border_style=style))
    if outcome == "error":
        sys.exit(1)


@app.command()
def run(
    task: str = typer.Argument(..., help="Task for the agent"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    max_steps: int | None = typer.Option(None, "--max-steps", help="Override step budget"),
    test_mode: bool = typer.Option(False, "--test-mode", help="Use reduced step and time budgets"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    main(task, config, model, provider, max_steps, test_mode, verbose)


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"agentloop v{__version__}")


def cli() -> None:
    app()


if __name__ == "__main__":
    cli()
