"""Configuration management for agentloop."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from agentloop.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.agentloop/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "agentloop.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = "llama3.2"
    temperature: float = 0.7
    max_tokens: int = 4096
    max_input_tokens: int | None = 32000
    reset_threshold: float = 0.8
    api_key: str = ""
    base_url: str = ""
    request_timeout: float = 120.0


class AgentConfig(BaseModel):
    """Step loop budgets and think/act behavior."""

    name: str = "agentloop"
    system_prompt: str = (
        "You are an autonomous assistant that solves tasks step by step using the "
        "available tools. Call `terminate` when the task is complete or cannot proceed."
    )
    next_step_prompt: str = ""
    max_steps: int = 10
    timeout_seconds: float = 30.0
    test_max_steps: int = 3
    test_timeout_seconds: float = 5.0
    duplicate_threshold: int = 2
    max_observe: int = 10000
    tool_choice: Literal["auto", "required", "none"] = "auto"
    special_tools: list[str] = Field(default_factory=lambda: ["terminate"])
    memory_max_messages: int | None = 100


class ShellToolConfig(BaseModel):
    """Shell session configuration."""

    shell: str = "/bin/bash"
    timeout: float = 120.0
    output_delay: float = 0.2
    sentinel: str = "<<exit>>"
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]


class EditorToolConfig(BaseModel):
    """File editor configuration."""

    max_response_chars: int = 16000
    snippet_lines: int = 4


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = ["bash", "str_replace_editor", "terminate"]
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)
    editor: EditorToolConfig = Field(default_factory=EditorToolConfig)


class TrackingConfig(BaseModel):
    """Execution tracking configuration."""

    enabled: bool = True
    max_sessions: int | None = 200


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for agentloop."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    tracking: TrackingConfig = Field(default_factory=TrackingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="AGENTLOOP_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            if path:
                raise ConfigurationError(f"Config file not found: {config_path}")
            return cls()

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config root must be a mapping: {config_path}")
        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration, environment variables layered by pydantic-settings."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
