from pathlib import Path

import pytest

import agentloop.config as config_module
from agentloop.config import Config
from agentloop.exceptions import ConfigurationError


@pytest.fixture
def isolated_home(monkeypatch, tmp_path: Path) -> Path:
    monkeypatch.chdir(tmp_path)
    home_cfg = tmp_path / "home" / "config.yaml"
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)
    for key in ("AGENTLOOP_AGENT__MAX_STEPS", "AGENTLOOP_MODEL__PROVIDER"):
        monkeypatch.delenv(key, raising=False)
    return home_cfg


def test_defaults_match_documented_budgets(isolated_home: Path):
    cfg = Config.load()

    assert cfg.agent.max_steps == 10
    assert cfg.agent.timeout_seconds == 30
    assert cfg.agent.test_max_steps == 3
    assert cfg.agent.test_timeout_seconds == 5
    assert cfg.agent.duplicate_threshold == 2
    assert cfg.agent.max_observe == 10000
    assert cfg.agent.special_tools == ["terminate"]
    assert cfg.tools.shell.timeout == 120
    assert cfg.tools.shell.sentinel == "<<exit>>"
    assert cfg.model.reset_threshold == 0.8


def test_load_prefers_local_config_yaml(isolated_home: Path, tmp_path: Path):
    isolated_home.parent.mkdir(parents=True)
    isolated_home.write_text("model:\n  provider: ollama\n  model: llama3.2\n", encoding="utf-8")
    (tmp_path / "agentloop.yaml").write_text(
        "model:\n  provider: openai\n  model: gpt-4o-mini\nagent:\n  max_steps: 4\n",
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.provider == "openai"
    assert cfg.model.model == "gpt-4o-mini"
    assert cfg.agent.max_steps == 4


def test_load_falls_back_to_default_path_when_no_local(isolated_home: Path):
    isolated_home.parent.mkdir(parents=True)
    isolated_home.write_text(
        "tools:\n  shell:\n    timeout: 15\n    blocked:\n      - shutdown\n",
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.tools.shell.timeout == 15
    assert cfg.tools.shell.blocked == ["shutdown"]


def test_environment_overrides_nested_settings(isolated_home: Path, monkeypatch):
    monkeypatch.setenv("AGENTLOOP_AGENT__MAX_STEPS", "7")
    monkeypatch.setenv("AGENTLOOP_MODEL__PROVIDER", "openai")

    cfg = Config.load()

    assert cfg.agent.max_steps == 7
    assert cfg.model.provider == "openai"


def test_explicit_missing_config_raises(isolated_home: Path, tmp_path: Path):
    with pytest.raises(ConfigurationError, match="not found"):
        Config.from_yaml(tmp_path / "missing.yaml")


def test_invalid_yaml_raises_configuration_error(isolated_home: Path, tmp_path: Path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("agent: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        Config.from_yaml(bad)


def test_save_writes_loadable_yaml(isolated_home: Path, tmp_path: Path):
    cfg = Config()
    cfg.agent.max_steps = 12
    target = tmp_path / "saved" / "agentloop.yaml"
    cfg.save(target)

    reloaded = Config.from_yaml(target)
    assert reloaded.agent.max_steps == 12
