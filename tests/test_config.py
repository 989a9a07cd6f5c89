from __future__ import annotations

import pytest

from conduit.engine.config import EngineConfig
from conduit.engine.errors import ConfigError
from conduit.engine.models import ReproMode
from conduit.engine.yaml_config import load_yaml_config


def test_defaults(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    config = EngineConfig()
    assert config.data_dir.endswith(".conduit")
    assert config.repro_mode is ReproMode.OFF
    assert config.tape_path.name == "tape.jsonl"
    assert config.db_path.name == "conduit.db"


def test_from_env(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("CONDUIT_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("CONDUIT_REPRO_MODE", "replay_then_continue_live")
    monkeypatch.setenv("CONDUIT_REPLAY_SPEED", "4")
    monkeypatch.setenv("CONDUIT_TOOL_APPROVAL", "yes")
    monkeypatch.setenv("CONDUIT_LOG_LEVEL", "debug")
    config = EngineConfig.from_env()
    assert config.data_dir == str(tmp_path)
    assert config.repro_mode is ReproMode.REPLAY_THEN_LIVE
    assert config.replay_speed == 4.0
    assert config.tool_approval is True
    assert config.log_level == "DEBUG"


@pytest.mark.parametrize("name,value", [
    ("CONDUIT_REPRO_MODE", "sometimes"),
    ("CONDUIT_REPLAY_SPEED", "fast"),
    ("CONDUIT_REPLAY_SPEED", "-1"),
])
def test_bad_env_values_raise_config_error(monkeypatch, name, value) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigError):
        EngineConfig.from_env()


def test_repro_mode_aliases() -> None:
    assert ReproMode.parse(None) is ReproMode.OFF
    assert ReproMode.parse("RECORD") is ReproMode.RECORD
    assert ReproMode.parse("replay-continue") is ReproMode.REPLAY_THEN_LIVE
    assert ReproMode.REPLAY.is_replay
    assert not ReproMode.RECORD.is_replay


def test_yaml_overrides_base(tmp_path) -> None:
    path = tmp_path / "conduit.yaml"
    path.write_text(
        "engine:\n"
        f"  data_dir: {tmp_path}/data\n"
        "  default_agent: codex\n"
        "  repro_mode: record\n"
        "  replay_speed: 2\n"
        "agents:\n"
        "  codex:\n"
        "    default_model: o3\n"
        "    extra_args: [--sandbox, workspace-write]\n"
        "    env:\n"
        "      CODEX_HOME: /tmp/codex\n"
    )
    config = load_yaml_config(path, base=EngineConfig(data_dir=str(tmp_path)))
    assert config.engine.data_dir == f"{tmp_path}/data"
    assert config.engine.default_agent == "codex"
    assert config.engine.repro_mode is ReproMode.RECORD
    assert config.engine.replay_speed == 2.0
    codex = config.agents["codex"]
    assert codex.default_model == "o3"
    assert codex.extra_args == ["--sandbox", "workspace-write"]
    assert codex.env == {"CODEX_HOME": "/tmp/codex"}


def test_yaml_unknown_keys_are_ignored(tmp_path, caplog) -> None:
    path = tmp_path / "conduit.yaml"
    path.write_text("engine:\n  colour: blue\nextras: {}\n")
    config = load_yaml_config(path, base=EngineConfig(data_dir=str(tmp_path)))
    assert config.agents == {}
    assert "colour" in caplog.text


@pytest.mark.parametrize("text", [
    "engine:\n  replay_speed: fast\n",
    "engine:\n  repro_mode: sideways\n",
    "agents:\n  codex:\n    extra_args: --flag\n",
    "- just\n- a list\n",
    "engine: [unclosed\n",
])
def test_invalid_yaml_raises_config_error(tmp_path, text) -> None:
    path = tmp_path / "conduit.yaml"
    path.write_text(text)
    with pytest.raises(ConfigError):
        load_yaml_config(path, base=EngineConfig(data_dir=str(tmp_path)))


def test_missing_yaml_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "nope.yaml")
