import os

import pytest
from pydantic import ValidationError

from ralphloop.config_loader import RalphConfig, _deep_merge, load_config, load_environment, validate_api_keys


def test_defaults():
    config = load_config()
    assert config.limits.max_attempts == 3
    assert config.limits.verification_timeout_seconds == 300
    assert config.policy.halt_on_exhaustion is True
    assert config.routing.reasoner == "template"
    assert config.workspace.max_backups == 10


def test_repo_overrides_are_merged(tmp_path):
    (tmp_path / ".ralphloop").mkdir()
    (tmp_path / ".ralphloop" / "config.yaml").write_text(
        "limits:\n  max_attempts: 5\npolicy:\n  halt_on_exhaustion: false\n"
    )
    config = load_config(tmp_path)
    assert config.limits.max_attempts == 5
    assert config.limits.verification_timeout_seconds == 300
    assert config.policy.halt_on_exhaustion is False
    assert config.policy.reload_on_correction is True


def test_deep_merge_keeps_siblings():
    merged = _deep_merge({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}})
    assert merged == {"a": {"x": 1, "y": 3}, "b": 1}


def test_invalid_values_rejected():
    with pytest.raises(ValidationError):
        RalphConfig(routing={"reasoner": "oracle"})
    with pytest.raises(ValidationError):
        RalphConfig(limits={"max_attempts": 0})


def test_env_file_loaded(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    (tmp_path / ".env").write_text("OPENAI_API_KEY=sk-test\n")

    load_environment(tmp_path)

    assert validate_api_keys()["OPENAI_API_KEY"] is True
    os.environ.pop("OPENAI_API_KEY", None)
