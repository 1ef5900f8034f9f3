from __future__ import annotations

import os
from pathlib import Path

import pytest

from reputation.core.config import DEFAULT_RULES_PATH, EngineConfig, load_config


def test_shipped_rules_match_documented_defaults():
    cfg = load_config(environ={})
    assert cfg == EngineConfig(version=cfg.version)
    assert cfg.version == "1"
    assert DEFAULT_RULES_PATH.exists()


def test_env_overrides_single_keys():
    cfg = load_config(environ={"REPUTATION_MAX_RATINGS_PER_DAY": "50", "REPUTATION_TRUST_STEP": "0.1"})
    assert cfg.max_ratings_per_day == 50
    assert cfg.trust_step == pytest.approx(0.1)


def test_rules_path_from_env(tmp_path: Path):
    rules = tmp_path / "rules.yaml"
    rules.write_text('version: "7"\nreputation:\n  stale_days: 14\n', encoding="utf-8")
    cfg = load_config(environ={"REPUTATION_RULES_PATH": str(rules)})
    assert cfg.version == "7"
    assert cfg.stale_days == 14
    assert cfg.max_ratings_per_day == 20


def test_unknown_yaml_key_is_rejected(tmp_path: Path):
    rules = tmp_path / "rules.yaml"
    rules.write_text("version: 1\nreputation:\n  max_rating_per_day: 5\n", encoding="utf-8")
    with pytest.raises(RuntimeError, match="Unknown reputation config keys"):
        load_config(rules, environ={})


def test_non_integer_override_is_rejected():
    with pytest.raises(RuntimeError, match="max_ratings_per_day"):
        load_config(environ={"REPUTATION_MAX_RATINGS_PER_DAY": "twenty"})


@pytest.mark.parametrize(
    "changes",
    [
        {"trust_min": 0.0},
        {"trust_default": 5.0},
        {"weight_rating": 0.5},
        {"coordination_threshold": 0.5},
        {"score_floor": 60, "score_default": 50},
        {"decay_max_workers": 0},
    ],
)
def test_invalid_values_fail_at_construction(changes):
    with pytest.raises(RuntimeError, match="Invalid reputation config"):
        EngineConfig(**changes)


def test_env_file_fills_only_missing_keys(tmp_path: Path, monkeypatch):
    from app.core.env import load_env_if_present

    env_file = tmp_path / ".env"
    env_file.write_text(
        '# local\nexport REPUTATION_STALE_DAYS="10"\nREPUTATION_MAX_DECAY=4\nnoise line\n',
        encoding="utf-8",
    )
    monkeypatch.setenv("REPUTATION_MAX_DECAY", "8")
    # Registered with monkeypatch so the value loaded below is undone on teardown.
    monkeypatch.setenv("REPUTATION_STALE_DAYS", "")
    monkeypatch.delenv("REPUTATION_STALE_DAYS")

    loaded = load_env_if_present(paths=[env_file, tmp_path / "missing.env"])

    assert loaded == [env_file]
    assert os.environ["REPUTATION_STALE_DAYS"] == "10"
    assert os.environ["REPUTATION_MAX_DECAY"] == "8"
