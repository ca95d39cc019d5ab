"""Tests for config loading and schema validation."""
from __future__ import annotations

import json
import logging

import pytest
from pydantic import ValidationError

from docloop.config import DEFAULT_CONFIG, DocloopConfig, LoopConfig, get_config, load_config
from docloop.config import loader as config_loader
from docloop.config.constants import DEFAULT_CHUNK_BUDGET, DEFAULT_MAX_TURNS
from docloop.config.schema import GuardConfig, ModelConfig


def _write(path, data) -> str:
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


def _minimal_model() -> ModelConfig:
    return ModelConfig(base_url="http://localhost:11434/v1", model="test-model")


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def test_get_config_default(monkeypatch):
    monkeypatch.delenv("DOCLOOP_CONFIG_PATH", raising=False)
    monkeypatch.setattr(config_loader, "_env", None)
    cfg = get_config()
    assert cfg is DEFAULT_CONFIG
    assert "quality" in cfg.models
    assert cfg.loop.chunk_budget == DEFAULT_CHUNK_BUDGET


def test_get_config_from_file(monkeypatch, tmp_path):
    path = _write(tmp_path / "cfg.json", {
        "models": {"custom": {"base_url": "http://127.0.0.1:9000/v1", "model": "my-model", "temperature": 0.2}},
        "default_model_key": "custom",
        "loop": {"max_turns": 12, "chunk_budget": 3000},
        "guard": {"repeat_threshold": 50},
    })
    monkeypatch.setenv("DOCLOOP_CONFIG_PATH", path)
    monkeypatch.setattr(config_loader, "_env", None)
    cfg = get_config()
    assert cfg.model_for().model == "my-model"
    assert cfg.model_for().temperature == 0.2
    assert cfg.loop.max_turns == 12
    assert cfg.loop.chunk_budget == 3000
    assert cfg.guard.repeat_threshold == 50
    assert cfg.telemetry is None


def test_config_path_that_is_not_a_file_falls_back(monkeypatch, tmp_path, caplog):
    monkeypatch.setenv("DOCLOOP_CONFIG_PATH", str(tmp_path / "missing.json"))
    monkeypatch.setattr(config_loader, "_env", None)
    with caplog.at_level(logging.WARNING, logger="docloop.config.loader"):
        cfg = load_config()
    assert cfg is DEFAULT_CONFIG
    assert "is not a file" in caplog.text


def test_invalid_json_raises(monkeypatch, tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    monkeypatch.setenv("DOCLOOP_CONFIG_PATH", str(bad))
    monkeypatch.setattr(config_loader, "_env", None)
    with pytest.raises(json.JSONDecodeError):
        load_config()


def test_load_config_is_cached(monkeypatch):
    monkeypatch.delenv("DOCLOOP_CONFIG_PATH", raising=False)
    assert load_config() is load_config()


def test_load_config_cache_clear_forces_reload(monkeypatch, tmp_path):
    cfg_file = tmp_path / "cfg.json"
    _write(cfg_file, {"models": {"q": {"base_url": "http://localhost:11434/v1", "model": "m1"}},
                      "default_model_key": "q"})
    monkeypatch.setenv("DOCLOOP_CONFIG_PATH", str(cfg_file))
    monkeypatch.setattr(config_loader, "_env", None)
    first = load_config()
    assert first.models["q"].model == "m1"

    _write(cfg_file, {"models": {"q": {"base_url": "http://localhost:11434/v1", "model": "m2"}},
                      "default_model_key": "q"})
    assert load_config().models["q"].model == "m1"

    load_config.cache_clear()
    second = load_config()
    assert second.models["q"].model == "m2"
    assert first is not second


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

def test_default_config_values():
    assert DEFAULT_CONFIG.loop.max_turns == DEFAULT_MAX_TURNS
    assert DEFAULT_CONFIG.models["quality"].backend == "ollama"
    assert DEFAULT_CONFIG.loop.tool_limits["list_terms"] == 3
    assert "list_terms" in DEFAULT_CONFIG.loop.productive_tools


def test_default_model_key_must_exist():
    with pytest.raises(ValidationError, match="default_model_key"):
        DocloopConfig(models={"fast": _minimal_model()})


def test_model_for_falls_back_to_default():
    cfg = DocloopConfig(models={"quality": _minimal_model(), "fast": ModelConfig(base_url="x", model="small")})
    assert cfg.model_for("fast").model == "small"
    assert cfg.model_for("nope").model == "test-model"
    assert cfg.model_for(None).model == "test-model"


def test_negative_tool_limits_rejected():
    with pytest.raises(ValidationError, match="Negative tool limits"):
        LoopConfig(tool_limits={"list_terms": -1})


def test_max_turns_none_disables_ceiling():
    assert LoopConfig(max_turns=None).max_turns is None
    with pytest.raises(ValidationError, match="max_turns"):
        LoopConfig(max_turns=0)


@pytest.mark.parametrize("field", ["repeat_threshold", "window", "pattern_repeat_threshold"])
def test_guard_thresholds_must_be_positive(field):
    with pytest.raises(ValidationError):
        GuardConfig(**{field: 0})


def test_chunk_budget_must_be_positive():
    with pytest.raises(ValidationError):
        LoopConfig(chunk_budget=0)


def test_loop_defaults_are_independent_copies():
    a, b = LoopConfig(), LoopConfig()
    a.tool_limits["list_terms"] = 99
    assert b.tool_limits["list_terms"] == 3
