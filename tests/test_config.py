"""Tests covering config file discovery, legacy keys and env overrides."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from clipwatch import config as config_module


def _reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    for key in ("SERVER_ADDR", "EVENT_FILE", "KEYWORDS", "SEGMENTS_DIR", "EVIDENCE_DIR", "WEB_PORT", "DEV"):
        monkeypatch.delenv(key, raising=False)


def test_legacy_flat_layout_is_folded(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "serverAddr: 127.0.0.1:8081\n"
        "fileName: latest.log\n"
        "keywords:\n"
        "  - Exception\n"
        "  - ''\n"
        "  - Timeout\n"
        "  - Exception\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("CLIPWATCH_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert cfg["event_source"] == {
        "server_addr": "127.0.0.1:8081",
        "file_name": "latest.log",
        "keywords": ["Exception", "Timeout"],
    }
    assert "serverAddr" not in cfg
    assert cfg["retention"]["max_segments"] == 5
    assert cfg["trigger"]["cooldown_sec"] == 180.0
    assert config_module.active_config_path() == config_path.resolve()


def test_sections_merge_over_defaults(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "event_source:\n"
        "  server_addr: logs.local:9000\n"
        "retention:\n"
        "  max_segments: 8\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("CLIPWATCH_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert cfg["retention"] == {"max_segments": 8, "interval_sec": 60.0}
    assert cfg["event_source"]["keywords"] == []
    assert cfg["recorder"]["segment_prefix"] == "record_"


def test_env_overrides(monkeypatch, tmp_path: Path, caplog) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("serverAddr: 127.0.0.1:8081\n", encoding="utf-8")
    monkeypatch.setenv("CLIPWATCH_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)
    monkeypatch.setenv("SERVER_ADDR", "10.0.0.5:80")
    monkeypatch.setenv("KEYWORDS", "Error, Fatal ,,Error")
    monkeypatch.setenv("EVIDENCE_DIR", str(tmp_path / "evidence"))
    monkeypatch.setenv("WEB_PORT", "not-a-number")
    monkeypatch.setenv("DEV", "1")

    with caplog.at_level(logging.WARNING, logger="clipwatch.config"):
        cfg = config_module.get_cfg()

    assert cfg["event_source"]["server_addr"] == "10.0.0.5:80"
    assert cfg["event_source"]["keywords"] == ["Error", "Fatal"]
    assert cfg["paths"]["evidence_dir"] == str(tmp_path / "evidence")
    assert cfg["web_server"]["listen_port"] == 10189
    assert cfg["logging"]["dev_mode"] is True
    assert "WEB_PORT" in caplog.text


def test_missing_server_addr_is_fatal(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("keywords: [Exception]\n", encoding="utf-8")
    monkeypatch.setenv("CLIPWATCH_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    with pytest.raises(config_module.ConfigError):
        config_module.get_cfg()


def test_unparsable_config_is_fatal(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("serverAddr: [unterminated\n", encoding="utf-8")
    monkeypatch.setenv("CLIPWATCH_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    with pytest.raises(config_module.ConfigError):
        config_module.get_cfg()


def test_non_mapping_config_is_fatal(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("- just\n- a list\n", encoding="utf-8")
    monkeypatch.setenv("CLIPWATCH_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    with pytest.raises(config_module.ConfigError):
        config_module.get_cfg()


def test_normalize_keywords_accepts_scalars() -> None:
    assert config_module.normalize_keywords("Boom") == ["Boom"]
    assert config_module.normalize_keywords(None) == []
    assert config_module.normalize_keywords([1, "1", " ", None]) == ["1"]
