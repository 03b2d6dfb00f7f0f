#!/usr/bin/env python3
"""
Unified configuration loader for clipwatch.

Load order (first found wins):
  1) CLIPWATCH_CONFIG (env, absolute or relative to CWD)
  2) /etc/clipwatch/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "event_source": {
        "server_addr": "",
        "file_name": "",
        "keywords": [],
    },
    "paths": {
        "segments_dir": "./videos",
        "evidence_dir": "./error_videos",
    },
    "recorder": {
        "enabled": True,
        "ffmpeg_path": "ffmpeg",
        "segment_seconds": 180,
        "segment_prefix": "record_",
        "segment_extension": ".mp4",
        "input_args": [
            "-f", "gdigrab",
            "-framerate", "30",
            "-video_size", "1920x1080",
            "-i", "desktop",
            "-f", "lavfi", "-i", "anullsrc",
        ],
        "output_args": [
            "-vcodec", "libx264",
            "-preset", "veryfast",
            "-b:v", "2500k",
            "-profile:v", "baseline",
            "-maxrate", "2500k",
            "-bufsize", "5000k",
            "-level", "3.0",
            "-pix_fmt", "yuv420p",
            "-c:a", "aac",
        ],
        "restart": True,
        "restart_delay_sec": 5.0,
    },
    "retention": {
        "max_segments": 5,
        "interval_sec": 60.0,
    },
    "trigger": {
        "cooldown_sec": 180.0,
        "capture_delay_sec": 120.0,
        "segments_to_capture": 2,
    },
    "stability": {
        "poll_interval_sec": 5.0,
        "timeout_sec": 30.0,
    },
    "listener": {
        "reconnect_delay_sec": 3.0,
    },
    "metadata": {
        "timeout_sec": 10.0,
        "placeholder": "unknown",
    },
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 10189,
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "log_messages": True,
    },
}

# Top-level keys of the older flat config.yaml layout.
_LEGACY_EVENT_SOURCE_KEYS = {
    "serverAddr": "server_addr",
    "fileName": "file_name",
    "keywords": "keywords",
}

log = logging.getLogger("clipwatch.config")

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


class ConfigError(Exception):
    """Raised when the configuration cannot be read, parsed or validated."""


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigError(f"unable to read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"unable to parse config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return data


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("CLIPWATCH_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/clipwatch/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _fold_legacy_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Move ``serverAddr``/``fileName``/``keywords`` into ``event_source``."""

    if not any(key in data for key in _LEGACY_EVENT_SOURCE_KEYS):
        return data
    folded = dict(data)
    section = dict(folded.get("event_source") or {})
    for legacy, key in _LEGACY_EVENT_SOURCE_KEYS.items():
        if legacy in folded:
            section.setdefault(key, folded.pop(legacy))
    folded["event_source"] = section
    return folded


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    env_map = {
        "SERVER_ADDR": ("event_source", "server_addr", str),
        "EVENT_FILE": ("event_source", "file_name", str),
        "KEYWORDS": ("event_source", "keywords", _split_list),
        "SEGMENTS_DIR": ("paths", "segments_dir", str),
        "EVIDENCE_DIR": ("paths", "evidence_dir", str),
        "WEB_PORT": ("web_server", "listen_port", int),
        "FFMPEG_PATH": ("recorder", "ffmpeg_path", str),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                log.warning(
                    "Ignoring %s=%r: not a valid %s", env_key, os.environ[env_key], key
                )


def normalize_keywords(raw: Any) -> list[str]:
    """Return keywords as strings, dropping empty entries and duplicates."""

    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        return []
    keywords: list[str] = []
    seen: set[str] = set()
    for entry in raw:
        if entry is None:
            continue
        keyword = str(entry)
        if not keyword.strip() or keyword in seen:
            continue
        seen.add(keyword)
        keywords.append(keyword)
    return keywords


def _validate(cfg: Dict[str, Any]) -> None:
    source = cfg.get("event_source")
    if not isinstance(source, dict):
        raise ConfigError("event_source section must be a mapping")
    server_addr = str(source.get("server_addr") or "").strip()
    if not server_addr:
        raise ConfigError("event_source.server_addr (serverAddr) is required")
    source["server_addr"] = server_addr
    source["file_name"] = str(source.get("file_name") or "").strip()
    source["keywords"] = normalize_keywords(source.get("keywords"))


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    this_dir = Path(__file__).resolve().parent
    project_root = this_dir.parent  # <root>/clipwatch -> <root>

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    if active is not None:
        cfg = _deep_merge(cfg, _fold_legacy_keys(_load_yaml_if_exists(active)))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _validate(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    return _active_config_path
