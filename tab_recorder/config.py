#!/usr/bin/env python3
"""
Unified configuration loader for the tab recorder backend.

Load order (first found wins):
  1) TAB_RECORDER_CONFIG (env, absolute or relative to CWD)
  2) /etc/tab-recorder/config.yaml
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

DEFAULT_MAX_CHUNK_BYTES = 50 * 1024 * 1024

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "recordings_dir": "recordings",
    },
    "recording": {
        "filename_prefix": "recording-",
        "file_extension": ".webm",
        "max_chunk_bytes": DEFAULT_MAX_CHUNK_BYTES,
        "stop_timeout_seconds": 30.0,
        "fsync_chunks": False,
        "progress_log_interval": 10,
    },
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 3000,
        "cors_origin": "*",
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

_log = logging.getLogger("config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Ignore unreadable files and continue with other locations/defaults
        _log.warning("Ignoring config file %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    _log.warning("Ignoring config file %s: top level is not a mapping", path)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("TAB_RECORDER_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/tab-recorder/config.yaml"),
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


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    # Paths
    if "REC_DIR" in os.environ:
        value = os.environ["REC_DIR"].strip()
        if value:
            cfg.setdefault("paths", {})["recordings_dir"] = value

    env_map = {
        "HOST": ("web_server", "listen_host", str),
        "PORT": ("web_server", "listen_port", int),
        "CORS_ORIGIN": ("web_server", "cors_origin", str),
        "MAX_CHUNK_BYTES": ("recording", "max_chunk_bytes", int),
        "STOP_TIMEOUT_SEC": ("recording", "stop_timeout_seconds", float),
        "FSYNC_CHUNKS": ("recording", "fsync_chunks", _parse_bool),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key not in os.environ:
            continue
        raw = os.environ[env_key].strip()
        if not raw:
            continue
        try:
            cfg.setdefault(section, {})[key] = cast(raw)
        except ValueError:
            _log.warning("Ignoring invalid %s=%r", env_key, raw)


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (tab_recorder/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

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

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    get_cfg()
    return list(_search_paths)


def recording_settings(cfg: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Return the ``recording`` section with defaults filled in and types coerced."""

    source = cfg if cfg is not None else get_cfg()
    section = source.get("recording") if isinstance(source, dict) else None
    merged = _deep_merge(_DEFAULTS["recording"], section if isinstance(section, dict) else {})

    def _int(value: Any, default: int, minimum: int) -> int:
        try:
            return max(minimum, int(value))
        except (TypeError, ValueError):
            return default

    def _float(value: Any, default: float) -> float:
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            return default
        return parsed if parsed > 0 else default

    fsync_raw = merged.get("fsync_chunks")
    if isinstance(fsync_raw, str):
        fsync = _parse_bool(fsync_raw)
    else:
        fsync = bool(fsync_raw)

    return {
        "filename_prefix": str(merged.get("filename_prefix") or ""),
        "file_extension": str(merged.get("file_extension") or ""),
        "max_chunk_bytes": _int(merged.get("max_chunk_bytes"), DEFAULT_MAX_CHUNK_BYTES, 1),
        "stop_timeout_seconds": _float(merged.get("stop_timeout_seconds"), 30.0),
        "fsync_chunks": fsync,
        "progress_log_interval": _int(merged.get("progress_log_interval"), 10, 0),
    }
