"""Configuration loading and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Mapping

DEFAULT_STORAGE_PATH = "~/.chat-agent/projects-ux/state.json"
DEFAULT_PROJECT_NAME = "General"

_KNOWN_KEYS = {
    "storagePath",
    "defaultProjectName",
    "maxProjects",
    "maxInjectedNoteChars",
    "maxPrefixChars",
    "hardIsolation",
    "dmChannel",
    "logLevel",
}
_LOG_LEVELS = {"debug", "info", "warning", "error"}


@dataclass(slots=True)
class HardIsolationSection:
    enabled: bool = False


@dataclass(slots=True)
class ProjectsConfig:
    storage_path: str = DEFAULT_STORAGE_PATH
    default_project_name: str = DEFAULT_PROJECT_NAME
    max_projects: int = 50
    max_injected_note_chars: int = 600
    max_prefix_chars: int = 240
    hard_isolation: HardIsolationSection = field(default_factory=HardIsolationSection)
    dm_channel: str = "telegram"
    log_level: str = "info"


@dataclass(slots=True)
class ConfigSnapshot:
    valid: bool
    issues: list[str]
    warnings: list[str]
    effective_config: ProjectsConfig | None
    effective_raw: dict[str, Any] | None = None
    merged_raw: dict[str, Any] | None = None


def _deep_update(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(out.get(key), dict):
            out[key] = _deep_update(out[key], value)
        elif isinstance(value, Mapping):
            out[key] = _deep_update({}, value)
        else:
            out[key] = value
    return out


def _parse_override_value(raw: str) -> Any:
    lowered = raw.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered == "null":
        return None
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_path(target: dict[str, Any], dotted: str, value: Any) -> None:
    parts = [p for p in dotted.split(".") if p]
    node: dict[str, Any] = target
    for part in parts[:-1]:
        current = node.get(part)
        if not isinstance(current, dict):
            current = {}
            node[part] = current
        node = current
    if parts:
        node[parts[-1]] = value


def _env_overrides() -> dict[str, Any]:
    mapping = {
        "PROJECTS_UX_STORAGE_PATH": "storagePath",
        "PROJECTS_UX_DEFAULT_PROJECT_NAME": "defaultProjectName",
        "PROJECTS_UX_MAX_PROJECTS": "maxProjects",
        "PROJECTS_UX_MAX_NOTE_CHARS": "maxInjectedNoteChars",
        "PROJECTS_UX_MAX_PREFIX_CHARS": "maxPrefixChars",
        "PROJECTS_UX_HARD_ISOLATION": "hardIsolation.enabled",
        "PROJECTS_UX_DM_CHANNEL": "dmChannel",
        "PROJECTS_UX_LOG_LEVEL": "logLevel",
    }
    out: dict[str, Any] = {}
    for env_name, cfg_path in mapping.items():
        raw = os.getenv(env_name)
        if raw is None:
            continue
        if cfg_path in {"storagePath", "defaultProjectName", "dmChannel"}:
            _set_path(out, cfg_path, raw)
        else:
            _set_path(out, cfg_path, _parse_override_value(raw))
    return out


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate(raw: dict[str, Any]) -> tuple[list[str], list[str]]:
    issues: list[str] = []
    warnings: list[str] = []
    unknown = set(raw.keys()) - _KNOWN_KEYS
    if unknown:
        warnings.append(f"Unknown config keys ignored: {', '.join(sorted(unknown))}")

    if "storagePath" in raw and not str(raw["storagePath"] or "").strip():
        issues.append("storagePath cannot be empty")
    if "defaultProjectName" in raw and not str(raw["defaultProjectName"] or "").strip():
        issues.append("defaultProjectName cannot be empty")

    if "maxProjects" in raw:
        value = raw["maxProjects"]
        if not _is_int(value) or value < 1:
            issues.append("maxProjects must be a positive integer")
    for key in ("maxInjectedNoteChars", "maxPrefixChars"):
        if key in raw:
            value = raw[key]
            if not _is_int(value) or value < 0:
                issues.append(f"{key} must be a non-negative integer")

    hard = raw.get("hardIsolation", {})
    if isinstance(hard, dict):
        if "enabled" in hard and not isinstance(hard["enabled"], bool):
            issues.append("hardIsolation.enabled must be a boolean")
    else:
        issues.append("hardIsolation must be an object when provided")

    if "dmChannel" in raw and not str(raw["dmChannel"] or "").strip():
        issues.append("dmChannel cannot be empty")
    if "logLevel" in raw and str(raw["logLevel"]).lower() not in _LOG_LEVELS:
        issues.append("logLevel must be debug|info|warning|error")

    if raw.get("maxPrefixChars") == 0:
        warnings.append("maxPrefixChars is 0; project framing will never be injected")

    return issues, warnings


def _to_config(raw: dict[str, Any]) -> ProjectsConfig:
    defaults = ProjectsConfig()
    hard = raw.get("hardIsolation", {}) if isinstance(raw.get("hardIsolation", {}), dict) else {}
    return ProjectsConfig(
        storage_path=str(raw.get("storagePath", defaults.storage_path)).strip(),
        default_project_name=str(raw.get("defaultProjectName", defaults.default_project_name)).strip(),
        max_projects=int(raw.get("maxProjects", defaults.max_projects)),
        max_injected_note_chars=int(raw.get("maxInjectedNoteChars", defaults.max_injected_note_chars)),
        max_prefix_chars=int(raw.get("maxPrefixChars", defaults.max_prefix_chars)),
        hard_isolation=HardIsolationSection(enabled=bool(hard.get("enabled", False))),
        dm_channel=str(raw.get("dmChannel", defaults.dm_channel)).strip().lower(),
        log_level=str(raw.get("logLevel", defaults.log_level)).lower(),
    )


def _bootstrap_config(merged: dict[str, Any] | None) -> ProjectsConfig:
    """Defaults used when the supplied config is invalid; a usable storagePath is kept."""
    config = ProjectsConfig()
    storage_path = str((merged or {}).get("storagePath") or "").strip()
    if storage_path:
        config.storage_path = storage_path
    return config


def read_config_snapshot(
    plugin_config: Mapping[str, Any] | None,
    cli_overrides: dict[str, str] | None = None,
) -> ConfigSnapshot:
    """Merge host plugin config, env and CLI overrides, and validate the result."""
    if plugin_config is not None and not isinstance(plugin_config, Mapping):
        return ConfigSnapshot(
            valid=False,
            issues=["Plugin config must be an object"],
            warnings=[],
            effective_config=None,
        )

    merged = _deep_update({}, plugin_config or {})
    merged = _deep_update(merged, _env_overrides())
    if cli_overrides:
        cli_tree: dict[str, Any] = {}
        for key, value in cli_overrides.items():
            if key in {"storagePath", "defaultProjectName", "dmChannel"}:
                _set_path(cli_tree, key, value)
            else:
                _set_path(cli_tree, key, _parse_override_value(value))
        merged = _deep_update(merged, cli_tree)

    issues, warnings = _validate(merged)
    if issues:
        return ConfigSnapshot(
            valid=False,
            issues=issues,
            warnings=warnings,
            effective_config=None,
            effective_raw=None,
            merged_raw=merged,
        )
    return ConfigSnapshot(
        valid=True,
        issues=[],
        warnings=warnings,
        effective_config=_to_config(merged),
        effective_raw=merged,
        merged_raw=merged,
    )


def ensure_runtime_config(snapshot: ConfigSnapshot) -> ProjectsConfig:
    """Return valid runtime config; fallback to bootstrap config when snapshot invalid."""
    if snapshot.effective_config is not None:
        return snapshot.effective_config
    return _bootstrap_config(snapshot.merged_raw)
