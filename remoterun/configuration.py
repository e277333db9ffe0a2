"""Home-directory-aware configuration loading for remoterun."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Tuple

import yaml

REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_DIR = REPO_ROOT / "config"
DEFAULT_HOME = "~/.remoterun"
DEFAULT_PORT = 55455
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_MESSAGE_BYTES = 64 * 1024 * 1024
WORKSPACE_SUBPATH = Path("workspace")

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "missing", "invalid"]


SchemaSpec = Dict[str, Any]


CONFIG_SCHEMA: SchemaSpec = {
    "logging": {
        "type": dict,
        "schema": {
            "level": {"type": str, "default": "WARNING"},
            "structured": {"type": bool, "default": False},
        },
        "default": {},
    },
    "network": {
        "type": dict,
        "schema": {
            "port": {"type": int, "default": DEFAULT_PORT},
            "timeout": {"type": (int, float), "default": DEFAULT_TIMEOUT},
            "max_message_bytes": {"type": int, "default": DEFAULT_MAX_MESSAGE_BYTES},
        },
        "default": {},
    },
    "server": {
        "type": dict,
        "schema": {
            "host": {"type": str, "default": "0.0.0.0"},
            "execution_root": {"type": str, "default": ""},
            "concurrent": {"type": bool, "default": True},
        },
        "default": {},
    },
    "execution": {
        "type": dict,
        "schema": {
            "interpreter": {"type": str, "default": ""},
            "flags": {
                "type": list,
                "item_type": str,
                "default_factory": lambda: ["-u"],
            },
        },
        "default": {},
    },
}


@dataclass
class Diagnostic:
    """Represents a configuration validation or loading issue."""

    level: DiagnosticLevel
    message: str
    source: Optional[Path] = None


@dataclass
class ConfigurationBundle:
    """All configuration data remoterun needs at runtime."""

    home_dir: Path
    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    repo_defaults: Dict[str, Any] = field(default_factory=dict)
    user_overrides: Dict[str, Any] = field(default_factory=dict)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    log_path: Optional[Path] = None


@dataclass
class NetworkSettings:
    port: int = DEFAULT_PORT
    timeout: Optional[float] = DEFAULT_TIMEOUT
    max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES

    @classmethod
    def from_bundle(cls, bundle: ConfigurationBundle) -> "NetworkSettings":
        raw = bundle.merged.get("network", {}) if bundle.merged else {}
        port = _coerce_int(raw.get("port", DEFAULT_PORT), DEFAULT_PORT)
        if not 0 <= port <= 65535:
            port = DEFAULT_PORT
        max_bytes = _coerce_int(
            raw.get("max_message_bytes", DEFAULT_MAX_MESSAGE_BYTES),
            DEFAULT_MAX_MESSAGE_BYTES,
        )
        if max_bytes <= 0:
            max_bytes = DEFAULT_MAX_MESSAGE_BYTES
        return cls(
            port=port,
            timeout=_coerce_timeout(raw.get("timeout", DEFAULT_TIMEOUT)),
            max_message_bytes=max_bytes,
        )


@dataclass
class ServerSettings:
    host: str
    execution_root: Path
    concurrent: bool = True

    @classmethod
    def from_bundle(cls, bundle: ConfigurationBundle) -> "ServerSettings":
        raw = bundle.merged.get("server", {}) if bundle.merged else {}
        host = str(raw.get("host") or "0.0.0.0").strip() or "0.0.0.0"
        return cls(
            host=host,
            execution_root=resolve_execution_root(bundle.home_dir, raw.get("execution_root")),
            concurrent=bool(raw.get("concurrent", True)),
        )


@dataclass
class ExecutionSettings:
    interpreter: str = ""
    flags: Tuple[str, ...] = ("-u",)

    @classmethod
    def from_bundle(cls, bundle: ConfigurationBundle) -> "ExecutionSettings":
        raw = bundle.merged.get("execution", {}) if bundle.merged else {}
        flags = raw.get("flags", ["-u"])
        if isinstance(flags, str):
            flags = flags.split()
        return cls(
            interpreter=str(raw.get("interpreter") or "").strip(),
            flags=tuple(str(flag) for flag in flags if str(flag).strip()),
        )


def resolve_home_dir(
    env: Optional[Mapping[str, str]] = None,
    default: str = DEFAULT_HOME,
) -> Path:
    """Resolve the user-scoped application directory from the environment."""

    env_source = env if env is not None else os.environ
    raw = env_source.get("REMOTERUN_HOME", default)
    return Path(raw).expanduser()


def resolve_execution_root(home_dir: Path, raw: object = None) -> Path:
    """Return the directory synced files land in and commands run from."""

    text = str(raw).strip() if raw is not None else ""
    if not text:
        return home_dir / WORKSPACE_SUBPATH
    candidate = Path(text).expanduser()
    if candidate.is_absolute():
        return candidate
    return home_dir / candidate


def load_runtime_configuration(home_dir: Optional[Path] = None) -> ConfigurationBundle:
    """Load configuration defaults and per-user overrides."""

    resolved_home = home_dir or resolve_home_dir()
    diagnostics: List[Diagnostic] = []
    files_loaded: List[Path] = []

    repo_defaults, repo_files = _load_directory_configs(
        DEFAULT_CONFIG_DIR,
        diagnostics,
        label="repo defaults",
    )
    files_loaded.extend(repo_files)

    status: ConfigurationStatus = "ready"
    user_overrides: Dict[str, Any] = {}

    if not resolved_home.exists():
        diagnostics.append(
            Diagnostic(
                level="info",
                message=f"Home directory '{resolved_home}' does not exist yet.",
            )
        )
        status = "missing"
    elif not resolved_home.is_dir():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Home path '{resolved_home}' is not a directory.",
            )
        )
        status = "invalid"
    else:
        overrides_dir = resolved_home / "config"
        if overrides_dir.exists():
            user_overrides, override_files = _load_directory_configs(
                overrides_dir,
                diagnostics,
                label="user overrides",
            )
            files_loaded.extend(override_files)

    merged = deepcopy(repo_defaults)
    _deep_merge_dicts(merged, user_overrides)

    _validate_schema(merged, diagnostics)

    if status == "ready" and any(diag.level == "error" for diag in diagnostics):
        status = "invalid"

    return ConfigurationBundle(
        home_dir=resolved_home,
        status=status,
        merged=merged,
        repo_defaults=repo_defaults,
        user_overrides=user_overrides,
        files_loaded=files_loaded,
        diagnostics=diagnostics,
    )


def _load_directory_configs(
    directory: Path,
    diagnostics: List[Diagnostic],
    label: str,
) -> Tuple[Dict[str, Any], List[Path]]:
    """Load all YAML files from a directory, merging them in order."""

    data: Dict[str, Any] = {}
    loaded_files: List[Path] = []

    if not directory.exists():
        diagnostics.append(
            Diagnostic(
                level="info",
                message=f"No configuration directory found at '{directory}' ({label}).",
                source=directory,
            )
        )
        return data, loaded_files

    if not directory.is_dir():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Configuration path '{directory}' ({label}) is not a directory.",
                source=directory,
            )
        )
        return data, loaded_files

    yaml_files = sorted(directory.glob("*.yml")) + sorted(directory.glob("*.yaml"))

    for yaml_file in yaml_files:
        try:
            content = yaml.safe_load(yaml_file.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"Failed to parse '{yaml_file}': {exc}",
                    source=yaml_file,
                )
            )
            continue

        if content is None:
            loaded_files.append(yaml_file)
            continue

        if not isinstance(content, MutableMapping):
            diagnostics.append(
                Diagnostic(
                    level="warning",
                    message=f"Ignoring '{yaml_file}' because it does not contain a mapping.",
                    source=yaml_file,
                )
            )
            continue

        _deep_merge_dicts(data, dict(content))
        loaded_files.append(yaml_file)

    return data, loaded_files


def _deep_merge_dicts(dest: MutableMapping[str, Any], source: Mapping[str, Any]) -> None:
    """Recursively merge mapping values."""

    for key, value in source.items():
        if (
            key in dest
            and isinstance(dest[key], MutableMapping)
            and isinstance(value, Mapping)
        ):
            _deep_merge_dicts(dest[key], value)
        else:
            dest[key] = deepcopy(value)


def _default_from_spec(spec: SchemaSpec) -> Any:
    if "default_factory" in spec and callable(spec["default_factory"]):
        return spec["default_factory"]()
    return deepcopy(spec.get("default"))


def _validate_schema(config: Dict[str, Any], diagnostics: List[Diagnostic]) -> None:
    _validate_section(config, CONFIG_SCHEMA, "config", diagnostics)


def _validate_section(
    target: Dict[str, Any],
    schema: SchemaSpec,
    path: str,
    diagnostics: List[Diagnostic],
) -> None:
    for key in list(target.keys()):
        if key not in schema:
            diagnostics.append(
                Diagnostic(
                    level="warning",
                    message=f"Unknown configuration key '{path}.{key}'.",
                )
            )

    for key, spec in schema.items():
        child_path = f"{path}.{key}"
        if key not in target or target[key] is None:
            if "default" in spec or "default_factory" in spec:
                target[key] = _default_from_spec(spec)
            if spec.get("type") is dict:
                _validate_section(target[key], spec.get("schema", {}), child_path, diagnostics)
            continue

        value = target[key]
        expected_type = spec.get("type")

        if expected_type is dict:
            if not isinstance(value, dict):
                diagnostics.append(
                    Diagnostic(
                        level="error",
                        message=f"'{child_path}' must be a mapping.",
                    )
                )
                target[key] = _default_from_spec(spec) or {}
                value = target[key]
            _validate_section(value, spec.get("schema", {}), child_path, diagnostics)
        elif expected_type is list:
            if not isinstance(value, list):
                diagnostics.append(
                    Diagnostic(
                        level="error",
                        message=f"'{child_path}' must be a list.",
                    )
                )
                target[key] = _default_from_spec(spec) or []
                continue
            item_type = spec.get("item_type")
            if item_type is not None:
                filtered: List[Any] = []
                for idx, item in enumerate(value):
                    if isinstance(item, item_type):
                        filtered.append(item)
                    else:
                        diagnostics.append(
                            Diagnostic(
                                level="error",
                                message=(
                                    f"'{child_path}[{idx}]' must be of type "
                                    f"{item_type.__name__}."
                                ),
                            )
                        )
                target[key] = filtered
        elif expected_type and (
            not isinstance(value, expected_type)
            or (isinstance(value, bool) and expected_type is not bool)
        ):
            if isinstance(expected_type, tuple):
                type_name = ", ".join(t.__name__ for t in expected_type)
            else:
                type_name = expected_type.__name__
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"'{child_path}' must be of type {type_name}.",
                )
            )
            target[key] = _default_from_spec(spec)


def _coerce_int(raw: object, default: int) -> int:
    if isinstance(raw, bool):
        return default
    try:
        return int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _coerce_timeout(raw: object) -> Optional[float]:
    if isinstance(raw, bool):
        return DEFAULT_TIMEOUT
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT
    # Zero or negative disables the timeout entirely.
    return value if value > 0 else None


__all__ = [
    "ConfigurationBundle",
    "ConfigurationStatus",
    "DEFAULT_CONFIG_DIR",
    "DEFAULT_PORT",
    "Diagnostic",
    "ExecutionSettings",
    "NetworkSettings",
    "ServerSettings",
    "load_runtime_configuration",
    "resolve_execution_root",
    "resolve_home_dir",
]
