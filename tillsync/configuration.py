"""Home-directory configuration loading for tillsync."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
import uuid
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Tuple

import yaml

REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_DIR = REPO_ROOT / "config"
HOME_ENV = "TILLSYNC_HOME"
LOG_LEVEL_ENV = "TILLSYNC_LOG_LEVEL"
DEFAULT_HOME = "~/.tillsync"

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "missing", "invalid"]


SchemaSpec = Dict[str, Any]

DEFAULT_RETRY_DELAYS: List[int] = [1, 2, 4, 8, 16]


CONFIG_SCHEMA: SchemaSpec = {
    "runtime": {
        "type": dict,
        "schema": {
            "name": {"type": str, "default": "tillsync"},
            "environment": {"type": str, "default": "production"},
        },
        "default": {},
    },
    "logging": {
        "type": dict,
        "schema": {
            "level": {"type": str, "default": "INFO"},
            "structured": {"type": bool, "default": True},
        },
        "default": {},
    },
    "server": {
        "type": dict,
        "schema": {
            "host": {"type": str, "default": "127.0.0.1"},
            "port": {"type": int, "default": 8080},
            "cors_origins": {"type": list, "item_type": str, "default_factory": list},
            "database": {"type": str, "default": "state/server.db"},
        },
        "default": {},
    },
    "sync": {
        "type": dict,
        "schema": {
            "max_upload_batch": {"type": int, "default": 1000},
            "download_limit": {"type": int, "default": 500},
            "max_download_limit": {"type": int, "default": 1000},
            "batch_download_limit": {"type": int, "default": 100},
            "max_batch_download_limit": {"type": int, "default": 500},
            "max_dependency_fetch": {"type": int, "default": 100},
            "max_clock_skew_seconds": {"type": (int, float), "default": 300},
            "queue_max_attempts": {"type": int, "default": 10},
        },
        "default": {},
    },
    "client": {
        "type": dict,
        "schema": {
            "enabled": {"type": bool, "default": False},
            "server_url": {"type": str, "default": "http://127.0.0.1:8080"},
            "device_id": {"type": str, "default": ""},
            "database": {"type": str, "default": "state/device.db"},
            "timeout": {"type": (int, float), "default": 30},
            "batch_size": {"type": int, "default": 500},
            "retry_delays": {
                "type": list,
                "item_type": (int, float),
                "default_factory": lambda: list(DEFAULT_RETRY_DELAYS),
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
    """All configuration data tillsync needs at runtime."""

    home_dir: Path
    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    repo_defaults: Dict[str, Any] = field(default_factory=dict)
    home_overrides: Dict[str, Any] = field(default_factory=dict)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    log_path: Optional[Path] = None

    def section(self, name: str) -> Dict[str, Any]:
        value = self.merged.get(name)
        return value if isinstance(value, dict) else {}

    def resolve_path(self, raw: str) -> Path:
        """Paths in the config are relative to the home directory."""
        path = Path(raw).expanduser()
        return path if path.is_absolute() else self.home_dir / path


def resolve_home_dir(
    env: Optional[Mapping[str, str]] = None,
    default: str = DEFAULT_HOME,
) -> Path:
    """Resolve the home directory from the environment."""

    env_source = env or os.environ
    raw = env_source.get(HOME_ENV, default)
    return Path(raw).expanduser()


def load_runtime_configuration(home_dir: Optional[Path] = None) -> ConfigurationBundle:
    """Load configuration defaults and home-directory overrides."""

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
    home_overrides: Dict[str, Any] = {}

    if not resolved_home.exists():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Home directory '{resolved_home}' does not exist.",
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
        home_overrides, override_files = _load_directory_configs(
            overrides_dir,
            diagnostics,
            label="home overrides",
        )
        files_loaded.extend(override_files)

    merged = deepcopy(repo_defaults)
    _deep_merge_dicts(merged, home_overrides)

    _validate_schema(merged, diagnostics)
    _validate_values(merged, diagnostics)

    if status == "ready" and any(diag.level == "error" for diag in diagnostics):
        status = "invalid"

    return ConfigurationBundle(
        home_dir=resolved_home,
        status=status,
        merged=merged,
        repo_defaults=repo_defaults,
        home_overrides=home_overrides,
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


def _type_name(expected: Any) -> str:
    if isinstance(expected, tuple):
        return ", ".join(t.__name__ for t in expected)
    return expected.__name__


def _matches(value: Any, expected: Any) -> bool:
    # YAML booleans are ints to isinstance(); never let them pass as numbers.
    if isinstance(value, bool) and expected is not bool:
        return isinstance(expected, tuple) and bool in expected
    return isinstance(value, expected)


def _validate_schema(config: Dict[str, Any], diagnostics: List[Diagnostic]) -> None:
    _validate_section(config, CONFIG_SCHEMA, "config", diagnostics)


def _validate_section(
    target: Dict[str, Any],
    schema: SchemaSpec,
    path: str,
    diagnostics: List[Diagnostic],
) -> None:
    if not isinstance(target, dict):
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Configuration section '{path}' must be a mapping.",
            )
        )
        return

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
        expected_type = spec.get("type")

        if key not in target:
            if "default" in spec or "default_factory" in spec:
                target[key] = _default_from_spec(spec)
            if expected_type is dict and isinstance(target.get(key), dict):
                _validate_section(target[key], spec.get("schema", {}), child_path, diagnostics)
            continue

        value = target[key]

        if expected_type is dict:
            if not isinstance(value, dict):
                diagnostics.append(
                    Diagnostic(
                        level="error",
                        message=f"'{child_path}' must be a mapping.",
                    )
                )
                target[key] = _default_from_spec(spec) or {}
            _validate_section(target[key], spec.get("schema", {}), child_path, diagnostics)
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
                    if _matches(item, item_type):
                        filtered.append(item)
                    else:
                        diagnostics.append(
                            Diagnostic(
                                level="error",
                                message=(
                                    f"'{child_path}[{idx}]' must be of type "
                                    f"{_type_name(item_type)}."
                                ),
                            )
                        )
                target[key] = filtered
        elif expected_type and not _matches(value, expected_type):
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"'{child_path}' must be of type {_type_name(expected_type)}.",
                )
            )
            target[key] = _default_from_spec(spec)


_ENVIRONMENTS = ("production", "development")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_POSITIVE_SYNC_KEYS = (
    "max_upload_batch",
    "download_limit",
    "max_download_limit",
    "batch_download_limit",
    "max_batch_download_limit",
    "max_dependency_fetch",
    "queue_max_attempts",
)
# (default key, cap key): a default above its cap would never be served.
_LIMIT_PAIRS = (
    ("download_limit", "max_download_limit"),
    ("batch_download_limit", "max_batch_download_limit"),
)


def _validate_values(config: Dict[str, Any], diagnostics: List[Diagnostic]) -> None:
    """Check value ranges that the type schema cannot express."""

    def _error(message: str) -> None:
        diagnostics.append(Diagnostic(level="error", message=message))

    runtime = config.get("runtime", {})
    if runtime.get("environment") not in _ENVIRONMENTS:
        _error(f"'config.runtime.environment' must be one of {', '.join(_ENVIRONMENTS)}.")
        runtime["environment"] = "production"

    logging_cfg = config.get("logging", {})
    level = str(logging_cfg.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        _error(f"'config.logging.level' must be one of {', '.join(_LOG_LEVELS)}.")
        level = "INFO"
    logging_cfg["level"] = level

    port = config.get("server", {}).get("port", 8080)
    if not 0 < port < 65536:
        _error("'config.server.port' must be between 1 and 65535.")
        config["server"]["port"] = 8080

    sync = config.get("sync", {})
    sync_schema = CONFIG_SCHEMA["sync"]["schema"]
    for key in _POSITIVE_SYNC_KEYS:
        if sync.get(key, 1) < 1:
            _error(f"'config.sync.{key}' must be a positive integer.")
            sync[key] = sync_schema[key]["default"]
    if sync.get("max_clock_skew_seconds", 300) <= 0:
        _error("'config.sync.max_clock_skew_seconds' must be greater than zero.")
        sync["max_clock_skew_seconds"] = sync_schema["max_clock_skew_seconds"]["default"]
    for default_key, cap_key in _LIMIT_PAIRS:
        if default_key in sync and cap_key in sync and sync[default_key] > sync[cap_key]:
            diagnostics.append(
                Diagnostic(
                    level="warning",
                    message=(
                        f"'config.sync.{default_key}' exceeds '{cap_key}'; "
                        f"requests will be capped at {sync[cap_key]}."
                    ),
                )
            )

    client = config.get("client", {})
    server_url = client.get("server_url", "")
    if not server_url.startswith(("http://", "https://")):
        _error("'config.client.server_url' must be an http:// or https:// URL.")
        client["server_url"] = CONFIG_SCHEMA["client"]["schema"]["server_url"]["default"]
    device_id = client.get("device_id", "")
    if device_id:
        try:
            uuid.UUID(device_id)
        except ValueError:
            _error("'config.client.device_id' must be a UUID when set.")
            client["device_id"] = ""
    if any(delay < 0 for delay in client.get("retry_delays", [])):
        _error("'config.client.retry_delays' must not contain negative delays.")
        client["retry_delays"] = list(DEFAULT_RETRY_DELAYS)


def apply_environment_overrides(
    bundle: ConfigurationBundle,
    env: Optional[Mapping[str, str]] = None,
) -> ConfigurationBundle:
    """Apply ``TILLSYNC_LOG_LEVEL`` on top of the merged configuration."""

    env_source = env or os.environ
    level = env_source.get(LOG_LEVEL_ENV)
    if level:
        bundle.merged.setdefault("logging", {})["level"] = level.upper()
    return bundle


__all__ = [
    "CONFIG_SCHEMA",
    "ConfigurationBundle",
    "ConfigurationStatus",
    "DEFAULT_CONFIG_DIR",
    "Diagnostic",
    "HOME_ENV",
    "LOG_LEVEL_ENV",
    "apply_environment_overrides",
    "load_runtime_configuration",
    "resolve_home_dir",
]
