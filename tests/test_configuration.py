"""Tests for the home-directory configuration loader."""

from __future__ import annotations

from pathlib import Path

import pytest

from tillsync import configuration


def _prepare_repo_defaults(tmp_path: Path, content: str = "runtime:\n  name: tillsync\n") -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "10-default.yml").write_text(content, encoding="utf-8")
    return config_dir


def _write_override(home: Path, content: str) -> None:
    cfg_dir = home / "config"
    cfg_dir.mkdir(parents=True, exist_ok=True)
    (cfg_dir / "local.yml").write_text(content, encoding="utf-8")


def test_resolve_home_dir_uses_env_expansion(tmp_path: Path):
    env = {"TILLSYNC_HOME": str(tmp_path / "home")}
    path = configuration.resolve_home_dir(env=env)
    assert path == tmp_path / "home"


def test_load_runtime_configuration_merges_repo_and_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(tmp_path, content="server:\n  port: 8080\n  host: 0.0.0.0\n")
    home_dir = tmp_path / "home"
    _write_override(home_dir, "server:\n  port: 9090\n")

    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)

    bundle = configuration.load_runtime_configuration(home_dir)

    assert bundle.status == "ready"
    assert bundle.merged["server"]["port"] == 9090
    assert bundle.merged["server"]["host"] == "0.0.0.0"
    assert len(bundle.files_loaded) == 2


def test_missing_sections_get_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(tmp_path)
    home_dir = tmp_path / "home"
    home_dir.mkdir()
    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)

    bundle = configuration.load_runtime_configuration(home_dir)

    assert bundle.section("sync")["queue_max_attempts"] == 10
    assert bundle.section("client")["retry_delays"] == [1, 2, 4, 8, 16]
    assert bundle.section("server")["database"] == "state/server.db"


def test_load_runtime_configuration_reports_missing_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(tmp_path)
    missing_home = tmp_path / "missing"
    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)

    bundle = configuration.load_runtime_configuration(missing_home)

    assert bundle.status == "missing"
    assert any(diag.level == "error" for diag in bundle.diagnostics)


def test_load_runtime_configuration_handles_bad_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(tmp_path)
    home_dir = tmp_path / "home"
    _write_override(home_dir, "sync: [\n")

    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)

    bundle = configuration.load_runtime_configuration(home_dir)

    assert bundle.status == "invalid"
    assert any("Failed to parse" in diag.message for diag in bundle.diagnostics)


def test_invalid_types_raise_diagnostics(tmp_path: Path):
    home = tmp_path / "home"
    _write_override(
        home,
        """
        sync:
          max_upload_batch: "lots"
        client:
          enabled: 1
        """,
    )

    bundle = configuration.load_runtime_configuration(home)

    assert bundle.status == "invalid"
    assert any("max_upload_batch" in diag.message for diag in bundle.diagnostics)
    assert any("client.enabled" in diag.message for diag in bundle.diagnostics)
    assert bundle.section("sync")["max_upload_batch"] == 1000


def test_booleans_are_not_numbers(tmp_path: Path):
    home = tmp_path / "home"
    _write_override(home, "server:\n  port: true\n")

    bundle = configuration.load_runtime_configuration(home)

    assert any("server.port" in diag.message for diag in bundle.diagnostics)
    assert bundle.section("server")["port"] == 8080


def test_unknown_keys_warn(tmp_path: Path):
    home = tmp_path / "home"
    _write_override(home, "mystery:\n  value: 1\n")

    bundle = configuration.load_runtime_configuration(home)

    assert bundle.status == "ready"
    assert any("Unknown configuration key" in diag.message for diag in bundle.diagnostics)


def test_resolve_path_is_relative_to_home(tmp_path: Path):
    bundle = configuration.ConfigurationBundle(home_dir=tmp_path, status="ready")

    assert bundle.resolve_path("state/server.db") == tmp_path / "state" / "server.db"
    assert bundle.resolve_path(str(tmp_path / "abs.db")) == tmp_path / "abs.db"


def test_environment_overrides_log_level(tmp_path: Path):
    bundle = configuration.ConfigurationBundle(home_dir=tmp_path, status="ready", merged={})

    configuration.apply_environment_overrides(bundle, env={"TILLSYNC_LOG_LEVEL": "debug"})

    assert bundle.merged["logging"]["level"] == "DEBUG"


def test_out_of_range_values_fall_back_to_defaults(tmp_path: Path):
    home = tmp_path / "home"
    _write_override(
        home,
        """
        runtime:
          environment: staging
        server:
          port: 70000
        sync:
          queue_max_attempts: 0
          download_limit: 2000
        client:
          server_url: ftp://example.com
          device_id: till-1
          retry_delays: [1, -2]
        """,
    )

    bundle = configuration.load_runtime_configuration(home)
    messages = [diag.message for diag in bundle.diagnostics]

    assert bundle.status == "invalid"
    assert bundle.section("runtime")["environment"] == "production"
    assert bundle.section("server")["port"] == 8080
    assert bundle.section("sync")["queue_max_attempts"] == 10
    assert bundle.section("client")["server_url"] == "http://127.0.0.1:8080"
    assert bundle.section("client")["device_id"] == ""
    assert bundle.section("client")["retry_delays"] == [1, 2, 4, 8, 16]
    assert any("download_limit' exceeds" in message for message in messages)


def test_log_level_is_normalized(tmp_path: Path):
    home = tmp_path / "home"
    _write_override(home, "logging:\n  level: debug\n")

    bundle = configuration.load_runtime_configuration(home)

    assert bundle.status == "ready"
    assert bundle.section("logging")["level"] == "DEBUG"
