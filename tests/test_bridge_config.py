"""Tests for env, YAML and CLI configuration layering."""

from __future__ import annotations

from pathlib import Path

import pytest

from spark_bridge.app import _build_parser, build_config
from spark_bridge.engine.config import DEFAULT_MODEL, DEFAULT_PORT, BridgeConfig
from spark_bridge.engine.errors import ConfigError
from spark_bridge.engine.yaml_config import load_yaml_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in (
        "SPARK_PORT", "SPARK_HOST", "SPARK_PROJECT_ROOT", "SPARK_MODEL",
        "SPARK_CONCURRENCY", "SPARK_DRY_RUN", "SPARK_REQUIRE_PROJECT_ROOT",
        "SPARK_IMAGE_MODEL", "SPARK_CALL_TIMEOUT", "SPARK_CODEX_COMMAND",
        "SPARK_LOG_LEVEL", "GEMINI_API_KEY", "BRIDGE_TEST_ROOT",
    ):
        monkeypatch.delenv(key, raising=False)


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    config = BridgeConfig.from_env()

    assert config.port == DEFAULT_PORT
    assert config.model == DEFAULT_MODEL
    assert config.concurrency == 1
    assert config.dry_run is False
    assert config.require_project_root is False
    assert config.image_api_key is None
    assert Path(config.project_root).resolve() == tmp_path.resolve()


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("SPARK_PORT", "4100")
    monkeypatch.setenv("SPARK_PROJECT_ROOT", "/srv/shop")
    monkeypatch.setenv("SPARK_MODEL", "gpt-x")
    monkeypatch.setenv("SPARK_CONCURRENCY", "3")
    monkeypatch.setenv("SPARK_DRY_RUN", "yes")
    monkeypatch.setenv("SPARK_REQUIRE_PROJECT_ROOT", "1")
    monkeypatch.setenv("GEMINI_API_KEY", "g-key")

    config = BridgeConfig.from_env()

    assert config.port == 4100
    assert config.project_root == "/srv/shop"
    assert config.model == "gpt-x"
    assert config.concurrency == 3
    assert config.dry_run is True
    assert config.require_project_root is True
    assert config.image_api_key == "g-key"


def test_invalid_concurrency_clamped():
    assert BridgeConfig(project_root="/", concurrency=0).concurrency == 1
    assert BridgeConfig(project_root="/", concurrency=-4).concurrency == 1


def test_yaml_layer(tmp_path, monkeypatch):
    monkeypatch.setenv("BRIDGE_TEST_ROOT", "/srv/from-env")
    path = tmp_path / "bridge.yaml"
    path.write_text(
        "bridge:\n"
        "  port: 3900\n"
        "  project_root: ${BRIDGE_TEST_ROOT}\n"
        "  concurrency: 2\n"
        "  not_a_setting: 1\n"
    )
    base = BridgeConfig(project_root="/srv/base", model="gpt-base")

    config = load_yaml_config(path, base=base)

    assert config.port == 3900
    assert config.project_root == "/srv/from-env"
    assert config.concurrency == 2
    assert config.model == "gpt-base"
    assert not hasattr(config, "not_a_setting")


def test_yaml_without_bridge_section(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    config = load_yaml_config(path, base=BridgeConfig(project_root="/srv/a"))
    assert config.project_root == "/srv/a"


def test_yaml_errors(tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("bridge: [unclosed\n")
    with pytest.raises(ConfigError):
        load_yaml_config(bad)

    scalar = tmp_path / "scalar.yaml"
    scalar.write_text("just a string\n")
    with pytest.raises(ConfigError):
        load_yaml_config(scalar)

    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml")


def test_cli_flags_override_yaml_and_env(tmp_path, monkeypatch):
    monkeypatch.setenv("SPARK_MODEL", "gpt-env")
    monkeypatch.setenv("SPARK_PORT", "4000")
    path = tmp_path / "bridge.yaml"
    path.write_text("bridge:\n  port: 3900\n  model: gpt-yaml\n")

    args = _build_parser().parse_args([
        "--config", str(path),
        "--port", "3800",
        "--project", str(tmp_path),
        "--concurrency", "0",
        "--dry-run",
        "--require-project-root",
        "--banana-model", "gemini-test",
        "-v",
    ])
    config = build_config(args)

    assert config.port == 3800
    assert config.model == "gpt-yaml"
    assert config.project_root == str(tmp_path.resolve())
    assert config.concurrency == 1
    assert config.dry_run is True
    assert config.require_project_root is True
    assert config.image_model == "gemini-test"
    assert config.log_level == "DEBUG"


def test_yaml_strings_coerced_to_field_types(tmp_path):
    path = tmp_path / "bridge.yaml"
    path.write_text(
        "bridge:\n"
        '  port: "3901"\n'
        '  concurrency: "2"\n'
        '  dry_run: "yes"\n'
        '  first_call_idle_seconds: "45"\n'
        "  image_model: null\n"
    )

    config = load_yaml_config(path, base=BridgeConfig(project_root="/srv/a"))

    assert config.port == 3901
    assert config.concurrency == 2
    assert config.dry_run is True
    assert config.first_call_idle_seconds == 45.0
    assert config.image_model is None


def test_yaml_bad_values_raise_config_error(tmp_path):
    cases = [
        'concurrency: "two"',
        "dry_run: maybe",
        "port: true",
        "model: null",
    ]
    for line in cases:
        path = tmp_path / "bridge.yaml"
        path.write_text(f"bridge:\n  {line}\n")
        with pytest.raises(ConfigError, match="bridge\\."):
            load_yaml_config(path, base=BridgeConfig(project_root="/srv/a"))
