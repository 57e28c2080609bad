from __future__ import annotations

from pathlib import Path

import pytest

from biotonomy.errors import UsageError
from biotonomy.settings import DEFAULT_TRACKED_PATHS, GateConfig, RuntimeSettings
from biotonomy.utils import parse_positive_int, sanitize_feature_name, validate_feature_slug


def test_runtime_settings_defaults(tmp_path: Path) -> None:
    settings = RuntimeSettings.from_env(tmp_path)
    assert settings.project_root == tmp_path.resolve()
    assert settings.specs_path == tmp_path.resolve() / "specs"
    assert settings.state_path == tmp_path.resolve() / ".bt"
    assert settings.codex_bin == "codex"
    assert settings.max_iterations == 5
    assert settings.tracked_paths == DEFAULT_TRACKED_PATHS
    assert settings.gates.configured is False


def test_env_file_is_loaded_and_exported_values_win(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".bt.env").write_text(
        "BT_SPECS_DIR=from-file\nBT_MAX_ITERATIONS=7\nGATE_TEST=pytest -q\nGATE_LINT=ruff check .\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("BT_SPECS_DIR", "exported")
    settings = RuntimeSettings.from_env(tmp_path)
    assert settings.specs_dir == "exported"
    assert settings.max_iterations == 7
    assert settings.gates.commands == {"lint": "ruff check .", "test": "pytest -q"}


def test_project_root_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BT_PROJECT_ROOT", str(tmp_path))
    assert RuntimeSettings.from_env().project_root == tmp_path.resolve()


def test_runtime_settings_validation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BT_MAX_ITERATIONS", "0")
    with pytest.raises(ValueError, match="BT_MAX_ITERATIONS"):
        RuntimeSettings.from_env(tmp_path)
    monkeypatch.setenv("BT_MAX_ITERATIONS", "lots")
    with pytest.raises(ValueError, match="must be an integer"):
        RuntimeSettings.from_env(tmp_path)
    monkeypatch.delenv("BT_MAX_ITERATIONS")
    monkeypatch.setenv("BT_CODEX_FULL_AUTO", "maybe")
    with pytest.raises(ValueError, match="boolean"):
        RuntimeSettings.from_env(tmp_path)

    with pytest.raises(ValueError, match=r"\.\."):
        RuntimeSettings(project_root=tmp_path, specs_dir="../elsewhere").normalized()
    with pytest.raises(ValueError, match="BT_CODEX_BIN"):
        RuntimeSettings(project_root=tmp_path, codex_bin="  ").normalized()


def test_tracked_paths_are_normalized(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BT_TRACKED_PATHS", " src/ , ,lib")
    assert RuntimeSettings.from_env(tmp_path).tracked_paths == ("src", "lib")


def test_gate_config_orders_canonical_gates_first() -> None:
    config = GateConfig.from_mapping(
        {
            "GATE_TEST": "pytest",
            "GATE_DOCS": "mkdocs build",
            "GATE_LINT": "ruff check .",
            "GATE_TYPECHECK": "mypy src",
            "GATE_AUDIT": "pip-audit",
            "GATE_EMPTY": "   ",
            "PATH": "/usr/bin",
        }
    )
    assert config.names() == ["lint", "typecheck", "test", "audit", "docs"]
    assert config.configured


def test_gate_config_empty_is_not_configured() -> None:
    assert GateConfig.from_mapping({"HOME": "/root"}).configured is False


@pytest.mark.parametrize("name", ["feat", "add-login", "v1.2_fix", "A"])
def test_validate_feature_slug_accepts_safe_names(name: str) -> None:
    assert validate_feature_slug(name) == name


@pytest.mark.parametrize("name", ["", "  ", "../etc", "a/b", "a\\b", "/abs", ".hidden", "has space", "x" * 81, " lead"])
def test_validate_feature_slug_rejects_unsafe_names(name: str) -> None:
    with pytest.raises(UsageError):
        validate_feature_slug(name)


def test_sanitize_feature_name() -> None:
    assert sanitize_feature_name("Add dark mode!") == "Add_dark_mode_"
    assert ".." not in sanitize_feature_name("a...b/../c")
    with pytest.raises(UsageError):
        sanitize_feature_name("///")


@pytest.mark.parametrize("raw", ["0", "-1", "abc", "1.5", "", True])
def test_parse_positive_int_rejects(raw: object) -> None:
    with pytest.raises(UsageError):
        parse_positive_int(raw, name="--max-iterations")  # type: ignore[arg-type]


def test_parse_positive_int_accepts() -> None:
    assert parse_positive_int("3", name="n") == 3
    assert parse_positive_int(" 12 ", name="n") == 12
    assert parse_positive_int(4, name="n") == 4
