from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

ENV_FILE_NAME = ".bt.env"
GATE_ENV_PREFIX = "GATE_"
CANONICAL_GATE_ORDER = ("lint", "typecheck", "test")
DEFAULT_TRACKED_PATHS = ("src", "lib", "app", "tests", "test", "scripts", "bin", "commands", "prompts")


@dataclass(frozen=True)
class GateConfig:
    """Ordered ``{gate name: shell command}`` mapping.

    An empty mapping is the explicit "no gates configured" sentinel.
    """

    commands: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, env: Mapping[str, str]) -> "GateConfig":
        found: dict[str, str] = {}
        for key, value in env.items():
            if not key.startswith(GATE_ENV_PREFIX):
                continue
            name = key[len(GATE_ENV_PREFIX):].strip().lower()
            command = (value or "").strip()
            if name and command:
                found[name] = command
        return cls(commands=_ordered_gates(found))

    @property
    def configured(self) -> bool:
        return bool(self.commands)

    def names(self) -> list[str]:
        return list(self.commands)


def _ordered_gates(found: dict[str, str]) -> dict[str, str]:
    ordered = {name: found[name] for name in CANONICAL_GATE_ORDER if name in found}
    for name in sorted(found):
        ordered.setdefault(name, found[name])
    return ordered


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    project_root: Path = field(default_factory=Path.cwd)
    specs_dir: str = "specs"
    state_dir: str = ".bt"
    codex_bin: str = "codex"
    codex_model: str = ""
    codex_full_auto: bool = True
    max_iterations: int = 5
    notify_hook: str = ""
    tracked_paths: tuple[str, ...] = DEFAULT_TRACKED_PATHS
    base_branch: str = ""
    gh_bin: str = "gh"
    recursion_limit: int = 1_000
    gates: GateConfig = field(default_factory=GateConfig)

    @classmethod
    def from_env(cls, project_root: Path | None = None) -> "RuntimeSettings":
        root = (project_root if project_root is not None else Path(os.getenv("BT_PROJECT_ROOT") or Path.cwd())).resolve()
        env_path = root / ENV_FILE_NAME
        if env_path.is_file():
            # Values already exported in the process environment win over the file.
            load_dotenv(env_path, override=False)
        return cls(
            project_root=root,
            specs_dir=os.getenv("BT_SPECS_DIR", "specs"),
            state_dir=os.getenv("BT_STATE_DIR", ".bt"),
            codex_bin=os.getenv("BT_CODEX_BIN", "codex"),
            codex_model=os.getenv("BT_CODEX_MODEL", ""),
            codex_full_auto=_get_env_bool("BT_CODEX_FULL_AUTO", default=True),
            max_iterations=_get_env_int("BT_MAX_ITERATIONS", default=5, minimum=1, maximum=1_000),
            notify_hook=os.getenv("BT_NOTIFY_HOOK", ""),
            tracked_paths=_get_env_list("BT_TRACKED_PATHS", default=DEFAULT_TRACKED_PATHS),
            base_branch=os.getenv("BT_BASE_BRANCH", ""),
            gh_bin=os.getenv("BT_GH_BIN", "gh"),
            recursion_limit=_get_env_int("BT_RECURSION_LIMIT", default=1_000, minimum=25),
            gates=GateConfig.from_mapping(os.environ),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        specs_dir = self.specs_dir.strip()
        if not specs_dir:
            raise ValueError("BT_SPECS_DIR must be non-empty")
        state_dir = self.state_dir.strip()
        if not state_dir:
            raise ValueError("BT_STATE_DIR must be non-empty")
        codex_bin = self.codex_bin.strip()
        if not codex_bin:
            raise ValueError("BT_CODEX_BIN must be non-empty")
        gh_bin = self.gh_bin.strip()
        if not gh_bin:
            raise ValueError("BT_GH_BIN must be non-empty")
        if self.max_iterations < 1:
            raise ValueError(f"BT_MAX_ITERATIONS must be >= 1, got: {self.max_iterations}")
        for raw in (specs_dir, state_dir):
            if ".." in Path(raw).parts:
                raise ValueError(f"directory setting must not contain '..': {raw}")
        return RuntimeSettings(
            project_root=self.project_root,
            specs_dir=specs_dir,
            state_dir=state_dir,
            codex_bin=codex_bin,
            codex_model=self.codex_model.strip(),
            codex_full_auto=self.codex_full_auto,
            max_iterations=self.max_iterations,
            notify_hook=self.notify_hook.strip(),
            tracked_paths=tuple(path.strip().strip("/") for path in self.tracked_paths if path.strip().strip("/")),
            base_branch=self.base_branch.strip(),
            gh_bin=gh_bin,
            recursion_limit=self.recursion_limit,
            gates=self.gates,
        )

    @property
    def specs_path(self) -> Path:
        path = Path(self.specs_dir)
        return path if path.is_absolute() else self.project_root / path

    @property
    def state_path(self) -> Path:
        path = Path(self.state_dir)
        return path if path.is_absolute() else self.project_root / path

    @property
    def global_gates_report_path(self) -> Path:
        return self.state_path / "state" / "gates.json"


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean, got: {raw!r}")


def _get_env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())
