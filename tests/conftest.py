from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import Callable

import pytest

from biotonomy.models import AgentRequest, AgentRun, Stage
from biotonomy.settings import GateConfig, RuntimeSettings

DEFAULT_OUTPUTS = {
    Stage.RESEARCH: "# Research\n\nNothing surprising.\n",
    Stage.PLAN_REVIEW: "Verdict: APPROVED_PLAN\n\nPlan is sound.\n",
    Stage.REVIEW: "Verdict: APPROVED\n\nLooks good.\n",
}

FAKE_CODEX_SCRIPT = """#!/bin/sh
out=""
while [ $# -gt 0 ]; do
  case "$1" in
    -o) out="$2"; shift 2 ;;
    *) shift ;;
  esac
done
echo "codex stage=$BT_STAGE feature=$BT_FEATURE"
if [ -n "$out" ]; then
  case "$BT_STAGE" in
    plan-review) printf 'Verdict: APPROVED_PLAN\\n' > "$out" ;;
    review) printf 'Verdict: APPROVED\\n' > "$out" ;;
    *) printf '# %s\\n' "$BT_STAGE" > "$out" ;;
  esac
fi
exit 0
"""


class FakeAgent:
    """Scripted stand-in for the coding agent.

    ``outputs`` maps a stage to the documents it writes on successive calls
    (``None`` writes nothing); ``exit_codes`` maps a stage to successive exit
    codes. Exhausted scripts fall back to exit 0 and the default document.
    """

    def __init__(
        self,
        *,
        outputs: dict[Stage, list[str | None]] | None = None,
        exit_codes: dict[Stage, list[int]] | None = None,
        side_effects: dict[Stage, Callable[[AgentRequest], None]] | None = None,
    ) -> None:
        self.outputs = {stage: list(texts) for stage, texts in (outputs or {}).items()}
        self.exit_codes = {stage: list(codes) for stage, codes in (exit_codes or {}).items()}
        self.side_effects = dict(side_effects or {})
        self.calls: list[str] = []
        self.requests: list[AgentRequest] = []

    def _handle(self, stage: Stage, request: AgentRequest) -> AgentRun:
        self.calls.append(stage.value)
        self.requests.append(request)
        codes = self.exit_codes.get(stage)
        exit_code = codes.pop(0) if codes else 0
        if stage in self.side_effects:
            self.side_effects[stage](request)
        if request.output_path is not None and exit_code == 0:
            scripted = self.outputs.get(stage)
            text = scripted.pop(0) if scripted else DEFAULT_OUTPUTS[stage]
            if text is not None:
                Path(request.output_path).write_text(text, encoding="utf-8")
        return AgentRun(stage=stage, exit_code=exit_code, log_path=request.log_path, output_path=request.output_path)

    def research(self, request: AgentRequest) -> AgentRun:
        return self._handle(Stage.RESEARCH, request)

    def plan_review(self, request: AgentRequest) -> AgentRun:
        return self._handle(Stage.PLAN_REVIEW, request)

    def implement(self, request: AgentRequest) -> AgentRun:
        return self._handle(Stage.IMPLEMENT, request)

    def review(self, request: AgentRequest) -> AgentRun:
        return self._handle(Stage.REVIEW, request)

    def fix(self, request: AgentRequest) -> AgentRun:
        return self._handle(Stage.FIX, request)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch):
    """Keep BT_*/GATE_* variables (including ones load_dotenv sets) out of other tests."""
    for key in list(os.environ):
        if key.startswith(("BT_", "GATE_")):
            monkeypatch.delenv(key)
    saved = dict(os.environ)
    yield
    os.environ.clear()
    os.environ.update(saved)


def make_settings(root: Path, *, gates: dict[str, str] | None = None, **overrides) -> RuntimeSettings:  # noqa: ANN003
    return RuntimeSettings(
        project_root=root,
        gates=GateConfig(commands={"test": "true"} if gates is None else gates),
        **overrides,
    ).normalized()


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return make_settings(tmp_path)


def write_feature(
    root: Path,
    feature: str = "feat",
    *,
    plan_verdict: str | None = "APPROVED_PLAN",
    specs_dir: str = "specs",
) -> Path:
    directory = root / specs_dir / feature
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "SPEC.md").write_text(f"# {feature} title\n\nBuild the thing.\n", encoding="utf-8")
    if plan_verdict is not None:
        (directory / "PLAN_REVIEW.md").write_text(f"Verdict: {plan_verdict}\n", encoding="utf-8")
    return directory


def write_executable(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    path.chmod(0o755)
    return path


@pytest.fixture
def fake_codex(tmp_path: Path) -> Path:
    return write_executable(tmp_path / "fake-codex", FAKE_CODEX_SCRIPT)


def git(root: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(["git", *args], cwd=root, capture_output=True, text=True, check=True)


@pytest.fixture
def git_repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    for key, value in {
        "GIT_AUTHOR_NAME": "Test",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test",
        "GIT_COMMITTER_EMAIL": "test@example.com",
    }.items():
        monkeypatch.setenv(key, value)
    root = tmp_path / "repo"
    root.mkdir()
    git(root, "init", "-q")
    git(root, "checkout", "-q", "-b", "main")
    git(root, "config", "commit.gpgsign", "false")
    return root
