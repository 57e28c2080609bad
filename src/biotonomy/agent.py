from __future__ import annotations

import logging
import os
import subprocess
from datetime import UTC, datetime
from pathlib import Path
from string import Template
from typing import Callable, Protocol

from .models import AgentRequest, AgentRun, Stage
from .settings import RuntimeSettings
from .state_store import FeatureWorkspace

logger = logging.getLogger(__name__)


class Agent(Protocol):
    """One method per workflow stage; each returns the run's exit status."""

    def research(self, request: AgentRequest) -> AgentRun:
        ...

    def plan_review(self, request: AgentRequest) -> AgentRun:
        ...

    def implement(self, request: AgentRequest) -> AgentRun:
        ...

    def review(self, request: AgentRequest) -> AgentRun:
        ...

    def fix(self, request: AgentRequest) -> AgentRun:
        ...


def get_prompt_dir() -> Path:
    """Return package-relative path to the stage prompt templates."""
    return Path(__file__).resolve().parent / "prompts"


def render_prompt(stage: Stage, context: dict[str, str]) -> str:
    path = get_prompt_dir() / f"{stage.value}.md"
    if not path.is_file():
        raise FileNotFoundError(f"Prompt template missing for stage '{stage.value}': {path}")
    return Template(path.read_text(encoding="utf-8")).safe_substitute(context)


class CodexAgent:
    """Runs the external ``codex`` CLI for every stage.

    The agent sees its stage log path in ``BT_CODEX_LOG_FILE`` and, for
    output stages, the target document in ``-o`` and ``BT_OUTPUT_FILE``.
    """

    def __init__(self, settings: RuntimeSettings) -> None:
        self.settings = settings

    def _command(self, request: AgentRequest) -> list[str]:
        command = [self.settings.codex_bin, "exec"]
        if self.settings.codex_full_auto:
            command.append("--full-auto")
        if self.settings.codex_model:
            command.extend(["-m", self.settings.codex_model])
        if request.output_path is not None:
            command.extend(["-o", request.output_path])
        command.append(request.prompt)
        return command

    def _env(self, request: AgentRequest) -> dict[str, str]:
        env = os.environ.copy()
        env["BT_FEATURE"] = request.feature
        env["BT_STAGE"] = request.stage.value
        env["BT_CODEX_LOG_FILE"] = request.log_path
        env["BT_PROJECT_ROOT"] = str(self.settings.project_root)
        if request.output_path is not None:
            env["BT_OUTPUT_FILE"] = request.output_path
        else:
            env.pop("BT_OUTPUT_FILE", None)
        if request.iteration is not None:
            env["BT_ITERATION"] = str(request.iteration)
        return env

    def _run(self, request: AgentRequest) -> AgentRun:
        log_path = Path(request.log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        command = self._command(request)
        with log_path.open("a", encoding="utf-8") as log_handle:
            log_handle.write(f"\n=== {datetime.now(UTC).isoformat()} {request.stage.value} {request.feature} ===\n")
            log_handle.flush()
            try:
                completed = subprocess.run(
                    command,
                    cwd=self.settings.project_root,
                    env=self._env(request),
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    check=False,
                )
                exit_code = completed.returncode
            except OSError as exc:
                log_handle.write(f"failed to start {command[0]}: {exc}\n")
                logger.error("agent %s could not start: %s", command[0], exc)
                exit_code = 127
        return AgentRun(
            stage=request.stage,
            exit_code=exit_code,
            log_path=request.log_path,
            output_path=request.output_path,
        )

    def research(self, request: AgentRequest) -> AgentRun:
        return self._run(request)

    def plan_review(self, request: AgentRequest) -> AgentRun:
        return self._run(request)

    def implement(self, request: AgentRequest) -> AgentRun:
        return self._run(request)

    def review(self, request: AgentRequest) -> AgentRun:
        return self._run(request)

    def fix(self, request: AgentRequest) -> AgentRun:
        return self._run(request)


class AgentInvoker:
    """Builds stage requests for a feature and normalizes the agent's result.

    For output stages the previous document is removed before the call, so a
    run that exits zero without writing a new file is reported as missing
    output instead of silently reusing stale content.
    """

    def __init__(self, agent: Agent) -> None:
        self.agent = agent

    def _handler(self, stage: Stage) -> Callable[[AgentRequest], AgentRun]:
        return {
            Stage.RESEARCH: self.agent.research,
            Stage.PLAN_REVIEW: self.agent.plan_review,
            Stage.IMPLEMENT: self.agent.implement,
            Stage.REVIEW: self.agent.review,
            Stage.FIX: self.agent.fix,
        }[stage]

    @staticmethod
    def _context(workspace: FeatureWorkspace, output_path: Path | None, iteration: int | None) -> dict[str, str]:
        return {
            "feature": workspace.feature,
            "spec_path": workspace.relative(workspace.spec_path),
            "research_path": workspace.relative(workspace.research_path),
            "plan_review_path": workspace.relative(workspace.plan_review_path),
            "review_path": workspace.relative(workspace.review_path),
            "output_path": workspace.relative(output_path) if output_path is not None else "",
            "iteration": str(iteration) if iteration is not None else "1",
        }

    def invoke(self, stage: Stage, workspace: FeatureWorkspace, *, iteration: int | None = None) -> AgentRun:
        workspace.ensure_structure()
        log_path = workspace.stage_log_path(stage)
        output_path = workspace.stage_output_path(stage)
        if output_path is not None and output_path.exists():
            output_path.unlink()

        request = AgentRequest(
            stage=stage,
            feature=workspace.feature,
            prompt=render_prompt(stage, self._context(workspace, output_path, iteration)),
            log_path=str(log_path),
            output_path=str(output_path) if output_path is not None else None,
            iteration=iteration,
        )
        logger.info("agent %s for %s%s", stage.value, workspace.feature, f" (iter {iteration})" if iteration else "")
        run = self._handler(stage)(request)

        output_text: str | None = None
        if output_path is not None and output_path.is_file():
            output_text = output_path.read_text(encoding="utf-8", errors="replace")
        run = run.model_copy(
            update={
                "stage": stage,
                "log_path": str(log_path),
                "output_path": str(output_path) if output_path is not None else None,
                "output_text": output_text,
            }
        )
        if run.exit_code != 0:
            logger.error("agent %s exited %s (log: %s)", stage.value, run.exit_code, log_path)
        elif run.missing_output:
            logger.error("agent %s exited 0 but wrote no output to %s", stage.value, output_path)
        return run
