from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import PreconditionError, StageFailure
from .gates import GateRunner
from .loops import require_spec
from .models import GateReport
from .settings import RuntimeSettings
from .state_store import FeatureWorkspace
from .vcs import GitRepo, comment_on_pull_request, create_pull_request, ensure_feature_files_staged

logger = logging.getLogger(__name__)

_MAX_ARTIFACT_CHARS = 12_000


@dataclass(frozen=True)
class SubmitOptions:
    dry_run: bool = False
    no_commit: bool = False
    title: str | None = None


@dataclass
class SubmitResult:
    feature: str
    base: str
    title: str
    body: str
    artifacts: str
    gates: GateReport
    dry_run: bool
    commit: str | None = None
    head: str | None = None
    pr_url: str | None = None


def tracked_prefixes(settings: RuntimeSettings, workspace: FeatureWorkspace) -> list[str]:
    return [*settings.tracked_paths, workspace.relative(workspace.root)]


def spec_title(workspace: FeatureWorkspace) -> str:
    if workspace.spec_path.is_file():
        for line in workspace.spec_path.read_text(encoding="utf-8").splitlines():
            if line.startswith("# "):
                return line[2:].strip()
    return workspace.feature


def render_artifacts_section(workspace: FeatureWorkspace) -> str:
    parts = ["## Artifacts", ""]
    for path in workspace.artifact_files():
        content = path.read_text(encoding="utf-8", errors="replace")
        if len(content) > _MAX_ARTIFACT_CHARS:
            content = content[:_MAX_ARTIFACT_CHARS] + "\n... (truncated)"
        parts.extend([f"### `{workspace.relative(path)}`", "", "```", content.rstrip("\n"), "```", ""])
    return "\n".join(parts)


def render_pr_body(workspace: FeatureWorkspace, gates: GateReport) -> str:
    lines = [
        f"Feature: `{workspace.feature}`",
        "",
        f"Spec: `{workspace.relative(workspace.spec_path)}`",
        "",
        "## Gates",
        "",
    ]
    if gates.configured:
        lines.extend(f"- {name}: {status}" for name, status in gates.summary().items())
    else:
        lines.append("- none configured")
    lines.append("")
    return "\n".join(lines)


class Submitter:
    """``bt pr`` / ``bt ship``: guard, gates, commit, push, open the PR.

    The staged-files guard runs first and regardless of ``dry_run`` or
    ``no_commit``; those flags only skip the mutating steps.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        repo: GitRepo | None = None,
        gate_runner: GateRunner | None = None,
    ) -> None:
        self.settings = settings
        self.repo = repo if repo is not None else GitRepo(settings.project_root)
        self.gate_runner = (
            gate_runner
            if gate_runner is not None
            else GateRunner(settings.gates, project_root=settings.project_root)
        )

    def submit(self, feature: str, options: SubmitOptions | None = None) -> SubmitResult:
        options = options or SubmitOptions()
        workspace = FeatureWorkspace(self.settings, feature)
        require_spec(workspace)
        if not self.repo.is_repo():
            raise PreconditionError(f"{self.settings.project_root} is not a git repository; run: git init")

        ensure_feature_files_staged(self.repo, tracked_prefixes(self.settings, workspace))

        gates = self.gate_runner.run(report_path=workspace.gates_report_path)
        if not gates.configured:
            logger.warning("no gates configured; submitting without quality checks")
        elif not gates.passed:
            raise StageFailure("gates", f"gates failed before submission: {', '.join(gates.failed_gates)}")

        title = options.title or spec_title(workspace)
        result = SubmitResult(
            feature=workspace.feature,
            base=self.repo.resolve_base_branch(self.settings.base_branch),
            title=title,
            body=render_pr_body(workspace, gates),
            artifacts=render_artifacts_section(workspace),
            gates=gates,
            dry_run=options.dry_run,
        )
        if options.dry_run:
            logger.info("dry run: skipping commit, push and PR creation")
            return result

        result.head = self.repo.current_branch()
        if result.head == result.base:
            raise PreconditionError(
                f"current branch {result.head!r} is the base branch; create a feature branch first"
            )
        if not options.no_commit:
            result.commit = self.repo.commit(f"{workspace.feature}: {title}")
        self.repo.push(result.head)
        result.pr_url = create_pull_request(
            self.settings.gh_bin,
            base=result.base,
            head=result.head,
            title=title,
            body=result.body,
            cwd=self.settings.project_root,
        )
        comment_on_pull_request(self.settings.gh_bin, result.pr_url, body=result.artifacts, cwd=self.settings.project_root)
        return result
