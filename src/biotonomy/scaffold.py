from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .errors import PreconditionError, UsageError
from .models import IssueMetadata
from .settings import ENV_FILE_NAME, RuntimeSettings
from .state_store import FeatureWorkspace, ProgressStore, read_gate_report
from .utils import sanitize_feature_name, utc_timestamp, validate_feature_slug
from .vcs import fetch_issue, parse_issue_reference

logger = logging.getLogger(__name__)

ENV_TEMPLATE = """\
# biotonomy settings (loaded by every bt command; exported variables win)
BT_SPECS_DIR=specs
BT_STATE_DIR=.bt
BT_CODEX_BIN=codex
# BT_CODEX_MODEL=
# BT_CODEX_FULL_AUTO=true
# BT_MAX_ITERATIONS=5
# BT_NOTIFY_HOOK=./hooks/notify.sh
# BT_TRACKED_PATHS=src,lib,app,tests,test,scripts,bin,commands,prompts
# BT_BASE_BRANCH=main

# Quality gates: one GATE_<NAME>=<shell command> per gate.
# The loop refuses to start when no gate is configured.
# GATE_LINT=ruff check .
# GATE_TYPECHECK=mypy src
# GATE_TEST=pytest -q
"""


def bootstrap(settings: RuntimeSettings) -> list[Path]:
    """Create the project skeleton. Never overwrites an existing file."""
    created: list[Path] = []
    env_path = settings.project_root / ENV_FILE_NAME
    if not env_path.exists():
        env_path.write_text(ENV_TEMPLATE, encoding="utf-8")
        created.append(env_path)
    for directory in (
        settings.specs_path,
        settings.state_path,
        settings.state_path / "state",
        settings.project_root / "hooks",
    ):
        if not directory.is_dir():
            directory.mkdir(parents=True, exist_ok=True)
            created.append(directory)
    return created


def render_spec(feature: str, issue: IssueMetadata | None = None) -> str:
    title = issue.title if issue is not None else feature
    lines = [
        f"# {title}",
        "",
        f"- Feature: `{feature}`",
        f"- Created: {utc_timestamp()}",
    ]
    if issue is not None and issue.url:
        lines.append(f"- Issue: {issue.url}")
    lines.extend(["", "## Problem", ""])
    lines.append(issue.body.strip() if issue is not None and issue.body.strip() else "_Describe the problem._")
    lines.extend(
        [
            "",
            "## Requirements",
            "",
            "- ",
            "",
            "## Acceptance Criteria",
            "",
            "- ",
            "",
            "## Plan",
            "",
            "1. ",
            "",
        ]
    )
    return "\n".join(lines)


def resolve_spec_target(settings: RuntimeSettings, raw: str) -> tuple[str, IssueMetadata | None]:
    """Map ``bt spec`` input to a feature slug and, for issues, its metadata."""
    reference = parse_issue_reference(raw)
    if reference is not None:
        repo, number = reference
        issue = fetch_issue(settings.gh_bin, number, repo=repo, cwd=settings.project_root)
        return f"issue-{number}", issue
    try:
        return validate_feature_slug(raw), None
    except UsageError:
        feature = sanitize_feature_name(raw)
        logger.info("sanitized feature name %r -> %s", raw, feature)
        return feature, None


def create_spec(settings: RuntimeSettings, raw: str) -> FeatureWorkspace:
    feature, issue = resolve_spec_target(settings, raw)
    workspace = FeatureWorkspace(settings, feature)
    if workspace.spec_path.exists():
        raise PreconditionError(f"{workspace.relative(workspace.spec_path)} already exists")
    workspace.ensure_structure()
    workspace.spec_path.write_text(render_spec(feature, issue), encoding="utf-8")
    return workspace


def feature_status(settings: RuntimeSettings, feature: str) -> dict[str, Any]:
    store = ProgressStore(settings)
    workspace = store.workspace(feature)
    status: dict[str, Any] = {
        "feature": feature,
        "spec": workspace.spec_path.is_file(),
        "plan_review": workspace.plan_review_path.is_file(),
        "review": workspace.review_path.is_file(),
        "loop": None,
        "gates": read_gate_report(workspace.gates_report_path),
    }
    if store.exists(feature):
        progress = store.load(feature, max_iterations=settings.max_iterations)
        last = progress.iterations[-1] if progress.iterations else None
        status["loop"] = {
            "result": progress.result.value,
            "completed_iterations": progress.completed_iterations,
            "max_iterations": progress.max_iterations,
            "last_verdict": last.verdict if last is not None else "",
        }
    return status


def project_status(settings: RuntimeSettings, feature: str | None = None) -> dict[str, Any]:
    features = [validate_feature_slug(feature)] if feature else ProgressStore(settings).list_features()
    return {
        "specs_dir": settings.specs_dir,
        "state_dir": settings.state_dir,
        "gates": settings.gates.commands,
        "last_gates": read_gate_report(settings.global_gates_report_path),
        "features": [feature_status(settings, name) for name in features],
    }


def format_status(status: dict[str, Any]) -> str:
    lines = [
        f"specs_dir: {status['specs_dir']}",
        f"state_dir: {status['state_dir']}",
        "gates: " + (", ".join(f"{name}={cmd}" for name, cmd in status["gates"].items()) or "none configured"),
    ]
    if status["last_gates"]:
        lines.append(f"last_gates: {status['last_gates'].get('ts', '?')}")
    for entry in status["features"]:
        docs = ",".join(name for name in ("spec", "plan_review", "review") if entry[name]) or "none"
        line = f"feature {entry['feature']}: docs={docs}"
        loop = entry["loop"]
        if loop is not None:
            line += (
                f" loop={loop['result']} iterations={loop['completed_iterations']}/{loop['max_iterations']}"
                f" verdict={loop['last_verdict'] or '-'}"
            )
        if entry["gates"]:
            results = entry["gates"].get("results", {})
            line += " gates=" + (
                ",".join(f"{name}:{'PASS' if item.get('status') == 0 else 'FAIL'}" for name, item in results.items())
                or "none"
            )
        lines.append(line)
    return "\n".join(lines)


def reset_feature(settings: RuntimeSettings, feature: str, *, hard: bool = False) -> list[Path]:
    workspace = FeatureWorkspace(settings, feature)
    if not workspace.exists:
        raise PreconditionError(f"feature not found: {workspace.relative(workspace.root)}")
    return workspace.reset(hard=hard)
