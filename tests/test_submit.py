from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from biotonomy.errors import PreconditionError, StageFailure
from biotonomy.settings import RuntimeSettings
from biotonomy.state_store import FeatureWorkspace
from biotonomy.submit import SubmitOptions, Submitter, render_artifacts_section
from biotonomy.vcs import STAGED_FILES_ABORT_MESSAGE, GitRepo, parse_unstaged_porcelain
from conftest import git, make_settings, write_executable, write_feature

FAKE_GH_SCRIPT = """#!/bin/sh
printf '%s\\n' "$*" >> "{log}"
if [ "$1 $2" = "pr create" ]; then
  echo "Creating pull request"
  echo "https://github.com/acme/app/pull/7"
fi
exit 0
"""


def test_parse_unstaged_porcelain() -> None:
    output = "\0".join(
        [
            "?? src/new.py",
            " M src/modified.py",
            "M  src/staged.py",
            "MM src/partly.py",
            "R  src/renamed.py",
            "src/original.py",
            "A  tests/test_new.py",
            " D src/deleted.py",
            "",
        ]
    )
    assert parse_unstaged_porcelain(output) == ["src/deleted.py", "src/modified.py", "src/new.py", "src/partly.py"]


def test_unstaged_files_are_scoped_to_tracked_prefixes(git_repo: Path) -> None:
    (git_repo / "src").mkdir()
    (git_repo / "src" / "app.py").write_text("print('hi')\n", encoding="utf-8")
    (git_repo / "notes.txt").write_text("scratch\n", encoding="utf-8")
    (git_repo / "src" / "state.json.lock").write_text("", encoding="utf-8")

    repo = GitRepo(git_repo)
    assert repo.unstaged_files(["src", "lib"]) == ["src/app.py"]

    git(git_repo, "add", "src/app.py")
    assert repo.unstaged_files(["src", "lib"]) == []

    git(git_repo, "commit", "-q", "-m", "init")
    (git_repo / "src" / "app.py").write_text("print('changed')\n", encoding="utf-8")
    assert repo.unstaged_files(["src"]) == ["src/app.py"]


@pytest.mark.parametrize("options", [SubmitOptions(), SubmitOptions(dry_run=True), SubmitOptions(no_commit=True)])
def test_submit_aborts_when_feature_files_are_not_staged(git_repo: Path, options: SubmitOptions) -> None:
    settings = make_settings(git_repo)
    write_feature(git_repo)
    (git_repo / "src").mkdir()
    (git_repo / "src" / "feature.py").write_text("x = 1\n", encoding="utf-8")
    git(git_repo, "add", "specs")

    with pytest.raises(PreconditionError) as excinfo:
        Submitter(settings).submit("feat", options)

    message = str(excinfo.value)
    assert STAGED_FILES_ABORT_MESSAGE in message
    assert "src/feature.py" in message
    status = git(git_repo, "status", "--porcelain").stdout
    assert "?? src/feature.py" in status
    assert subprocess.run(["git", "rev-parse", "HEAD"], cwd=git_repo, capture_output=True).returncode != 0


def test_submit_requires_spec(git_repo: Path) -> None:
    with pytest.raises(PreconditionError, match="SPEC.md"):
        Submitter(make_settings(git_repo)).submit("feat")


def test_submit_requires_git_repository(tmp_path: Path) -> None:
    write_feature(tmp_path)
    with pytest.raises(PreconditionError, match="not a git repository"):
        Submitter(make_settings(tmp_path)).submit("feat")


def test_submit_fails_on_failing_gate(git_repo: Path) -> None:
    settings = make_settings(git_repo, gates={"test": "false"})
    write_feature(git_repo)
    git(git_repo, "add", "-A")
    with pytest.raises(StageFailure, match="gates failed before submission: test"):
        Submitter(settings).submit("feat", SubmitOptions(dry_run=True))


def test_dry_run_renders_artifacts_without_side_effects(git_repo: Path) -> None:
    settings = make_settings(git_repo, base_branch="main")
    feature_dir = write_feature(git_repo)
    (feature_dir / ".artifacts").mkdir()
    (feature_dir / ".artifacts" / "codex-review.log").write_text("review log line\n", encoding="utf-8")
    git(git_repo, "add", "-A")

    result = Submitter(settings).submit("feat", SubmitOptions(dry_run=True))

    assert result.dry_run
    assert result.pr_url is None
    assert result.commit is None
    assert result.base == "main"
    assert result.title == "feat title"
    assert "### `specs/feat/SPEC.md`" in result.artifacts
    assert "### `specs/feat/.artifacts/codex-review.log`" in result.artifacts
    assert "review log line" in result.artifacts
    assert "- test: PASS" in result.body
    assert subprocess.run(["git", "rev-parse", "HEAD"], cwd=git_repo, capture_output=True).returncode != 0


def test_artifacts_section_lists_documents_first(settings: RuntimeSettings) -> None:
    feature_dir = write_feature(settings.project_root)
    (feature_dir / "REVIEW.md").write_text("Verdict: APPROVED\n", encoding="utf-8")
    section = render_artifacts_section(FeatureWorkspace(settings, "feat"))
    assert section.startswith("## Artifacts")
    assert section.index("SPEC.md") < section.index("PLAN_REVIEW.md") < section.index("### `specs/feat/REVIEW.md`")


def test_submit_commits_pushes_and_opens_pull_request(git_repo: Path, tmp_path: Path) -> None:
    remote = tmp_path / "remote.git"
    git(tmp_path, "init", "-q", "--bare", str(remote))
    git(git_repo, "remote", "add", "origin", str(remote))
    (git_repo / "README.md").write_text("app\n", encoding="utf-8")
    git(git_repo, "add", "README.md")
    git(git_repo, "commit", "-q", "-m", "init")
    git(git_repo, "checkout", "-q", "-b", "feat-branch")

    gh_log = tmp_path / "gh.log"
    gh = write_executable(tmp_path / "fake-gh", FAKE_GH_SCRIPT.format(log=gh_log))
    settings = make_settings(git_repo, base_branch="main", gh_bin=str(gh))
    write_feature(git_repo)
    git(git_repo, "add", "-A")

    result = Submitter(settings).submit("feat", SubmitOptions(title="Dark mode"))

    assert result.commit is not None
    assert result.head == "feat-branch"
    assert result.pr_url == "https://github.com/acme/app/pull/7"
    assert git(git_repo, "log", "-1", "--format=%s").stdout.strip() == "feat: Dark mode"
    assert "feat-branch" in git(remote, "branch", "--list").stdout
    calls = gh_log.read_text(encoding="utf-8")
    assert calls.startswith("pr create --base main --head feat-branch --title Dark mode")
    assert "pr comment https://github.com/acme/app/pull/7 --body ## Artifacts" in calls


def test_submit_refuses_to_open_pr_from_base_branch(git_repo: Path) -> None:
    (git_repo / "README.md").write_text("app\n", encoding="utf-8")
    git(git_repo, "add", "README.md")
    git(git_repo, "commit", "-q", "-m", "init")
    settings = make_settings(git_repo, base_branch="main")
    write_feature(git_repo)
    git(git_repo, "add", "-A")
    with pytest.raises(PreconditionError, match="is the base branch"):
        Submitter(settings).submit("feat", SubmitOptions(no_commit=True))


def test_submit_commits_nothing_when_on_base_branch(git_repo: Path) -> None:
    (git_repo / "README.md").write_text("app\n", encoding="utf-8")
    git(git_repo, "add", "README.md")
    git(git_repo, "commit", "-q", "-m", "init")
    settings = make_settings(git_repo, base_branch="main")
    write_feature(git_repo)
    git(git_repo, "add", "-A")

    with pytest.raises(PreconditionError, match="is the base branch"):
        Submitter(settings).submit("feat")

    assert git(git_repo, "log", "--format=%s").stdout.splitlines() == ["init"]
    assert git(git_repo, "diff", "--cached", "--name-only").stdout.strip()


def test_deleted_tracked_directory_is_reported(git_repo: Path) -> None:
    (git_repo / "lib").mkdir()
    (git_repo / "lib" / "a.py").write_text("A = 1\n", encoding="utf-8")
    git(git_repo, "add", "lib")
    git(git_repo, "commit", "-q", "-m", "init")
    shutil.rmtree(git_repo / "lib")
    write_feature(git_repo)
    git(git_repo, "add", "specs")

    assert GitRepo(git_repo).unstaged_files(["src", "lib"]) == ["lib/a.py"]
    with pytest.raises(PreconditionError) as excinfo:
        Submitter(make_settings(git_repo)).submit("feat", SubmitOptions(dry_run=True))
    assert "lib/a.py" in str(excinfo.value)
