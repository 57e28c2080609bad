from __future__ import annotations

import json
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .errors import GitError, PreconditionError
from .models import IssueMetadata

logger = logging.getLogger(__name__)

STAGED_FILES_ABORT_MESSAGE = "Abort: ship requires all feature files to be staged"
GITHUB_ISSUE_URL_RE = re.compile(r"^https?://github\.com/(?P<repo>[^/]+/[^/]+)/issues/(?P<number>\d+)/?$")
ISSUE_REF_RE = re.compile(r"^#(?P<number>\d+)$")


@dataclass(frozen=True)
class CommandOutcome:
    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _run(command: Sequence[str], *, cwd: Path) -> CommandOutcome:
    try:
        completed = subprocess.run(list(command), cwd=cwd, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise GitError(f"Command failed to start: {' '.join(command)} ({exc})") from exc
    return CommandOutcome(tuple(command), completed.returncode, completed.stdout or "", completed.stderr or "")


def _command_error(outcome: CommandOutcome) -> str:
    details = []
    if outcome.stdout.strip():
        details.append(f"stdout: {outcome.stdout.strip()}")
    if outcome.stderr.strip():
        details.append(f"stderr: {outcome.stderr.strip()}")
    detail_text = f" ({' | '.join(details)})" if details else ""
    return f"Command failed: {' '.join(outcome.command)}{detail_text}"


class GitRepo:
    """Thin wrapper over the ``git`` CLI rooted at the project directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def git(self, *args: str, check: bool = True) -> CommandOutcome:
        outcome = _run(["git", *args], cwd=self.root)
        if check and not outcome.ok:
            raise GitError(_command_error(outcome))
        return outcome

    def is_repo(self) -> bool:
        try:
            return self.git("rev-parse", "--is-inside-work-tree", check=False).ok
        except GitError:
            return False

    def unstaged_files(self, prefixes: Sequence[str], *, ignore_suffixes: Sequence[str] = (".lock",)) -> list[str]:
        """Untracked or modified-but-unstaged files under *prefixes*.

        Read-only: issues ``git status`` and nothing else. Lock sidecars are
        never reported.
        """
        # Prefixes absent on disk still match their deleted tracked files.
        if not prefixes:
            return []
        outcome = self.git("status", "--porcelain=v1", "-z", "--untracked-files=all", "--", *prefixes)
        return [path for path in parse_unstaged_porcelain(outcome.stdout) if not path.endswith(tuple(ignore_suffixes))]

    def current_branch(self) -> str:
        branch = self.git("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()
        if not branch or branch == "HEAD":
            raise GitError("Unable to determine current git branch.")
        return branch

    def resolve_base_branch(self, configured: str = "") -> str:
        if configured:
            return configured
        outcome = self.git("symbolic-ref", "--quiet", "--short", "refs/remotes/origin/HEAD", check=False)
        ref = outcome.stdout.strip()
        if outcome.ok and ref:
            return ref.split("/", 1)[1] if "/" in ref else ref
        return "main"

    def has_staged_changes(self) -> bool:
        return not self.git("diff", "--cached", "--quiet", check=False).ok

    def commit(self, message: str) -> str | None:
        if not self.has_staged_changes():
            logger.info("nothing staged; skipping commit")
            return None
        self.git("commit", "-m", message)
        return self.git("rev-parse", "HEAD").stdout.strip()

    def push(self, branch: str) -> None:
        self.git("push", "-u", "origin", branch)


def parse_unstaged_porcelain(output: str) -> list[str]:
    """Parse ``git status --porcelain=v1 -z`` into violating paths.

    A path violates when it is untracked (``??``) or its worktree column is
    not blank. Rename/copy entries carry a second path which is skipped.
    """
    entries = output.split("\0")
    violations: list[str] = []
    index = 0
    while index < len(entries):
        entry = entries[index]
        index += 1
        if len(entry) < 4:
            continue
        staged, worktree, path = entry[0], entry[1], entry[3:]
        if staged in {"R", "C"}:
            index += 1
        if staged == "?" or worktree not in {" ", "!"}:
            violations.append(path)
    return sorted(dict.fromkeys(violations))


def ensure_feature_files_staged(repo: GitRepo, prefixes: Sequence[str]) -> None:
    """Fail closed when any feature-tracked file is untracked or unstaged.

    Raises:
        PreconditionError: Listing every offending path.
    """
    unstaged = repo.unstaged_files(prefixes)
    if unstaged:
        listing = "\n".join(f"  {path}" for path in unstaged)
        raise PreconditionError(f"{STAGED_FILES_ABORT_MESSAGE}:\n{listing}\nStage them with: git add <path>")


# ---------------------------------------------------------------------------
# GitHub (gh CLI)
# ---------------------------------------------------------------------------

def parse_issue_reference(raw: str) -> tuple[str | None, int] | None:
    """``(repo or None, number)`` for a GitHub issue URL or ``#N``; else None."""
    text = raw.strip()
    match = GITHUB_ISSUE_URL_RE.match(text)
    if match:
        return match.group("repo"), int(match.group("number"))
    match = ISSUE_REF_RE.match(text)
    if match:
        return None, int(match.group("number"))
    return None


def fetch_issue(gh_bin: str, number: int, *, repo: str | None, cwd: Path) -> IssueMetadata:
    command = [gh_bin, "issue", "view", str(number), "--json", "number,title,url,body"]
    if repo:
        command.extend(["--repo", repo])
    outcome = _run(command, cwd=cwd)
    if not outcome.ok:
        raise GitError(_command_error(outcome))
    try:
        payload = json.loads(outcome.stdout)
    except json.JSONDecodeError as exc:
        raise GitError(f"gh issue view returned invalid JSON: {exc}") from exc
    return IssueMetadata.model_validate(payload)


def create_pull_request(gh_bin: str, *, base: str, head: str, title: str, body: str, cwd: Path) -> str:
    outcome = _run(
        [gh_bin, "pr", "create", "--base", base, "--head", head, "--title", title, "--body", body],
        cwd=cwd,
    )
    if not outcome.ok:
        raise GitError(_command_error(outcome))
    lines = outcome.stdout.strip().splitlines()
    return lines[-1].strip() if lines else ""


def comment_on_pull_request(gh_bin: str, pr: str, *, body: str, cwd: Path) -> None:
    outcome = _run([gh_bin, "pr", "comment", pr, "--body", body], cwd=cwd)
    if not outcome.ok:
        raise GitError(_command_error(outcome))
