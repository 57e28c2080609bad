from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from pydantic import ValidationError

from .models import GateReport, Iteration, LoopProgress, Stage
from .settings import RuntimeSettings
from .utils import utc_timestamp, validate_feature_slug

logger = logging.getLogger(__name__)

PROGRESS_FILE_NAME = "loop-progress.json"
GATES_FILE_NAME = "gates.json"
HISTORY_FILE_RE = re.compile(r"^(?P<ts>\d{8}T\d{6}Z)-loop-iter-(?P<index>\d{3,})(?:\.(?P<dup>\d+))?\.md$")
HISTORY_RUN_PREFIX = "- Run: "

# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, fsyncs it, then
    renames (``os.replace``) into place, so readers only ever see the
    previous or the new complete file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def atomic_write_json(path: Path, payload: dict[str, Any]) -> None:
    atomic_write_text(path, json.dumps(payload, indent=2, sort_keys=False, default=str) + "\n")


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


# ---------------------------------------------------------------------------
# Feature directory layout
# ---------------------------------------------------------------------------

class FeatureWorkspace:
    """Paths owned by one feature under ``<specs>/<feature>/``."""

    def __init__(self, settings: RuntimeSettings, feature: str) -> None:
        self.feature = validate_feature_slug(feature)
        self.settings = settings
        self.root = settings.specs_path / self.feature
        self.history_dir = self.root / "history"
        self.artifacts_dir = self.root / ".artifacts"

    @property
    def exists(self) -> bool:
        return self.root.is_dir()

    @property
    def spec_path(self) -> Path:
        return self.root / "SPEC.md"

    @property
    def plan_review_path(self) -> Path:
        return self.root / "PLAN_REVIEW.md"

    @property
    def review_path(self) -> Path:
        return self.root / "REVIEW.md"

    @property
    def research_path(self) -> Path:
        return self.root / "RESEARCH.md"

    @property
    def progress_path(self) -> Path:
        return self.root / PROGRESS_FILE_NAME

    @property
    def gates_report_path(self) -> Path:
        return self.root / GATES_FILE_NAME

    def stage_log_path(self, stage: Stage) -> Path:
        return self.artifacts_dir / f"codex-{stage.value}.log"

    def stage_output_path(self, stage: Stage) -> Path | None:
        return {
            Stage.RESEARCH: self.research_path,
            Stage.PLAN_REVIEW: self.plan_review_path,
            Stage.REVIEW: self.review_path,
        }.get(stage)

    def relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.settings.project_root).as_posix()
        except ValueError:
            return path.as_posix()

    def ensure_structure(self) -> None:
        for directory in (self.root, self.history_dir, self.artifacts_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def artifact_files(self) -> list[Path]:
        """Documents and artifacts attached to a pull request, in stable order."""
        files = [path for path in (self.spec_path, self.plan_review_path, self.review_path) if path.is_file()]
        if self.artifacts_dir.is_dir():
            files.extend(sorted(path for path in self.artifacts_dir.rglob("*") if path.is_file()))
        return files

    def reset(self, *, hard: bool = False) -> list[Path]:
        """Remove loop state (or the whole directory when *hard*). Returns removed paths."""
        if hard:
            if self.root.is_dir():
                shutil.rmtree(self.root)
                return [self.root]
            return []
        removed: list[Path] = []
        for path in (self.progress_path, self.gates_report_path, self.progress_path.with_suffix(".json.lock")):
            if path.exists():
                path.unlink()
                removed.append(path)
        for directory in (self.history_dir, self.artifacts_dir):
            if directory.is_dir():
                shutil.rmtree(directory)
                removed.append(directory)
        return removed


# ---------------------------------------------------------------------------
# Gate reports
# ---------------------------------------------------------------------------

def write_gate_report(path: Path, report: GateReport) -> Path:
    atomic_write_json(path, report.to_report_payload())
    return path


def read_gate_report(path: Path) -> dict[str, Any] | None:
    if not path.is_file():
        return None
    text = _safe_read_json(path, "gate report")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"gate report at {path} is not valid JSON: {exc}") from exc


# ---------------------------------------------------------------------------
# ProgressStore
# ---------------------------------------------------------------------------

def history_run_line(run_id: str) -> str:
    return f"{HISTORY_RUN_PREFIX}{run_id}"


class ProgressStore:
    """Loop progress and iteration history for features under one specs root.

    ``loop-progress.json`` is rewritten atomically on every change so a crash
    leaves either the previous or the new valid document on disk. History
    files are write-once and carry the id of the run that wrote them.
    """

    def __init__(self, settings: RuntimeSettings) -> None:
        self.settings = settings

    def workspace(self, feature: str) -> FeatureWorkspace:
        return FeatureWorkspace(self.settings, feature)

    def exists(self, feature: str) -> bool:
        return self.workspace(feature).progress_path.is_file()

    def load(self, feature: str, *, max_iterations: int) -> LoopProgress:
        """Read the persisted progress of *feature* under the progress lock.

        Args:
            feature: Validated feature slug.
            max_iterations: Budget used when no progress exists yet.

        Returns:
            The stored LoopProgress, or a fresh record if the file is absent.

        Raises:
            ValueError: If the file exists but is corrupt, fails validation or
                belongs to another feature.
        """
        path = self.workspace(feature).progress_path
        if not path.is_file():
            return LoopProgress(feature=feature, max_iterations=max_iterations)
        with _locked_file(path):
            text = _safe_read_json(path, "loop progress")
        try:
            progress = LoopProgress.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"loop progress at {path} failed validation: {exc}") from exc
        if progress.feature != feature:
            raise ValueError(f"loop progress at {path} belongs to feature {progress.feature!r}, not {feature!r}")
        return progress

    def save(self, progress: LoopProgress) -> Path:
        """Atomically replace the progress document of ``progress.feature``.

        Returns:
            Path of the written ``loop-progress.json``.

        Raises:
            OSError: If the write fails; the previous document is left intact.
        """
        path = self.workspace(progress.feature).progress_path
        with _locked_file(path):
            atomic_write_text(path, progress.to_json() + "\n")
        logger.debug("wrote %s (completed=%s result=%s)", path, progress.completed_iterations, progress.result.value)
        return path

    def append_iteration(self, progress: LoopProgress, iteration: Iteration) -> LoopProgress:
        """Append *iteration* to *progress* and persist the result.

        Args:
            progress: Current in-memory progress.
            iteration: The next iteration; its index must be ``progress.next_index``.

        Returns:
            The updated progress, already written to disk.

        Raises:
            ValueError: If the iteration index would leave a gap.
            OSError: If the atomic write fails.
        """
        updated = progress.with_iteration(iteration)
        self.save(updated)
        return updated

    def find_history(self, feature: str, index: int, *, run_id: str | None = None) -> Path | None:
        """Locate the history file of iteration *index*.

        Args:
            feature: Validated feature slug.
            index: 1-based iteration index.
            run_id: When given, only files written by that run count.

        Returns:
            The first matching history file in name order, or None.
        """
        history_dir = self.workspace(feature).history_dir
        if not history_dir.is_dir():
            return None
        marker = history_run_line(run_id) if run_id is not None else None
        for path in sorted(history_dir.iterdir()):
            match = HISTORY_FILE_RE.match(path.name)
            if match is None or int(match.group("index")) != index:
                continue
            if marker is not None and marker not in path.read_text(encoding="utf-8", errors="replace").splitlines():
                continue
            return path
        return None

    def write_history(self, feature: str, index: int, content: str, *, run_id: str | None = None) -> Path:
        """Create the history file for iteration *index* unless this run already wrote one.

        Args:
            feature: Validated feature slug.
            index: 1-based iteration index.
            content: Markdown body; it should contain ``history_run_line(run_id)``.
            run_id: Owning run. Files of other runs never satisfy the lookup.

        Returns:
            Path of the existing or newly created file.
        """
        existing = self.find_history(feature, index, run_id=run_id)
        if existing is not None:
            logger.info("history for %s iteration %s already present: %s", feature, index, existing.name)
            return existing
        workspace = self.workspace(feature)
        workspace.history_dir.mkdir(parents=True, exist_ok=True)
        stamp = utc_timestamp()
        path = workspace.history_dir / f"{stamp}-loop-iter-{index:03d}.md"
        suffix = 1
        while path.exists():
            # Another run wrote this index within the same second.
            path = workspace.history_dir / f"{stamp}-loop-iter-{index:03d}.{suffix}.md"
            suffix += 1
        with path.open("x", encoding="utf-8") as handle:
            handle.write(content)
        return path

    def list_features(self) -> list[str]:
        specs = self.settings.specs_path
        if not specs.is_dir():
            return []
        return sorted(path.name for path in specs.iterdir() if path.is_dir() and not path.name.startswith("."))
