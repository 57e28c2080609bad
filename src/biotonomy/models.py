from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

PROGRESS_SCHEMA_VERSION = 1


class Stage(str, Enum):
    RESEARCH = "research"
    PLAN_REVIEW = "plan-review"
    IMPLEMENT = "implement"
    REVIEW = "review"
    FIX = "fix"

    @property
    def writes_output(self) -> bool:
        return self in {Stage.RESEARCH, Stage.PLAN_REVIEW, Stage.REVIEW}


class StageStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    SKIP = "SKIP"


class GateMode(str, Enum):
    PREFLIGHT = "preflight"
    STAGE = "stage"


class LoopResult(str, Enum):
    """Terminal (and in-flight) states of a loop run."""

    RUNNING = "running"
    SUCCESS = "success"
    MAX_ITERATIONS_EXCEEDED = "max-iterations-exceeded"
    IMPLEMENT_FAILED = "implement-failed"
    FIX_FAILED = "fix-failed"
    REVIEW_FAILED = "review-failed"
    GATE_FAILED = "gate-failed"
    PLAN_NOT_APPROVED = "plan-not-approved"

    @property
    def is_terminal(self) -> bool:
        return self != LoopResult.RUNNING

    @property
    def exit_code(self) -> int:
        return 0 if self == LoopResult.SUCCESS else 1


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class GateResult(_CamelModel):
    name: str
    cmd: str
    status: int
    output: str | None = None

    @property
    def passed(self) -> bool:
        return self.status == 0


class GateReport(_CamelModel):
    """Outcome of one pass over the configured gates.

    An empty ``results`` mapping means no gates were configured, which callers
    must treat as a failure rather than a trivial pass.
    """

    ts: datetime = Field(default_factory=lambda: datetime.now(UTC))
    mode: GateMode = GateMode.STAGE
    results: dict[str, GateResult] = Field(default_factory=dict)

    @property
    def configured(self) -> bool:
        return bool(self.results)

    @property
    def passed(self) -> bool:
        return self.configured and all(result.passed for result in self.results.values())

    @property
    def failed_gates(self) -> list[str]:
        return [name for name, result in self.results.items() if not result.passed]

    def summary(self) -> dict[str, str]:
        return {name: "PASS" if result.passed else "FAIL" for name, result in self.results.items()}

    def to_report_payload(self) -> dict[str, object]:
        """On-disk shape: ``{ts, results: {name: {cmd, status}}}``."""
        return {
            "ts": self.ts.isoformat(),
            "results": {
                name: {"cmd": result.cmd, "status": result.status}
                for name, result in self.results.items()
            },
        }


class Iteration(_CamelModel):
    index: int = Field(ge=1)
    implement_status: StageStatus = Field(alias="implementStatus")
    review_status: StageStatus = Field(alias="reviewStatus")
    fix_status: StageStatus = Field(alias="fixStatus")
    verdict: str = ""
    gates: dict[str, str] = Field(default_factory=dict)
    history_file: str | None = Field(default=None, alias="historyFile")


class LoopProgress(_CamelModel):
    """Persisted, resumable state of a feature's loop."""

    schema_version: int = Field(default=PROGRESS_SCHEMA_VERSION, alias="schemaVersion")
    feature: str
    max_iterations: int = Field(ge=1, alias="maxIterations")
    completed_iterations: int = Field(default=0, ge=0, alias="completedIterations")
    result: LoopResult = LoopResult.RUNNING
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="startedAt")
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="updatedAt")
    iterations: list[Iteration] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_iteration_ledger(self) -> "LoopProgress":
        if self.completed_iterations != len(self.iterations):
            raise ValueError(
                f"completedIterations ({self.completed_iterations}) does not match "
                f"iterations length ({len(self.iterations)})"
            )
        for expected, iteration in enumerate(self.iterations, start=1):
            if iteration.index != expected:
                raise ValueError(f"iteration indices must be gapless; expected {expected}, got {iteration.index}")
        return self

    @property
    def run_id(self) -> str:
        """Identity of the run that owns this record (its start time, microsecond precision)."""
        return self.started_at.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

    @property
    def next_index(self) -> int:
        return self.completed_iterations + 1

    def with_iteration(self, iteration: Iteration) -> "LoopProgress":
        if iteration.index != self.next_index:
            raise ValueError(f"cannot append iteration {iteration.index}; next index is {self.next_index}")
        return self.model_copy(
            update={
                "iterations": [*self.iterations, iteration],
                "completed_iterations": self.completed_iterations + 1,
                "updated_at": datetime.now(UTC),
            }
        )

    def with_result(self, result: LoopResult) -> "LoopProgress":
        return self.model_copy(update={"result": result, "updated_at": datetime.now(UTC)})

    def to_json(self) -> str:
        return self.model_dump_json(indent=2, by_alias=True)


class Verdict(BaseModel):
    token: str = ""
    approved: bool = False

    @property
    def found(self) -> bool:
        return bool(self.token)


class AgentRequest(BaseModel):
    """Everything one agent stage invocation needs."""

    stage: Stage
    feature: str
    prompt: str
    log_path: str
    output_path: str | None = None
    iteration: int | None = None


class AgentRun(BaseModel):
    stage: Stage
    exit_code: int
    log_path: str
    output_path: str | None = None
    output_text: str | None = None

    @property
    def missing_output(self) -> bool:
        return self.output_path is not None and not (self.output_text or "").strip()

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.missing_output


class IssueMetadata(BaseModel):
    number: int | None = None
    title: str
    url: str = ""
    body: str = ""
