from importlib.metadata import version

from .agent import Agent, AgentInvoker, CodexAgent
from .errors import BiotonomyError, GitError, PreconditionError, StageFailure, UsageError
from .gates import GateRunner
from .loops import LoopEngine, LoopOutcome, StageRunner
from .models import (
    AgentRequest,
    AgentRun,
    GateMode,
    GateReport,
    GateResult,
    IssueMetadata,
    Iteration,
    LoopProgress,
    LoopResult,
    Stage,
    StageStatus,
    Verdict,
)
from .settings import GateConfig, RuntimeSettings
from .state_store import FeatureWorkspace, ProgressStore
from .submit import SubmitOptions, Submitter
from .verdict import parse_plan_verdict, parse_review_verdict


def get_version() -> str:
    try:
        return version("biotonomy")
    except Exception:
        return "0.0.0"


__all__ = [
    "Agent",
    "AgentInvoker",
    "AgentRequest",
    "AgentRun",
    "BiotonomyError",
    "CodexAgent",
    "FeatureWorkspace",
    "GateConfig",
    "GateMode",
    "GateReport",
    "GateResult",
    "GateRunner",
    "GitError",
    "IssueMetadata",
    "Iteration",
    "LoopEngine",
    "LoopOutcome",
    "LoopProgress",
    "LoopResult",
    "PreconditionError",
    "ProgressStore",
    "RuntimeSettings",
    "Stage",
    "StageFailure",
    "StageRunner",
    "StageStatus",
    "SubmitOptions",
    "Submitter",
    "UsageError",
    "Verdict",
    "get_version",
    "parse_plan_verdict",
    "parse_review_verdict",
]
