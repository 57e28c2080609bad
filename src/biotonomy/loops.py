from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .agent import Agent, AgentInvoker
from .errors import PreconditionError, StageFailure
from .gates import GateRunner
from .models import AgentRun, GateReport, Iteration, LoopProgress, LoopResult, Stage, StageStatus, Verdict
from .settings import RuntimeSettings
from .state_store import FeatureWorkspace, ProgressStore, history_run_line
from .utils import parse_positive_int, utc_timestamp, validate_feature_slug
from .verdict import APPROVED_PLAN_TOKEN, parse_plan_verdict, parse_review_verdict, read_plan_verdict

logger = logging.getLogger(__name__)

_NODES_PER_ITERATION = 7


def plan_approval_problem(workspace: FeatureWorkspace) -> str | None:
    """Describe why the feature's plan is not approved, or None when it is."""
    relative = workspace.relative(workspace.plan_review_path)
    verdict = read_plan_verdict(workspace.plan_review_path)
    if verdict is None:
        return f"plan not approved: {relative} is missing; run: bt plan-review {workspace.feature}"
    if not verdict.approved:
        found = verdict.token or "no verdict line"
        return (
            f"plan not approved: {relative} has {found}, expected Verdict: {APPROVED_PLAN_TOKEN}; "
            f"run: bt plan-review {workspace.feature}"
        )
    return None


def require_plan_approval(workspace: FeatureWorkspace) -> None:
    problem = plan_approval_problem(workspace)
    if problem is not None:
        raise PreconditionError(problem)


def require_spec(workspace: FeatureWorkspace) -> None:
    if not workspace.spec_path.is_file():
        raise PreconditionError(
            f"missing {workspace.relative(workspace.spec_path)}; run: bt spec {workspace.feature}"
        )


def _failure_detail(run: AgentRun, workspace: FeatureWorkspace) -> str:
    log = workspace.relative(workspace.stage_log_path(run.stage))
    if run.exit_code != 0:
        return f"exit {run.exit_code}; log: {log}"
    return f"no output written to {workspace.relative(workspace.stage_output_path(run.stage))}; log: {log}"


def _gate_failure_detail(report: GateReport) -> str:
    if not report.configured:
        return "no gates configured"
    return "failed: " + ", ".join(report.failed_gates)


def render_history_entry(
    *,
    feature: str,
    run_id: str,
    iteration: Iteration,
    max_iterations: int,
    review_text: str,
    outcome: LoopResult | None,
) -> str:
    lines = [
        f"# Loop iteration {iteration.index:03d}: {feature}",
        "",
        f"- Recorded: {utc_timestamp()}",
        history_run_line(run_id),
        f"- Iteration: {iteration.index} of {max_iterations}",
        f"- Implement: {iteration.implement_status.value}",
        f"- Review: {iteration.review_status.value}",
        f"- Fix: {iteration.fix_status.value}",
        f"- Verdict: {iteration.verdict or '(none)'}",
    ]
    if outcome is not None:
        lines.append(f"- Outcome: {outcome.value}")
    if iteration.gates:
        lines.extend(["", "## Gates", ""])
        lines.extend(f"- {name}: {status}" for name, status in iteration.gates.items())
    lines.extend(["", "## Review", "", review_text.strip() or "(no review content)", ""])
    return "\n".join(lines)


class LoopState(TypedDict, total=False):
    feature: str
    max_iterations: int
    progress: dict[str, Any]
    iteration: int
    implement_status: str
    review_status: str
    fix_status: str
    verdict: str
    approved: bool
    review_text: str
    gates: dict[str, str]
    result: str | None
    message: str | None
    persist: bool
    trace: list[str]


@dataclass
class LoopOutcome:
    result: LoopResult
    message: str
    progress: LoopProgress | None = None
    trace: list[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return self.result.exit_code

    @property
    def succeeded(self) -> bool:
        return self.result == LoopResult.SUCCESS


class LoopEngine:
    """Implement/review/fix convergence loop as a LangGraph StateGraph.

    init -> preflight -> implement -> stage_gates -> review -> verdict_check
    -> fix -> fix_gates -> record -> implement ... -> finalize

    Every stage failure routes to ``record`` (which persists the iteration)
    and then ``finalize``; nothing is retried automatically.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings,
        agent: Agent,
        gate_runner: GateRunner | None = None,
        store: ProgressStore | None = None,
    ) -> None:
        self.settings = settings
        self.invoker = AgentInvoker(agent)
        self.gate_runner = (
            gate_runner
            if gate_runner is not None
            else GateRunner(settings.gates, project_root=settings.project_root)
        )
        self.store = store if store is not None else ProgressStore(settings)
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(LoopState)
        graph.add_node("init", self._init_node)
        graph.add_node("preflight", self._preflight_node)
        graph.add_node("implement", self._implement_node)
        graph.add_node("stage_gates", self._stage_gates_node)
        graph.add_node("review", self._review_node)
        graph.add_node("verdict_check", self._verdict_check_node)
        graph.add_node("fix", self._fix_node)
        graph.add_node("fix_gates", self._fix_gates_node)
        graph.add_node("record", self._record_node)
        graph.add_node("finalize", self._finalize_node)

        graph.add_edge(START, "init")
        graph.add_conditional_edges("init", self._terminal_or("preflight"), {"preflight": "preflight", "finalize": "finalize"})
        graph.add_conditional_edges("preflight", self._terminal_or("implement"), {"implement": "implement", "finalize": "finalize"})
        graph.add_conditional_edges("implement", self._terminal_or("stage_gates"), {"stage_gates": "stage_gates", "record": "record"})
        graph.add_conditional_edges("stage_gates", self._terminal_or("review"), {"review": "review", "record": "record"})
        graph.add_conditional_edges("review", self._terminal_or("verdict_check"), {"verdict_check": "verdict_check", "record": "record"})
        graph.add_conditional_edges("verdict_check", self._terminal_or("fix"), {"fix": "fix", "record": "record"})
        graph.add_conditional_edges("fix", self._terminal_or("fix_gates"), {"fix_gates": "fix_gates", "record": "record"})
        graph.add_edge("fix_gates", "record")
        graph.add_conditional_edges("record", self._terminal_or("implement"), {"implement": "implement", "finalize": "finalize"})
        graph.add_edge("finalize", END)
        return graph

    @staticmethod
    def _terminal_or(next_node: str):
        """Route to *next_node* while running; to record/finalize once a result is set."""

        def route(state: LoopState) -> str:
            if not state.get("result"):
                return next_node
            # Failures inside an iteration are recorded before finishing.
            if next_node in {"preflight", "implement"}:
                return "finalize"
            return "record"

        return route

    def _workspace(self, state: LoopState) -> FeatureWorkspace:
        return FeatureWorkspace(self.settings, state["feature"])

    @staticmethod
    def _trace(state: LoopState, *entries: str) -> list[str]:
        return [*state.get("trace", []), *entries]

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _init_node(self, state: LoopState) -> dict[str, Any]:
        workspace = self._workspace(state)
        max_iterations = int(state["max_iterations"])
        problem = plan_approval_problem(workspace)
        if problem is not None:
            return {"result": LoopResult.PLAN_NOT_APPROVED.value, "message": problem, "persist": False}

        progress = self.store.load(workspace.feature, max_iterations=max_iterations)
        if progress.result == LoopResult.SUCCESS or progress.completed_iterations == 0:
            progress = LoopProgress(feature=workspace.feature, max_iterations=max_iterations)
        else:
            logger.info(
                "resuming %s at iteration %s (previous result: %s)",
                workspace.feature,
                progress.next_index,
                progress.result.value,
            )
            progress = progress.model_copy(update={"max_iterations": max_iterations, "result": LoopResult.RUNNING})

        update: dict[str, Any] = {
            "progress": progress.model_dump(mode="json", by_alias=True),
            "iteration": progress.next_index,
            "result": None,
            "message": None,
            "persist": False,
            "trace": [],
        }
        if progress.next_index > max_iterations:
            update.update(
                {
                    "result": LoopResult.MAX_ITERATIONS_EXCEEDED.value,
                    "message": (
                        f"max iterations exceeded: {progress.completed_iterations} of {max_iterations} "
                        "iterations already completed without approval"
                    ),
                    "persist": True,
                }
            )
        return update

    def _preflight_node(self, state: LoopState) -> dict[str, Any]:
        workspace = self._workspace(state)
        report = self.gate_runner.preflight(report_path=workspace.gates_report_path)
        update: dict[str, Any] = {"persist": True, "trace": self._trace(state, "gates")}
        if not report.passed:
            update["result"] = LoopResult.GATE_FAILED.value
            update["message"] = f"preflight gates failed (or none configured): {_gate_failure_detail(report)}"
        return update

    def _implement_node(self, state: LoopState) -> dict[str, Any]:
        workspace = self._workspace(state)
        index = int(state["iteration"])
        run = self.invoker.invoke(Stage.IMPLEMENT, workspace, iteration=index)
        update: dict[str, Any] = {
            "implement_status": StageStatus.PASS.value,
            "review_status": StageStatus.SKIP.value,
            "fix_status": StageStatus.SKIP.value,
            "verdict": "",
            "approved": False,
            "review_text": "",
            "gates": {},
            "trace": self._trace(state, "implement"),
        }
        if run.exit_code != 0:
            update["implement_status"] = StageStatus.FAIL.value
            update["result"] = LoopResult.IMPLEMENT_FAILED.value
            update["message"] = f"implement failed on iter {index} ({_failure_detail(run, workspace)})"
        return update

    def _stage_gates_node(self, state: LoopState) -> dict[str, Any]:
        workspace = self._workspace(state)
        index = int(state["iteration"])
        report = self.gate_runner.run(report_path=workspace.gates_report_path)
        update: dict[str, Any] = {"gates": report.summary(), "trace": self._trace(state, "gates")}
        if not report.passed:
            update["implement_status"] = StageStatus.FAIL.value
            update["result"] = LoopResult.GATE_FAILED.value
            update["message"] = f"gates failed after implement on iter {index} ({_gate_failure_detail(report)})"
        return update

    def _review_node(self, state: LoopState) -> dict[str, Any]:
        workspace = self._workspace(state)
        index = int(state["iteration"])
        run = self.invoker.invoke(Stage.REVIEW, workspace, iteration=index)
        update: dict[str, Any] = {"trace": self._trace(state, "review"), "review_text": run.output_text or ""}
        if not run.ok:
            update["review_status"] = StageStatus.FAIL.value
            update["result"] = LoopResult.REVIEW_FAILED.value
            update["message"] = f"review failed on iter {index} ({_failure_detail(run, workspace)})"
            return update
        verdict: Verdict = parse_review_verdict(run.output_text)
        if not verdict.found:
            logger.warning("review on iter %s has no verdict line; treating as needs changes", index)
        update.update({"review_status": StageStatus.PASS.value, "verdict": verdict.token, "approved": verdict.approved})
        return update

    def _verdict_check_node(self, state: LoopState) -> dict[str, Any]:
        index = int(state["iteration"])
        max_iterations = int(state["max_iterations"])
        if state.get("approved"):
            return {
                "result": LoopResult.SUCCESS.value,
                "message": f"review approved on iter {index} (Verdict: {state.get('verdict')})",
            }
        if index >= max_iterations:
            return {
                "result": LoopResult.MAX_ITERATIONS_EXCEEDED.value,
                "message": (
                    f"max iterations exceeded ({max_iterations}) without approval; "
                    f"last verdict: {state.get('verdict') or 'none'}"
                ),
            }
        return {"result": None}

    def _fix_node(self, state: LoopState) -> dict[str, Any]:
        workspace = self._workspace(state)
        index = int(state["iteration"])
        run = self.invoker.invoke(Stage.FIX, workspace, iteration=index)
        update: dict[str, Any] = {"fix_status": StageStatus.PASS.value, "trace": self._trace(state, "fix")}
        if run.exit_code != 0:
            update["fix_status"] = StageStatus.FAIL.value
            update["result"] = LoopResult.FIX_FAILED.value
            update["message"] = f"fix failed on iter {index} ({_failure_detail(run, workspace)})"
        return update

    def _fix_gates_node(self, state: LoopState) -> dict[str, Any]:
        workspace = self._workspace(state)
        index = int(state["iteration"])
        report = self.gate_runner.run(report_path=workspace.gates_report_path)
        gates = dict(state.get("gates", {}))
        gates.update({f"fix.{name}": status for name, status in report.summary().items()})
        update: dict[str, Any] = {"gates": gates, "trace": self._trace(state, "gates")}
        if not report.passed:
            update["fix_status"] = StageStatus.FAIL.value
            update["result"] = LoopResult.GATE_FAILED.value
            update["message"] = f"gates failed after fix on iter {index} ({_gate_failure_detail(report)})"
        return update

    def _record_node(self, state: LoopState) -> dict[str, Any]:
        workspace = self._workspace(state)
        progress = LoopProgress.model_validate(state["progress"])
        index = int(state["iteration"])
        outcome = LoopResult(state["result"]) if state.get("result") else None
        iteration = Iteration(
            index=index,
            implement_status=StageStatus(state.get("implement_status", StageStatus.SKIP.value)),
            review_status=StageStatus(state.get("review_status", StageStatus.SKIP.value)),
            fix_status=StageStatus(state.get("fix_status", StageStatus.SKIP.value)),
            verdict=state.get("verdict", ""),
            gates=dict(state.get("gates", {})),
        )
        history_path = self.store.write_history(
            workspace.feature,
            index,
            render_history_entry(
                feature=workspace.feature,
                run_id=progress.run_id,
                iteration=iteration,
                max_iterations=progress.max_iterations,
                review_text=state.get("review_text", ""),
                outcome=outcome,
            ),
            run_id=progress.run_id,
        )
        iteration = iteration.model_copy(update={"history_file": workspace.relative(history_path)})
        progress = self.store.append_iteration(progress, iteration)
        logger.info(
            "iter %s: implement=%s review=%s fix=%s verdict=%s",
            index,
            iteration.implement_status.value,
            iteration.review_status.value,
            iteration.fix_status.value,
            iteration.verdict or "-",
        )
        return {"progress": progress.model_dump(mode="json", by_alias=True), "iteration": index + 1}

    def _finalize_node(self, state: LoopState) -> dict[str, Any]:
        result = LoopResult(state["result"])
        if not state.get("persist") or "progress" not in state:
            return {"persist": False}
        progress = LoopProgress.model_validate(state["progress"]).with_result(result)
        self.store.save(progress)
        return {"progress": progress.model_dump(mode="json", by_alias=True)}

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, feature: str, *, max_iterations: int | str | None = None) -> LoopOutcome:
        """Drive *feature* to a terminal state.

        Args:
            feature: Feature slug under the specs directory.
            max_iterations: Iteration budget; defaults to ``BT_MAX_ITERATIONS``.

        Returns:
            LoopOutcome with the terminal result, its message, the persisted
            progress (None when preconditions failed) and the stage trace.

        Raises:
            UsageError: For an unsafe feature name or a non-positive iteration budget.
            ValueError: If persisted progress is corrupt.
        """
        validate_feature_slug(feature)
        budget = parse_positive_int(
            max_iterations if max_iterations is not None else self.settings.max_iterations,
            name="max-iterations",
        )
        recursion_limit = max(self.settings.recursion_limit, budget * _NODES_PER_ITERATION + 10)
        final = self.graph.invoke(
            {"feature": feature, "max_iterations": budget},
            config={"recursion_limit": recursion_limit},
        )
        result = LoopResult(final["result"])
        progress = LoopProgress.model_validate(final["progress"]) if final.get("progress") else None
        message = final.get("message") or result.value
        if result == LoopResult.SUCCESS:
            logger.info("loop %s: %s", feature, message)
        else:
            logger.error("loop %s: %s", feature, message)
        return LoopOutcome(result=result, message=message, progress=progress, trace=list(final.get("trace", [])))


class StageRunner:
    """Single-stage commands (research, plan-review, implement, review, fix)."""

    def __init__(
        self,
        *,
        settings: RuntimeSettings,
        agent: Agent,
        gate_runner: GateRunner | None = None,
    ) -> None:
        self.settings = settings
        self.invoker = AgentInvoker(agent)
        self.gate_runner = (
            gate_runner
            if gate_runner is not None
            else GateRunner(settings.gates, project_root=settings.project_root)
        )

    def _invoke(self, stage: Stage, workspace: FeatureWorkspace) -> AgentRun:
        run = self.invoker.invoke(stage, workspace)
        if not run.ok:
            raise StageFailure(stage.value, f"{stage.value} failed ({_failure_detail(run, workspace)})")
        return run

    def _gates(self, workspace: FeatureWorkspace) -> GateReport:
        report = self.gate_runner.run(report_path=workspace.gates_report_path)
        if not report.configured:
            logger.warning("no gates configured; skipping quality checks")
        return report

    def research(self, feature: str) -> AgentRun:
        workspace = FeatureWorkspace(self.settings, feature)
        require_spec(workspace)
        return self._invoke(Stage.RESEARCH, workspace)

    def plan_review(self, feature: str) -> Verdict:
        workspace = FeatureWorkspace(self.settings, feature)
        require_spec(workspace)
        run = self._invoke(Stage.PLAN_REVIEW, workspace)
        return parse_plan_verdict(run.output_text)

    def implement(self, feature: str) -> GateReport:
        """Run one implement stage followed by the stage gates.

        Returns:
            The gate report; an unconfigured report only logs a warning.

        Raises:
            PreconditionError: If the plan is not approved.
            StageFailure: If the agent exits non-zero.
        """
        workspace = FeatureWorkspace(self.settings, feature)
        require_plan_approval(workspace)
        self._invoke(Stage.IMPLEMENT, workspace)
        return self._gates(workspace)

    def review(self, feature: str) -> Verdict:
        workspace = FeatureWorkspace(self.settings, feature)
        require_plan_approval(workspace)
        run = self._invoke(Stage.REVIEW, workspace)
        return parse_review_verdict(run.output_text)

    def fix(self, feature: str) -> GateReport:
        """Run one fix stage against the current REVIEW.md, then the stage gates.

        Raises:
            PreconditionError: If the plan is not approved or REVIEW.md is missing.
            StageFailure: If the agent exits non-zero.
        """
        workspace = FeatureWorkspace(self.settings, feature)
        require_plan_approval(workspace)
        if not workspace.review_path.is_file():
            raise PreconditionError(
                f"missing {workspace.relative(workspace.review_path)}; run: bt review {feature}"
            )
        self._invoke(Stage.FIX, workspace)
        return self._gates(workspace)
