"""Entry point for `python -m biotonomy` and the `bt` CLI script."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from biotonomy.agent import CodexAgent
from biotonomy.errors import EXIT_FAILURE, EXIT_USAGE, BiotonomyError, UsageError
from biotonomy.gates import GateRunner
from biotonomy.loops import LoopEngine, StageRunner
from biotonomy.models import GateReport
from biotonomy.scaffold import bootstrap, create_spec, format_status, project_status, reset_feature
from biotonomy.settings import RuntimeSettings
from biotonomy.state_store import FeatureWorkspace
from biotonomy.submit import SubmitOptions, Submitter
from biotonomy.utils import notify, parse_positive_int, validate_feature_slug

COMMANDS = (
    "bootstrap",
    "spec",
    "research",
    "plan-review",
    "implement",
    "review",
    "fix",
    "gates",
    "loop",
    "status",
    "reset",
    "pr",
    "ship",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bt",
        description="biotonomy (bt): spec -> plan-review -> implement -> review -> fix loop around a coding agent",
    )
    parser.add_argument("--project-root", type=Path, default=None, help="Project directory (default: cwd)")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("bootstrap", help="Create .bt.env, specs/, .bt/ and hooks/")

    spec = sub.add_parser("spec", help="Create specs/<feature>/SPEC.md (feature name, issue URL or #N)")
    spec.add_argument("target", help="Feature name, GitHub issue URL or #<number>")

    for name, text in (
        ("research", "Run the research stage (writes RESEARCH.md)"),
        ("plan-review", "Run the plan-review stage (writes PLAN_REVIEW.md)"),
        ("implement", "Run one implement stage followed by the gates"),
        ("review", "Run one review stage (writes REVIEW.md)"),
        ("fix", "Run one fix stage followed by the gates"),
    ):
        stage = sub.add_parser(name, help=text)
        stage.add_argument("feature")

    gates = sub.add_parser("gates", help="Run the configured gates once")
    gates.add_argument("feature", nargs="?", default=None, help="Write a feature-scoped report")

    loop = sub.add_parser("loop", help="Iterate implement/review/fix until approved")
    loop.add_argument("feature")
    loop.add_argument("--max-iterations", default=None, help="Positive iteration budget (default: BT_MAX_ITERATIONS)")

    status = sub.add_parser("status", help="Show settings, gates and loop progress")
    status.add_argument("feature", nargs="?", default=None)

    reset = sub.add_parser("reset", help="Remove a feature's loop state")
    reset.add_argument("feature")
    reset.add_argument("--hard", action="store_true", help="Remove the whole feature directory")

    for name in ("pr", "ship"):
        pr = sub.add_parser(name, help="Verify staging, run gates, commit, push and open a pull request")
        pr.add_argument("feature")
        pr.add_argument("--dry-run", action="store_true", help="Print what would be submitted; change nothing")
        pr.add_argument("--no-commit", action="store_true", help="Do not create a commit")
        pr.add_argument("--title", default=None, help="Pull request title (default: SPEC heading)")
    return parser


def _first_command(argv: Sequence[str]) -> str | None:
    skip_next = False
    for arg in argv:
        if skip_next:
            skip_next = False
            continue
        if arg in {"--project-root", "--log-level"}:
            skip_next = True
            continue
        if arg.startswith("-"):
            continue
        return arg
    return None


def _print_gates(report: GateReport) -> None:
    if not report.configured:
        print("gates: none configured")
        return
    for name, status in report.summary().items():
        print(f"gate {name}: {status}")


def _dispatch(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    command = args.command
    if command == "bootstrap":
        for path in bootstrap(settings):
            print(f"created {path.relative_to(settings.project_root)}")
        return 0

    if command == "spec":
        workspace = create_spec(settings, args.target)
        print(f"created {workspace.relative(workspace.spec_path)}")
        return 0

    if command == "status":
        print(format_status(project_status(settings, args.feature)))
        return 0

    if command == "reset":
        for path in reset_feature(settings, args.feature, hard=args.hard):
            print(f"removed {path.relative_to(settings.project_root)}")
        return 0

    if command == "gates":
        runner = GateRunner(settings.gates, project_root=settings.project_root)
        report_path = (
            FeatureWorkspace(settings, args.feature).gates_report_path
            if args.feature
            else settings.global_gates_report_path
        )
        report = runner.run(report_path=report_path)
        _print_gates(report)
        return 0 if report.passed else EXIT_FAILURE

    if command == "loop":
        validate_feature_slug(args.feature)
        budget = (
            parse_positive_int(args.max_iterations, name="--max-iterations")
            if args.max_iterations is not None
            else settings.max_iterations
        )
        engine = LoopEngine(settings=settings, agent=CodexAgent(settings))
        outcome = engine.run(args.feature, max_iterations=budget)
        print(f"result={outcome.result.value}")
        if outcome.progress is not None:
            print(f"iterations={outcome.progress.completed_iterations}")
        if not outcome.succeeded:
            print(f"bt loop: {outcome.message}", file=sys.stderr)
        return outcome.exit_code

    if command in {"pr", "ship"}:
        result = Submitter(settings).submit(
            args.feature,
            SubmitOptions(dry_run=args.dry_run, no_commit=args.no_commit, title=args.title),
        )
        _print_gates(result.gates)
        print(f"base={result.base}")
        print(f"title={result.title}")
        if result.dry_run:
            print("PR body would contain:")
            print(result.body)
            print("Artifacts comment would contain:")
            print(result.artifacts)
        else:
            if result.commit:
                print(f"commit={result.commit}")
            print(f"pr={result.pr_url}")
        return 0

    runner = StageRunner(settings=settings, agent=CodexAgent(settings))
    if command == "research":
        run = runner.research(args.feature)
        print(f"wrote {run.output_path}")
        return 0
    if command == "plan-review":
        verdict = runner.plan_review(args.feature)
        print(f"verdict={verdict.token or 'none'}")
        return 0 if verdict.approved else EXIT_FAILURE
    if command == "review":
        verdict = runner.review(args.feature)
        print(f"verdict={verdict.token or 'none'}")
        return 0
    if command in {"implement", "fix"}:
        report = runner.implement(args.feature) if command == "implement" else runner.fix(args.feature)
        _print_gates(report)
        return 0 if report.passed or not report.configured else EXIT_FAILURE
    raise UsageError(f"unknown command: {command}")


def main(argv: Sequence[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    command = _first_command(argv)
    if command is not None and command not in COMMANDS:
        print(f"bt: unknown command: {command} (see bt --help)", file=sys.stderr)
        return EXIT_USAGE

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env(args.project_root)
    except ValueError as exc:
        print(f"bt: invalid configuration: {exc}", file=sys.stderr)
        return EXIT_USAGE

    try:
        code = _dispatch(args, settings)
    except BiotonomyError as exc:
        print(f"bt {args.command}: {exc}", file=sys.stderr)
        notify(settings, f"bt {args.command} failed")
        return exc.exit_code
    except (OSError, ValueError) as exc:
        logging.error("bt %s failed: %s", args.command, exc)
        print(f"bt {args.command}: {exc}", file=sys.stderr)
        notify(settings, f"bt {args.command} failed")
        return EXIT_FAILURE

    notify(settings, f"bt {args.command} {'complete' if code == 0 else 'failed'}")
    return code


if __name__ == "__main__":
    raise SystemExit(main())
