from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from .models import GateMode, GateReport, GateResult
from .settings import GateConfig
from .state_store import write_gate_report

logger = logging.getLogger(__name__)

_MAX_CAPTURED_OUTPUT = 20_000


class GateRunner:
    """Runs the configured quality gates sequentially in the project root.

    A failing gate is an ordinary result, not an error. Only failures to
    write the report propagate.
    """

    def __init__(self, config: GateConfig, *, project_root: Path) -> None:
        self.config = config
        self.project_root = project_root

    def _run_one(self, name: str, command: str) -> GateResult:
        logger.info("gate %s: %s", name, command)
        try:
            completed = subprocess.run(
                command,
                shell=True,
                cwd=self.project_root,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            logger.error("gate %s could not start: %s", name, exc)
            return GateResult(name=name, cmd=command, status=127, output=str(exc))
        output = (completed.stdout or "") + (completed.stderr or "")
        if len(output) > _MAX_CAPTURED_OUTPUT:
            output = output[-_MAX_CAPTURED_OUTPUT:]
        if completed.returncode == 0:
            logger.info("gate %s passed", name)
        else:
            logger.warning("gate %s failed with exit %s", name, completed.returncode)
        return GateResult(name=name, cmd=command, status=completed.returncode, output=output)

    def run(self, mode: GateMode = GateMode.STAGE, *, report_path: Path | None = None) -> GateReport:
        """Run every configured gate once, in configured order.

        All gates run even after a failure so the report is complete.
        """
        results = {name: self._run_one(name, command) for name, command in self.config.commands.items()}
        report = GateReport(mode=mode, results=results)
        if not report.configured:
            logger.warning("no gates configured (set GATE_<NAME> in the environment or .bt.env)")
        if report_path is not None:
            write_gate_report(report_path, report)
        return report

    def preflight(self, *, report_path: Path | None = None) -> GateReport:
        return self.run(GateMode.PREFLIGHT, report_path=report_path)
