"""Extraction of ``Verdict: TOKEN`` lines from agent-written documents."""

from __future__ import annotations

import re
from pathlib import Path

from .models import Verdict

# One physical line: optional markdown decoration, "verdict", a colon, the rest.
VERDICT_LINE_RE = re.compile(
    r"^[ \t>#*_-]*verdict[ \t*_]*:(?P<rest>[^\n]*)$",
    re.IGNORECASE | re.MULTILINE,
)
VERDICT_TOKEN_RE = re.compile(r"^[ \t*_`]*(?P<token>[A-Za-z][A-Za-z0-9_-]*)")
APPROVED_REVIEW_TOKENS = frozenset({"APPROVED", "APPROVE"})
APPROVED_PLAN_TOKEN = "APPROVED_PLAN"


def extract_verdict_token(text: str | None) -> str:
    """Return the token of the first verdict line, upper-cased.

    Only the first ``verdict:`` line counts. When that line carries no
    usable token (``Verdict:`` alone, ``Verdict: (pending)``) the result is
    ``""`` and later verdict lines are ignored.
    """
    if not text:
        return ""
    line = VERDICT_LINE_RE.search(text)
    if line is None:
        return ""
    token = VERDICT_TOKEN_RE.match(line.group("rest"))
    return token.group("token").upper() if token else ""


def parse_review_verdict(text: str | None) -> Verdict:
    token = extract_verdict_token(text)
    return Verdict(token=token, approved=token in APPROVED_REVIEW_TOKENS)


def parse_plan_verdict(text: str | None) -> Verdict:
    token = extract_verdict_token(text)
    return Verdict(token=token, approved=token == APPROVED_PLAN_TOKEN)


def read_plan_verdict(path: Path) -> Verdict | None:
    """Plan verdict of the PLAN_REVIEW document, or None when the file is absent."""
    if not path.is_file():
        return None
    return parse_plan_verdict(path.read_text(encoding="utf-8", errors="replace"))
