from __future__ import annotations

import logging
import re
import subprocess
from datetime import UTC, datetime
from pathlib import Path

from .errors import UsageError
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

FEATURE_SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
HISTORY_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"
_MAX_SLUG_LENGTH = 80


def validate_feature_slug(feature: str) -> str:
    """Return *feature* unchanged if it is a safe directory name.

    Raises:
        UsageError: For empty names, traversal sequences, separators or
            characters outside ``[A-Za-z0-9._-]``.
    """
    if feature is None or not feature.strip():
        raise UsageError("feature name is required")
    if feature != feature.strip():
        raise UsageError(f"invalid feature name (surrounding whitespace): {feature!r}")
    if ".." in feature or "/" in feature or "\\" in feature or Path(feature).is_absolute():
        raise UsageError(f"invalid feature name (path traversal): {feature!r}")
    if len(feature) > _MAX_SLUG_LENGTH:
        raise UsageError(f"invalid feature name (longer than {_MAX_SLUG_LENGTH} characters): {feature!r}")
    if not FEATURE_SLUG_RE.match(feature):
        raise UsageError(f"invalid feature name (allowed: letters, digits, '.', '_', '-'): {feature!r}")
    return feature


def sanitize_feature_name(raw: str) -> str:
    """Turn free text or a URL into a feature slug.

    Every character outside ``[A-Za-z0-9._-]`` becomes ``_`` and dot runs are
    collapsed so the result can never contain ``..``.
    """
    slug = re.sub(r"[^A-Za-z0-9._-]", "_", raw.strip())
    slug = re.sub(r"\.{2,}", ".", slug)
    slug = slug.lstrip("._-")[:_MAX_SLUG_LENGTH].rstrip(".")
    if not slug:
        raise UsageError(f"cannot derive a feature name from {raw!r}")
    return validate_feature_slug(slug)


def utc_timestamp(moment: datetime | None = None) -> str:
    return (moment or datetime.now(UTC)).astimezone(UTC).strftime(HISTORY_TIMESTAMP_FORMAT)


def parse_positive_int(raw: str | int, *, name: str) -> int:
    """Parse a strictly positive integer or raise UsageError."""
    if isinstance(raw, bool):
        raise UsageError(f"{name} must be a positive integer, got: {raw!r}")
    if isinstance(raw, int):
        value = raw
    else:
        text = str(raw).strip()
        if not re.fullmatch(r"[+]?\d+", text):
            raise UsageError(f"{name} must be a positive integer, got: {raw!r}")
        value = int(text)
    if value < 1:
        raise UsageError(f"{name} must be a positive integer, got: {raw!r}")
    return value


def notify(settings: RuntimeSettings, message: str) -> None:
    """Invoke the configured notification hook with *message*.

    Hook failures are logged and never propagate.
    """
    if not settings.notify_hook:
        return
    try:
        result = subprocess.run(
            [settings.notify_hook, message],
            cwd=settings.project_root,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        logger.warning("notify hook %s could not run: %s", settings.notify_hook, exc)
        return
    if result.returncode != 0:
        logger.warning("notify hook %s exited %s: %s", settings.notify_hook, result.returncode, result.stderr.strip())
