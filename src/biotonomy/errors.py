from __future__ import annotations

EXIT_FAILURE = 1
EXIT_USAGE = 2


class BiotonomyError(Exception):
    """Base class for errors the CLI reports without a traceback."""

    exit_code = EXIT_FAILURE


class UsageError(BiotonomyError):
    """Bad arguments: rejected before any side effect."""

    exit_code = EXIT_USAGE


class PreconditionError(BiotonomyError):
    """A required artifact or repository state is missing."""


class StageFailure(BiotonomyError):
    def __init__(self, stage: str, message: str, *, iteration: int | None = None) -> None:
        self.stage = stage
        self.iteration = iteration
        super().__init__(message)


class GitError(BiotonomyError):
    """A version-control command exited non-zero."""
