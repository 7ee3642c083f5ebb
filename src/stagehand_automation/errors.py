from __future__ import annotations


class StagehandError(Exception):
    """Base class for failures surfaced in a run report."""

    kind = "error"


class ConnectionFailure(StagehandError):
    """The target host could not be reached or refused our credentials."""

    kind = "connection"


class PreconditionError(StagehandError):
    """Evaluating whether the target state already holds failed."""

    kind = "precondition"


class MutationError(StagehandError):
    """The command that should bring the host into the target state failed."""

    kind = "mutation"


class ValidationError(StagehandError):
    """A step definition or staged content was rejected before committing."""

    kind = "validation"
