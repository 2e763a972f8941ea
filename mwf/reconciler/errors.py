"""Exceptions raised by the reconciler.

Completion failures never show up here: they are converted into
fallback values inside the gap analyzer and the share-suggestion
generator. Persistence errors are SQLAlchemy's own and propagate
unchanged up to the coordinator.
"""


class ReconcilerError(Exception):
    """Base class for reconciler errors."""


class InvalidReconcilerInput(ReconcilerError, ValueError):
    """A caller broke the contract (missing statement, unknown direction...)."""


class InvalidTransition(ReconcilerError):
    """The requested operation is not allowed in the direction's current state."""

    def __init__(self, operation: str, status: str | None) -> None:
        super().__init__(f"cannot {operation} while direction is {status or 'missing'}")
        self.operation = operation
        self.status = status


class NotFoundError(ReconcilerError):
    """Session, participant or attempt does not exist."""
