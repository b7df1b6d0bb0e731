"""Exceptions raised by commitment lifecycle actions."""

from __future__ import annotations


class LifecycleError(Exception):
    """Base class for commitment lifecycle failures."""


class CommitmentNotFoundError(LifecycleError):
    """Raised when the referenced commitment does not exist."""

    def __init__(self, kind: str, commitment_id: int) -> None:
        super().__init__(f"{kind} {commitment_id} not found")
        self.kind = kind
        self.commitment_id = commitment_id


class InvalidTransitionError(LifecycleError):
    """Raised when a commitment is not in a state that allows the action."""

    def __init__(self, kind: str, commitment_id: int, current, action: str) -> None:
        current = getattr(current, "value", current)
        super().__init__(f"cannot {action} {kind} {commitment_id} in state {current}")
        self.kind = kind
        self.commitment_id = commitment_id
        self.current = current
        self.action = action


class PermissionDeniedError(LifecycleError):
    """Raised when the acting user is not the counterparty for the action."""
