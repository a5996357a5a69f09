from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for permission and scope enforcement failures."""


class PermissionDeniedError(AuthorizationError):
    """Raised when the permission evaluator rejects an action.

    The message is the evaluator's reason and is safe to show to the caller.
    """

    def __init__(self, reason: str, action: str | None = None) -> None:
        self.reason = reason
        self.action = action
        super().__init__(reason)
