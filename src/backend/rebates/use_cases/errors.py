"""Typed failures raised by the reconciliation engine.

Each failure carries a user-facing message and whether re-running the whole
operation (after a fresh reconciliation) may succeed.
"""

from __future__ import annotations


class RebateEngineError(Exception):
    retryable: bool = False
    user_message: str = "An unknown error occurred. Please try again or contact support."

    def __init__(self, detail: str, *, user_message: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        if user_message is not None:
            self.user_message = user_message


class FetchFailure(RebateEngineError):
    """Either backend could not be read; no partial aggregate was produced."""

    retryable = True
    user_message = "Could not load submissions. Please try again."


class MutationFailure(RebateEngineError):
    """A create, save or delete against the forms backend did not go through."""

    retryable = True
    user_message = "The request could not be completed. Please try again."


class StaleGuardRejected(RebateEngineError):
    """The live BAP re-check no longer supports the requested mutation."""

    retryable = True
    user_message = "This rebate has changed since the page was loaded. Please refresh and retry."


class MutationInProgress(RebateEngineError):
    retryable = True
    user_message = "A request for this form is already in progress."


class InvalidTransitionAttempted(RebateEngineError):
    """The caller asked for an action the current gates do not allow."""

    retryable = False
    user_message = "This action is not available for this rebate."


class AccessDenied(RebateEngineError):
    """The submission belongs to an entity the user is not a contact for."""

    retryable = False
    user_message = "Unauthorized."
