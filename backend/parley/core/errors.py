"""Exception hierarchy for the scheduling engine.

Expected ambiguity (an unparseable time, an unclear reply, a weak entity
link) is never raised; it comes back as a structured value and usually ends
in an escalation. These exceptions cover the remaining cases: invalid
operations, lost races and collaborator failures. Each carries an HTTP
status so routes can translate it directly.
"""


class SchedulerError(Exception):
    """Base exception for scheduling engine errors."""

    def __init__(self, message: str, status_code: int = 500, error_code: str = "scheduler_error"):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(self.message)


class RequestNotFoundError(SchedulerError):
    """Raised when a scheduling request does not exist."""

    def __init__(self, message: str = "Scheduling request not found"):
        super().__init__(message=message, status_code=404, error_code="request_not_found")


class DraftNotFoundError(SchedulerError):
    """Raised when a draft does not exist."""

    def __init__(self, message: str = "Draft not found"):
        super().__init__(message=message, status_code=404, error_code="draft_not_found")


class WorkItemNotFoundError(SchedulerError):
    def __init__(self, message: str = "Work item not found"):
        super().__init__(message=message, status_code=404, error_code="work_item_not_found")


class InvalidRequestError(SchedulerError):
    """Raised when input to a scheduling operation is malformed."""

    def __init__(self, message: str):
        super().__init__(message=message, status_code=422, error_code="invalid_request")


class InvalidTransitionError(SchedulerError):
    """Raised when a status change is not in the transition table."""

    def __init__(self, message: str):
        super().__init__(message=message, status_code=409, error_code="invalid_transition")


class TerminalStateError(SchedulerError):
    """Raised when anything but a read targets a cancelled or completed request."""

    def __init__(self, message: str):
        super().__init__(message=message, status_code=409, error_code="terminal_state")


class ConcurrencyConflictError(SchedulerError):
    """Raised when an optimistic update or claim lost a race.

    Background jobs treat this as a no-op for the loser.
    """

    def __init__(self, message: str = "Record was modified concurrently"):
        super().__init__(message=message, status_code=409, error_code="concurrency_conflict")


class DraftStateError(SchedulerError):
    """Raised when a draft action is not allowed from the draft's current status."""

    def __init__(self, message: str, status_code: int = 409):
        super().__init__(message=message, status_code=status_code, error_code="draft_state_error")


class DraftExpiredError(SchedulerError):
    def __init__(self, message: str = "Draft expired before it was approved"):
        super().__init__(message=message, status_code=410, error_code="draft_expired")


class SlotUnavailableError(SchedulerError):
    """Raised at execution time when a time slot is no longer free."""

    def __init__(self, message: str = "Requested time slot is no longer available"):
        super().__init__(message=message, status_code=409, error_code="slot_unavailable")


class CompletionServiceError(SchedulerError):
    """Raised when the text-completion collaborator cannot be reached."""

    def __init__(self, message: str, error_code: str = "completion_unavailable"):
        super().__init__(message=message, status_code=502, error_code=error_code)


class ProviderError(SchedulerError):
    """Base exception for email/calendar provider failures."""

    def __init__(self, message: str, status_code: int = 502, error_code: str = "provider_error"):
        super().__init__(message=message, status_code=status_code, error_code=error_code)
