class ProgressError(Exception):
    """Base class for course progress failures."""

    code = "progress_error"
    remediation = "Please try again."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.remediation)
        self.message = message or self.remediation


class AccessDenied(ProgressError):
    """The learner has no enrollment or course access record."""

    code = "no_access"
    remediation = "You do not have access to this course. Please contact your administrator."


class EnrollmentPending(ProgressError):
    """The enrollment exists but has not been approved yet."""

    code = "enrollment_pending"
    remediation = "Your enrollment is pending approval. Please check back later."


class ContentNotFound(ProgressError):
    """An expected course, chapter or content item is missing from a successful response."""

    code = "not_found"
    remediation = "The requested content could not be found. Please refresh and try again."


class TransientReadError(ProgressError):
    code = "transient"
    remediation = "Could not reach the server. Please retry."


class ProgressWriteError(ProgressError):
    code = "write_failed"
    remediation = "Failed to save progress. It will be retried automatically."


class SessionExpired(ProgressError):
    code = "session_expired"
    remediation = "Your session has expired. Please log in again."


class InvalidTransition(ProgressError):
    code = "invalid_transition"


ACCESS_ERRORS = {cls.code: cls for cls in (AccessDenied, EnrollmentPending)}
