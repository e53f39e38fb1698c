from realtime import DatabaseError


class ExpenseTrackerError(Exception):
    """Base error. `message` is safe to show to the user as plain text."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthenticated(ExpenseTrackerError):
    status_code = 401


class InvalidInput(ExpenseTrackerError):
    status_code = 400


class PermissionDenied(ExpenseTrackerError):
    status_code = 403


class ServiceUnavailable(ExpenseTrackerError):
    status_code = 503


class NetworkError(ExpenseTrackerError):
    status_code = 502


class UnknownBackendError(ExpenseTrackerError):
    status_code = 500


class ProcessingError(ExpenseTrackerError):
    status_code = 500


def classify_database_error(error: DatabaseError) -> ExpenseTrackerError:
    if error.code == DatabaseError.PERMISSION_DENIED:
        return PermissionDenied("You don't have permission to access this data")
    if error.code == DatabaseError.UNAVAILABLE:
        return ServiceUnavailable(
            "Service is temporarily unavailable. Please try again later"
        )
    if error.code == DatabaseError.NETWORK_ERROR:
        return NetworkError("Network error. Please check your connection")
    return UnknownBackendError(f"Database error: {error.message}")
