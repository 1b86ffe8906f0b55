import enum


class Conflict(str, enum.Enum):
    NO_COPY_AVAILABLE = "NoCopyAvailable"
    ALREADY_ISSUED = "AlreadyIssued"
    ALREADY_QUEUED = "AlreadyQueued"
    ALREADY_PROCESSED = "AlreadyProcessed"
    COPY_AVAILABLE = "CopyAvailable"
    RENEWAL_PENDING = "RenewalPending"


class CircaError(Exception):
    code = "circa_error"

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self):
        return {"error": self.code, "message": self.message}


class NotFoundError(CircaError):
    code = "not_found"


class ConflictError(CircaError):
    code = "conflict"

    def __init__(self, reason: Conflict, message=None):
        super().__init__(message or reason.value)
        self.reason = reason

    def to_dict(self):
        return {"error": self.reason.value, "message": self.message}


class LimitExceeded(CircaError):
    code = "limit_exceeded"

    def __init__(self, message=None, limit=None):
        super().__init__(message)
        self.limit = limit

    def to_dict(self):
        return dict(super().to_dict(), limit=self.limit)


class ValidationError(CircaError):
    code = "invalid"


class StateError(CircaError):
    code = "invalid_state"


class ExternalServiceError(CircaError):
    code = "external_service"


class DatabaseWriteError(CircaError):
    code = "database_error"
