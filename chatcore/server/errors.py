import grpc


class ChatError(Exception):
    """Base class of every caller-visible failure.

    Each subclass carries the gRPC status the servicer aborts with.
    """
    status = grpc.StatusCode.UNKNOWN
    code = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_payload(self):
        return {"code": self.code, "message": self.message}


class NotFound(ChatError):
    status = grpc.StatusCode.NOT_FOUND
    code = "not_found"


class MessageNotFound(NotFound):
    code = "message_not_found"


class Forbidden(ChatError):
    status = grpc.StatusCode.PERMISSION_DENIED
    code = "forbidden"


class RecallWindowExpired(ChatError):
    status = grpc.StatusCode.FAILED_PRECONDITION
    code = "recall_window_expired"


class ValidationFailed(ChatError):
    status = grpc.StatusCode.INVALID_ARGUMENT
    code = "validation_failed"


class AlreadyExists(ChatError):
    status = grpc.StatusCode.ALREADY_EXISTS
    code = "already_exists"


class AuthenticationFailed(ChatError):
    status = grpc.StatusCode.UNAUTHENTICATED
    code = "authentication_failed"


class PersistenceFailure(ChatError):
    status = grpc.StatusCode.INTERNAL
    code = "persistence_failure"


class ConcurrentModification(PersistenceFailure):
    """A write carried a version token older than the stored record."""
    status = grpc.StatusCode.ABORTED
    code = "concurrent_modification"
