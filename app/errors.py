from enum import Enum


class ErrorKind(str, Enum):
    AUTH_FAILED = "AUTH_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"
    REQUEST_FAILED = "REQUEST_FAILED"


class UpstreamError(Exception):
    """Failure talking to EMDEX, tagged with the kind of failure.

    ``status_code`` is the upstream HTTP status when there was one.
    """

    def __init__(self, message, kind, original=None, status_code=None):
        super().__init__(message)
        self.message = message
        self.kind = ErrorKind(kind)
        self.original = original
        self.status_code = status_code

    def __repr__(self):
        return f"UpstreamError({self.kind.value}: {self.message})"
