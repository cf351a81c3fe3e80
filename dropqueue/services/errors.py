"""Error taxonomy for upload attempts and remote service calls."""


class UploadError(Exception):
    """Base class for a failed upload attempt."""

    kind = "unknown"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransportError(UploadError):
    """Network or transport failure before a usable response arrived."""

    kind = "transport"


class RemoteRejection(UploadError):
    """The remote service answered with a structured error."""

    kind = "remote_rejection"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnknownFailure(UploadError):
    """No specific cause could be extracted."""

    kind = "unknown"


class RemoteServiceError(Exception):
    """Listing or deletion against the remote service failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
