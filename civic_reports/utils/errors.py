from typing import Any, List, Optional


class ReportError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Any]] = None):
        self.message = message or self.message
        self.errors = errors or []
        super().__init__(self.message)


class ValidationError(ReportError):
    status_code = 400
    message = "Validation failed"


class InvalidStatusError(ValidationError):
    message = "Invalid status"


class AuthorizationError(ReportError):
    status_code = 403
    message = "Not authorized"


class NotFoundError(ReportError):
    status_code = 404
    message = "Not found"


class AlreadyInStateError(ReportError):
    status_code = 409
    message = "Report is already in the requested state"


class NoOpError(AlreadyInStateError):
    pass


class AlreadyRejectedError(AlreadyInStateError):
    message = "Report is already rejected"


class MediaUploadError(ReportError):
    status_code = 502
    message = "Failed to upload media files"


class InternalError(ReportError):
    pass
