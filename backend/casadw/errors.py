from typing import Optional


class ApiError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[list[dict[str, str]]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []


class ValidationError(ApiError):
    """A required field is missing or a key field is malformed."""

    status_code = 400
    code = "VALIDATION_ERROR"


class UpstreamError(ApiError):
    """Storage or media provider failure; the provider message is passed through."""

    status_code = 500
    code = "UPSTREAM_ERROR"


class StorageError(UpstreamError):
    code = "STORAGE_ERROR"


class UploadError(UpstreamError):
    code = "UPLOAD_ERROR"


class DeleteError(UpstreamError):
    code = "DELETE_ERROR"
