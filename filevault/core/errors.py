"""
Exception hierarchy for the file storage subsystem.

Every error carries an HTTP-style status code so the API layer can map it
to a response without a lookup table.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class FileVaultError(Exception):
    """Base error for storage, retention and download failures."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        errors: Optional[List[str]] = None
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to response payload"""
        payload: Dict[str, Any] = {
            "error": self.message,
            "status_code": self.status_code,
        }
        if self.errors:
            payload["errors"] = self.errors
        return payload


class FileValidationError(FileVaultError):
    """Rejected input: empty or oversize file, disallowed type, bad path."""

    status_code = 400


class FileNotFoundInStorageError(FileVaultError):
    status_code = 404

    def __init__(self, message: str = "File not found"):
        super().__init__(message)


class FileAccessDeniedError(FileVaultError):
    status_code = 403

    def __init__(self, message: str = "Access denied to file"):
        super().__init__(message)


class StorageIOError(FileVaultError):
    """Filesystem failure wrapped with the operation that caused it."""

    status_code = 500

    def __init__(self, operation: str, error: Optional[BaseException] = None):
        detail = str(error) if error is not None else "Unknown error"
        super().__init__(f"Failed to {operation}: {detail}")
        self.operation = operation
        self.__cause__ = error


class DownloadTokenError(FileVaultError):
    """Base class for token redemption failures."""

    status_code = 400


class InvalidTokenError(DownloadTokenError):
    def __init__(self, message: str = "Invalid or expired download token"):
        super().__init__(message)


class TokenExpiredError(DownloadTokenError):
    def __init__(self, message: str = "Download token has expired"):
        super().__init__(message)


class TokenExhaustedError(DownloadTokenError):
    def __init__(self, message: str = "Download limit exceeded"):
        super().__init__(message)
