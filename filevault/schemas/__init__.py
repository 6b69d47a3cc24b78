"""
Pydantic schemas for request/response validation.
"""
from filevault.schemas.files import (
    PlacementRequest,
    FileTransferRequest,
    TokenCreateRequest,
    CleanupRequest,
    StoredFileResponse,
    FileInfoResponse,
    FileEntryResponse,
    FileListResponse,
    DiskUsageResponse,
    DeleteResponse,
    SecureLinkResponse,
    TokenInfoResponse,
    CleanupDetailResponse,
    CleanupRunResponse,
    CleanupStatsResponse,
    HealthReportResponse,
)

__all__ = [
    # Request schemas
    "PlacementRequest",
    "FileTransferRequest",
    "TokenCreateRequest",
    "CleanupRequest",
    # Response schemas
    "StoredFileResponse",
    "FileInfoResponse",
    "FileEntryResponse",
    "FileListResponse",
    "DiskUsageResponse",
    "DeleteResponse",
    "SecureLinkResponse",
    "TokenInfoResponse",
    "CleanupDetailResponse",
    "CleanupRunResponse",
    "CleanupStatsResponse",
    "HealthReportResponse",
]
