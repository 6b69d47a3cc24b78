"""
Pydantic schemas for file storage, download and maintenance endpoints.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from filevault.storage.engine import PlacementOptions
from filevault.storage.retention import CleanupOptions


# ========================================
# Request Schemas
# ========================================

class PlacementRequest(BaseModel):
    """Ownership tags deciding where a file lands."""
    campaign_id: Optional[Union[int, str]] = Field(default=None, description="Owning campaign")
    batch_id: Optional[Union[int, str]] = Field(default=None, description="Batch within the campaign")
    user_id: Optional[str] = Field(default=None, description="Owning user")
    file_type: Optional[str] = Field(default=None, description="Logical file type")
    is_temporary: bool = Field(default=False, description="Store under temp/")

    def to_placement(self, original_name: Optional[str] = None) -> PlacementOptions:
        return PlacementOptions(
            campaign_id=self.campaign_id,
            batch_id=self.batch_id,
            user_id=self.user_id,
            file_type=self.file_type,
            is_temporary=self.is_temporary,
            original_name=original_name,
        )


class FileTransferRequest(PlacementRequest):
    """Schema for copy and move requests."""
    source_path: str = Field(..., min_length=1, max_length=2048, description="Relative path of the source file")
    original_name: Optional[str] = Field(default=None, max_length=255, description="Name for the new file")


class TokenCreateRequest(BaseModel):
    """Schema for issuing a secure download link."""
    file_id: str = Field(..., min_length=1, description="Logical file id")
    file_path: str = Field(..., min_length=1, max_length=2048, description="Relative path of the file")
    expires_in_minutes: Optional[int] = Field(default=None, ge=0, description="Token lifetime (default 60)")
    max_downloads: Optional[int] = Field(default=None, ge=1, description="Usage cap")
    user_id: Optional[str] = None


class CleanupRequest(BaseModel):
    """Schema for a manual cleanup run."""
    dry_run: bool = False
    max_files_to_process: Optional[int] = Field(default=None, ge=0)
    include_temporary: bool = True
    include_archived: bool = False
    include_deleted: bool = False
    older_than_days: Optional[int] = Field(default=None, ge=0)
    campaign_id: Optional[str] = None
    user_id: Optional[str] = None

    @field_validator("campaign_id", "user_id")
    @classmethod
    def validate_target_id(cls, v: Optional[str]) -> Optional[str]:
        """Target ids become directory names."""
        if v is not None and ("/" in v or "\\" in v or v in (".", "..")):
            raise ValueError("Target id must be a single path segment")
        return v

    def to_options(self) -> CleanupOptions:
        return CleanupOptions(**self.model_dump())


# ========================================
# Response Schemas
# ========================================

class StoredFileResponse(BaseModel):
    """Schema for a stored file."""
    file_id: str
    file_path: str
    file_name: str
    checksum: str
    size: int
    warnings: List[str] = Field(default_factory=list, description="Non-fatal problems, e.g. a move that left its source")

    model_config = ConfigDict(from_attributes=True)


class FileInfoResponse(BaseModel):
    """Schema for file stats."""
    exists: bool
    size: int
    created_at: datetime
    modified_at: datetime
    is_directory: bool
    checksum: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class FileEntryResponse(BaseModel):
    name: str
    path: str
    stats: Optional[FileInfoResponse] = None

    model_config = ConfigDict(from_attributes=True)


class FileListResponse(BaseModel):
    path: str
    files: List[FileEntryResponse]
    total: int


class DiskUsageResponse(BaseModel):
    path: str
    total_size: int
    file_count: int
    directory_count: int


class DeleteResponse(BaseModel):
    deleted_path: str


class SecureLinkResponse(BaseModel):
    """Schema for a secure download link."""
    download_url: str
    token: str
    expires_at: datetime
    file_id: str
    max_downloads: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class TokenInfoResponse(BaseModel):
    """Token details; the file path is never exposed."""
    file_id: str
    expires_at: datetime
    max_downloads: Optional[int] = None
    current_downloads: int


class CleanupDetailResponse(BaseModel):
    file_path: str
    action: str
    reason: str
    size: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class CleanupRunResponse(BaseModel):
    """Schema for a cleanup run."""
    files_deleted: int
    space_cleaned: int
    space_cleaned_mb: float
    errors: List[str]
    details: List[CleanupDetailResponse]
    dry_run: bool


class CleanupStatsResponse(BaseModel):
    is_running: bool
    interval_minutes: int
    next_cleanup_estimate: Optional[datetime] = None
    config: Dict[str, Any]


class HealthReportResponse(BaseModel):
    """Schema for the storage health check."""
    status: str
    checks: Dict[str, bool]
    details: Dict[str, Any]
