"""
File API Endpoints

Store, inspect, list, copy, move, delete and download stored files, and
manage secure download tokens.
"""
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from fastapi.responses import Response, StreamingResponse

from filevault.api.dependencies import download_options, get_facade
from filevault.core.errors import FileNotFoundInStorageError
from filevault.schemas.files import (
    DeleteResponse,
    DiskUsageResponse,
    FileInfoResponse,
    FileListResponse,
    FileTransferRequest,
    SecureLinkResponse,
    StoredFileResponse,
    TokenCreateRequest,
    TokenInfoResponse,
)
from filevault.storage.access import BufferedSink, DownloadOptions
from filevault.storage.engine import PlacementOptions
from filevault.storage.lifecycle import LifecycleFacade
from filevault.storage.mime import mime_type_for_filename

router = APIRouter(prefix="/files", tags=["files"])


def _buffered_response(sink: BufferedSink) -> Response:
    return Response(content=sink.content, headers=sink.headers)


# ============================================================================
# Files
# ============================================================================

@router.post("", response_model=StoredFileResponse, status_code=status.HTTP_201_CREATED)
def upload_file(
    file: UploadFile = File(..., description="File to store"),
    campaign_id: Optional[str] = Form(None),
    batch_id: Optional[str] = Form(None),
    user_id: Optional[str] = Form(None),
    file_type: Optional[str] = Form(None),
    is_temporary: bool = Form(False),
    facade: LifecycleFacade = Depends(get_facade),
):
    """
    Store an uploaded file

    The target directory follows the placement precedence:
    temporary, campaign (and batch), user, file type, then general.

    **Returns:**
    The stored file id, relative path, checksum and size
    """
    data = file.file.read()
    original_name = file.filename or "upload"
    mime_type = file.content_type or mime_type_for_filename(original_name)

    placement = PlacementOptions(
        campaign_id=campaign_id,
        batch_id=batch_id,
        user_id=user_id,
        file_type=file_type,
        is_temporary=is_temporary,
    )

    stored = facade.upload_file(data, original_name, mime_type, placement)
    return StoredFileResponse.model_validate(stored)


@router.get("/info", response_model=FileInfoResponse)
def get_file_info(
    path: str = Query(..., min_length=1, description="Relative file path"),
    facade: LifecycleFacade = Depends(get_facade),
):
    """Stat a file; a missing path is reported with exists=false"""
    return FileInfoResponse.model_validate(facade.get_file_info(path))


@router.get("/list", response_model=FileListResponse)
def list_files(
    path: str = Query("", description="Relative directory ('' for the root)"),
    recursive: bool = Query(False),
    include_stats: bool = Query(False),
    facade: LifecycleFacade = Depends(get_facade),
):
    entries = list(facade.list_files(path, recursive=recursive, include_stats=include_stats))

    return {
        "path": path,
        "files": entries,
        "total": len(entries),
    }


@router.get("/usage", response_model=DiskUsageResponse)
def get_disk_usage(
    path: str = Query("", description="Relative directory ('' for the root)"),
    facade: LifecycleFacade = Depends(get_facade),
):
    usage = facade.get_disk_usage(path)
    return {"path": path, **usage.to_dict()}


@router.delete("", response_model=DeleteResponse)
def delete_file(
    path: str = Query(..., min_length=1),
    facade: LifecycleFacade = Depends(get_facade),
):
    """Delete a file; deleting an absent file succeeds"""
    facade.delete_file(path)
    return {"deleted_path": path}


@router.post("/copy", response_model=StoredFileResponse, status_code=status.HTTP_201_CREATED)
def copy_file(
    request: FileTransferRequest,
    facade: LifecycleFacade = Depends(get_facade),
):
    stored = facade.copy_file(request.source_path, request.to_placement(request.original_name))
    return StoredFileResponse.model_validate(stored)


@router.post("/move", response_model=StoredFileResponse)
def move_file(
    request: FileTransferRequest,
    facade: LifecycleFacade = Depends(get_facade),
):
    stored = facade.move_file(request.source_path, request.to_placement(request.original_name))
    return StoredFileResponse.model_validate(stored)


# ============================================================================
# Downloads
# ============================================================================

@router.get("/download")
def download_file(
    path: str = Query(..., min_length=1, description="Relative file path"),
    stream: bool = Query(False, description="Stream the body in chunks"),
    options: DownloadOptions = Depends(download_options),
    facade: LifecycleFacade = Depends(get_facade),
):
    """
    Download a stored file

    **Parameters:**
    - path: Relative file path
    - stream: Send the body in chunks instead of buffering it
    - force_download: attachment instead of inline disposition
    - filename: Name presented to the client
    """
    if stream:
        prepared = facade.stream_file(path, options)
        return StreamingResponse(prepared.chunks, headers=prepared.headers)

    sink = BufferedSink()
    facade.download_file(path, sink, options)
    return _buffered_response(sink)


@router.get("/templates/{template_name}")
def download_template(
    template_name: str,
    options: DownloadOptions = Depends(download_options),
    facade: LifecycleFacade = Depends(get_facade),
):
    """Download templates/<template_name>.csv as <template_name>-template.csv"""
    sink = BufferedSink()
    facade.download_template(template_name, sink, options)
    return _buffered_response(sink)


# ============================================================================
# Download tokens
# ============================================================================

@router.post("/tokens", response_model=SecureLinkResponse, status_code=status.HTTP_201_CREATED)
def create_download_link(
    request: TokenCreateRequest,
    facade: LifecycleFacade = Depends(get_facade),
):
    """
    Issue a secure, time- and count-limited download link

    The file must exist when the link is issued.
    """
    if not facade.get_file_info(request.file_path).exists:
        raise FileNotFoundInStorageError()

    link = facade.generate_secure_download_link(
        request.file_id,
        request.file_path,
        ttl_minutes=request.expires_in_minutes,
        max_downloads=request.max_downloads,
        user_id=request.user_id,
    )
    return SecureLinkResponse.model_validate(link)


@router.get("/tokens/{token}", response_model=TokenInfoResponse)
def get_token_info(
    token: str,
    facade: LifecycleFacade = Depends(get_facade),
):
    info = facade.get_token_info(token)
    if info is None:
        raise FileNotFoundInStorageError("Download token not found")
    return info


@router.delete("/tokens/{token}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_token(
    token: str,
    facade: LifecycleFacade = Depends(get_facade),
):
    if not facade.revoke_token(token):
        raise FileNotFoundInStorageError("Download token not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/download/secure/{token}")
def download_by_token(
    token: str,
    options: DownloadOptions = Depends(download_options),
    facade: LifecycleFacade = Depends(get_facade),
):
    """
    Redeem a download token

    Each successful call consumes one use. Invalid, expired and exhausted
    tokens are rejected with distinct messages.
    """
    sink = BufferedSink()
    facade.download_by_token(token, sink, options)
    return _buffered_response(sink)
