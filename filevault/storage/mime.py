"""
Static extension -> MIME type table shared by storage and downloads.
"""
from pathlib import PurePosixPath

DEFAULT_MIME_TYPE = "application/octet-stream"

MIME_TYPES = {
    ".csv": "text/csv",
    ".json": "application/json",
    ".txt": "text/plain",
    ".pdf": "application/pdf",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".zip": "application/zip",
}


def mime_type_for_extension(extension: str) -> str:
    """Map an extension (with or without the dot) to a MIME type."""
    if extension and not extension.startswith("."):
        extension = f".{extension}"
    return MIME_TYPES.get(extension.lower(), DEFAULT_MIME_TYPE)


def mime_type_for_filename(file_name: str) -> str:
    return mime_type_for_extension(PurePosixPath(file_name).suffix)
