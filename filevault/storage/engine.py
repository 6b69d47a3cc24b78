"""
Filesystem Storage Engine

Persists uploaded artifacts under a single root directory and organises them
by ownership. Implements:
- Validated writes (size ceiling, MIME allow-list, empty-file rejection)
- Deterministic placement (temp > campaign/batch > user > type > general)
- SHA-256 integrity checksums
- Copy/move as re-store operations
- Lazy, restartable directory listings and disk usage walks
"""
import dataclasses
import hashlib
import logging
import os
import secrets
import stat
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, FrozenSet, Iterator, Optional, Tuple, Union

from filevault.core.errors import (
    FileNotFoundInStorageError,
    FileValidationError,
    StorageIOError,
)
from filevault.metrics import (
    storage_bytes_written_total,
    storage_operation_duration_seconds,
    storage_operations_total,
)
from filevault.storage.mime import mime_type_for_extension

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_MIME_TYPES = (
    "text/csv",
    "application/json",
    "text/plain",
    "application/pdf",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
)

# Top-level areas provisioned under the storage root
TEMP_DIR = "temp"
CAMPAIGNS_DIR = "campaigns"
USERS_DIR = "users"
TYPES_DIR = "types"
GENERAL_DIR = "general"
TEMPLATES_DIR = "templates"
EXPORTS_DIR = "exports"
DELETED_DIR = "deleted"

REQUIRED_DIRECTORIES = (
    TEMP_DIR,
    CAMPAIGNS_DIR,
    USERS_DIR,
    TYPES_DIR,
    GENERAL_DIR,
    TEMPLATES_DIR,
    EXPORTS_DIR,
    DELETED_DIR,
)

DEFAULT_CHUNK_SIZE = 64 * 1024

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

Identifier = Union[int, str]
NameFilter = Callable[[str], bool]


@dataclass
class StorageConfig:
    """
    Engine-wide storage policy
    """
    base_dir: Path = field(default_factory=lambda: Path.cwd() / "uploads")
    max_file_size: int = 100 * 1024 * 1024  # 100MB
    allowed_mime_types: FrozenSet[str] = frozenset(DEFAULT_ALLOWED_MIME_TYPES)
    retention_days: int = 30
    compression_enabled: bool = False

    def __post_init__(self):
        self.base_dir = Path(self.base_dir)
        self.allowed_mime_types = frozenset(self.allowed_mime_types)


@dataclass
class PlacementOptions:
    """
    Ownership tags deciding where a stored file lands.

    `original_name` is only consulted by copy/move, to name the new file.
    """
    campaign_id: Optional[Identifier] = None
    batch_id: Optional[Identifier] = None
    user_id: Optional[str] = None
    file_type: Optional[str] = None
    is_temporary: bool = False
    original_name: Optional[str] = None


@dataclass(frozen=True)
class StoredFile:
    """
    Outcome of a store operation

    `warnings` holds non-fatal problems, such as a move whose source could
    not be removed.
    """
    file_id: str
    file_path: str
    file_name: str
    checksum: str
    size: int
    warnings: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class FileInfo:
    """
    Point-in-time stat of a path
    """
    exists: bool
    size: int
    created_at: datetime
    modified_at: datetime
    is_directory: bool
    checksum: Optional[str] = None

    @classmethod
    def absent(cls) -> "FileInfo":
        now = datetime.now(timezone.utc)
        return cls(exists=False, size=0, created_at=now, modified_at=now, is_directory=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'exists': self.exists,
            'size': self.size,
            'created_at': self.created_at.isoformat(),
            'modified_at': self.modified_at.isoformat(),
            'is_directory': self.is_directory,
            'checksum': self.checksum,
        }


@dataclass(frozen=True)
class FileEntry:
    name: str
    path: str
    stats: Optional[FileInfo] = None


@dataclass(frozen=True)
class DiskUsage:
    total_size: int
    file_count: int
    directory_count: int

    def to_dict(self) -> Dict[str, int]:
        return dataclasses.asdict(self)


def calculate_checksum(data: bytes) -> str:
    """SHA-256 of the raw bytes, lower-case hex"""
    return hashlib.sha256(data).hexdigest()


def generate_file_id() -> str:
    """
    Time-ordered, collision-resistant id: base36 milliseconds + random suffix
    """
    millis = int(time.time() * 1000)
    timestamp = ""
    while millis:
        millis, remainder = divmod(millis, 36)
        timestamp = _BASE36[remainder] + timestamp
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{timestamp or '0'}_{suffix}"


def _is_set(value: Optional[Identifier]) -> bool:
    return value is not None and str(value) != ""


def path_segment(value: Identifier, label: str) -> str:
    segment = str(value)
    if not segment or segment in (".", "..") or "/" in segment or "\\" in segment:
        raise FileValidationError(f"Invalid {label}: {segment!r}")
    return segment


def _timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class FileListing:
    """
    Re-iterable directory listing.

    Each iteration walks the directory again, depth-first, so the listing
    always reflects the current state of the filesystem.
    """

    def __init__(
        self,
        engine: "StorageEngine",
        relative_path: str,
        recursive: bool = False,
        include_stats: bool = False,
        name_filter: Optional[NameFilter] = None
    ):
        self.engine = engine
        self.relative_path = relative_path
        self.recursive = recursive
        self.include_stats = include_stats
        self.name_filter = name_filter

    def __iter__(self) -> Iterator[FileEntry]:
        return self._walk(self.relative_path)

    def _walk(self, relative_path: str) -> Iterator[FileEntry]:
        full_path = self.engine.resolve(relative_path)

        if not full_path.is_dir():
            return

        try:
            with os.scandir(full_path) as iterator:
                items = sorted(iterator, key=lambda entry: entry.name)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageIOError("list files", e)

        for item in items:
            if self.name_filter and not self.name_filter(item.name):
                continue

            item_path = PurePosixPath(relative_path, item.name).as_posix() if relative_path else item.name
            stats = None
            if self.include_stats:
                stats = self.engine.get_file_info(item_path, with_checksum=False)

            yield FileEntry(name=item.name, path=item_path, stats=stats)

            if self.recursive and item.is_dir(follow_symlinks=False):
                yield from self._walk(item_path)


class StorageEngine:
    """
    Filesystem storage engine

    Features:
    - Organised directory layout per campaign, batch, user and file type
    - Size, type and emptiness validation before any write
    - Checksums computed over the exact bytes written
    - Idempotent deletes
    - Re-iterable listings and recursive disk usage
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        """
        Initialize storage engine

        Args:
            config: Storage policy; defaults to ./uploads with the standard limits
        """
        self.config = config or StorageConfig()

        logger.info(
            f"StorageEngine initialized at '{self.config.base_dir}' "
            f"(max_file_size={self.config.max_file_size}, "
            f"allowed_types={len(self.config.allowed_mime_types) or 'any'})"
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def ensure_directories(self) -> None:
        """Create the root and every required top-level area"""
        try:
            self.config.base_dir.mkdir(parents=True, exist_ok=True)
            for name in REQUIRED_DIRECTORIES:
                (self.config.base_dir / name).mkdir(exist_ok=True)
        except OSError as e:
            raise StorageIOError("create storage directories", e)

    def get_config(self) -> StorageConfig:
        return dataclasses.replace(self.config)

    def update_config(self, **changes: Any) -> StorageConfig:
        """
        Replace configuration fields and re-provision directories

        Args:
            **changes: StorageConfig field overrides

        Returns:
            The new configuration
        """
        self.config = dataclasses.replace(self.config, **changes)
        self.ensure_directories()
        logger.info(f"Storage configuration updated: {sorted(changes)}")
        return self.get_config()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def root(self) -> Path:
        return self.config.base_dir.resolve()

    def resolve(self, relative_path: str = "") -> Path:
        """
        Resolve a root-relative path, refusing anything that escapes the root
        """
        root = self.root
        full_path = (root / relative_path).resolve()

        if full_path != root and root not in full_path.parents:
            raise FileValidationError(f"Path escapes storage root: {relative_path}")

        return full_path

    def relative(self, full_path: Path) -> str:
        return full_path.relative_to(self.root).as_posix()

    def placement_directory(self, placement: Optional[PlacementOptions] = None) -> str:
        """
        Relative directory for a store request

        Exactly one branch applies: temporary, then campaign (with optional
        batch), then user, then file type, then the general fallback.
        """
        placement = placement or PlacementOptions()

        if placement.is_temporary:
            return TEMP_DIR

        if _is_set(placement.campaign_id):
            campaign = path_segment(placement.campaign_id, "campaign id")
            if _is_set(placement.batch_id):
                batch = path_segment(placement.batch_id, "batch id")
                return f"{CAMPAIGNS_DIR}/{campaign}/batches/{batch}"
            return f"{CAMPAIGNS_DIR}/{campaign}"

        if _is_set(placement.user_id):
            return f"{USERS_DIR}/{path_segment(placement.user_id, 'user id')}"

        if _is_set(placement.file_type):
            return f"{TYPES_DIR}/{path_segment(placement.file_type, 'file type')}"

        return GENERAL_DIR

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def validate(self, data: bytes, mime_type: str) -> None:
        """
        Validate file contents before storage

        Raises:
            FileValidationError: empty data, oversize data or disallowed MIME type
        """
        if len(data) == 0:
            raise FileValidationError("Cannot store empty file")

        if len(data) > self.config.max_file_size:
            raise FileValidationError(
                f"File size {len(data)} exceeds maximum allowed size of "
                f"{self.config.max_file_size} bytes"
            )

        allowed = self.config.allowed_mime_types
        if allowed and mime_type not in allowed:
            raise FileValidationError(
                f"File type {mime_type} is not allowed. "
                f"Allowed types: {', '.join(sorted(allowed))}"
            )

    def store(
        self,
        data: bytes,
        original_name: str,
        mime_type: str,
        placement: Optional[PlacementOptions] = None
    ) -> StoredFile:
        """
        Store a file in the organised directory structure

        Args:
            data: Raw file bytes
            original_name: Client-side file name (its extension is kept)
            mime_type: Declared MIME type
            placement: Ownership tags deciding the target directory

        Returns:
            StoredFile describing the written file

        Raises:
            FileValidationError: if validation fails
            StorageIOError: if the directory or file cannot be written
        """
        start = time.perf_counter()

        try:
            self.validate(data, mime_type)

            file_id = generate_file_id()
            extension = PurePosixPath(original_name).suffix.lower()
            file_name = f"{file_id}{extension}"

            directory = self.resolve(self.placement_directory(placement))
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageIOError("create directory", e)

            full_path = directory / file_name
            try:
                with open(full_path, "xb") as handle:
                    handle.write(data)
            except OSError as e:
                raise StorageIOError("store file", e)

            stored = StoredFile(
                file_id=file_id,
                file_path=self.relative(full_path),
                file_name=file_name,
                checksum=calculate_checksum(data),
                size=len(data),
            )

        except Exception:
            storage_operations_total.labels(operation="store", status="error").inc()
            raise

        storage_operations_total.labels(operation="store", status="success").inc()
        storage_bytes_written_total.inc(stored.size)
        storage_operation_duration_seconds.labels(operation="store").observe(
            time.perf_counter() - start
        )

        logger.info(
            f"Stored '{original_name}' as {stored.file_path} ({stored.size} bytes)",
            extra={'file_id': stored.file_id, 'checksum': stored.checksum},
        )

        return stored

    def store_from_path(
        self,
        source_path: Union[str, Path],
        original_name: str,
        mime_type: str,
        placement: Optional[PlacementOptions] = None,
        move_file: bool = False
    ) -> StoredFile:
        """
        Store a file that currently lives outside the storage root

        Args:
            source_path: Absolute path of the external file (e.g. an upload spool)
            original_name: Client-side file name
            mime_type: Declared MIME type
            placement: Ownership tags
            move_file: Remove the source afterwards (best effort)

        Returns:
            StoredFile describing the written file
        """
        source = Path(source_path)

        try:
            data = source.read_bytes()
        except FileNotFoundError:
            raise FileNotFoundInStorageError(f"Source file not found: {source}")
        except OSError as e:
            raise StorageIOError("read source file", e)

        stored = self.store(data, original_name, mime_type, placement)

        if move_file:
            try:
                source.unlink()
            except OSError as e:
                warning = f"Failed to delete source file {source}: {e}"
                logger.warning(warning)
                return dataclasses.replace(stored, warnings=stored.warnings + (warning,))

        return stored

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_file(self, relative_path: str) -> bytes:
        """
        Read file content

        Raises:
            FileNotFoundInStorageError: if the path is absent or not a file
        """
        full_path = self.resolve(relative_path)

        if not full_path.is_file():
            raise FileNotFoundInStorageError()

        try:
            data = full_path.read_bytes()
        except FileNotFoundError:
            raise FileNotFoundInStorageError()
        except OSError as e:
            storage_operations_total.labels(operation="read", status="error").inc()
            raise StorageIOError("read file", e)

        storage_operations_total.labels(operation="read", status="success").inc()
        return data

    def open_stream(
        self,
        relative_path: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> Iterator[bytes]:
        """
        Iterate over a file's bytes without buffering it whole

        The existence check happens eagerly; read errors surface while iterating.
        """
        full_path = self.resolve(relative_path)

        if not full_path.is_file():
            raise FileNotFoundInStorageError()

        def chunks() -> Iterator[bytes]:
            with open(full_path, "rb") as handle:
                while True:
                    chunk = handle.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk

        return chunks()

    def get_file_info(self, relative_path: str, with_checksum: bool = True) -> FileInfo:
        """
        Stat a path; a missing path is reported, not raised

        `created_at` is the platform birth time when available, otherwise the
        modification time, whichever is earlier.
        """
        full_path = self.resolve(relative_path)

        try:
            st = full_path.stat()
        except FileNotFoundError:
            return FileInfo.absent()
        except OSError as e:
            raise StorageIOError("get file info", e)

        is_directory = stat.S_ISDIR(st.st_mode)
        created = min(getattr(st, "st_birthtime", st.st_mtime), st.st_mtime)

        checksum = None
        if with_checksum and not is_directory:
            try:
                checksum = calculate_checksum(full_path.read_bytes())
            except FileNotFoundError:
                return FileInfo.absent()
            except OSError as e:
                raise StorageIOError("get file info", e)

        return FileInfo(
            exists=True,
            size=st.st_size,
            created_at=_timestamp(created),
            modified_at=_timestamp(st.st_mtime),
            is_directory=is_directory,
            checksum=checksum,
        )

    # ------------------------------------------------------------------
    # Copy / move / delete
    # ------------------------------------------------------------------

    def copy(self, source_path: str, placement: Optional[PlacementOptions] = None) -> StoredFile:
        """
        Copy a stored file to a new placement as a new logical file

        The MIME type is inferred from the extension of the target name.
        """
        placement = placement or PlacementOptions()

        if not self.resolve(source_path).is_file():
            raise FileNotFoundInStorageError("Source file not found")

        data = self.read_file(source_path)
        original_name = placement.original_name or PurePosixPath(source_path).name
        mime_type = mime_type_for_extension(PurePosixPath(original_name).suffix)

        stored = self.store(data, original_name, mime_type, placement)
        storage_operations_total.labels(operation="copy", status="success").inc()
        return stored

    def move(self, source_path: str, placement: Optional[PlacementOptions] = None) -> StoredFile:
        """
        Copy then delete the source

        A failed delete after a successful copy leaves both files in place;
        the returned StoredFile then carries the failure in `warnings`.
        """
        stored = self.copy(source_path, placement)

        try:
            self.delete(source_path)
        except StorageIOError as e:
            warning = f"Moved {source_path} to {stored.file_path} but could not remove the source: {e}"
            logger.warning(warning)
            storage_operations_total.labels(operation="move", status="partial").inc()
            return dataclasses.replace(stored, warnings=stored.warnings + (warning,))

        storage_operations_total.labels(operation="move", status="success").inc()
        return stored

    def delete(self, relative_path: str) -> None:
        """
        Delete a file; an already absent path is not an error
        """
        full_path = self.resolve(relative_path)

        try:
            full_path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            storage_operations_total.labels(operation="delete", status="error").inc()
            raise StorageIOError("delete file", e)

        storage_operations_total.labels(operation="delete", status="success").inc()
        logger.debug(f"Deleted: {relative_path}")

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_files(
        self,
        relative_path: str = "",
        recursive: bool = False,
        include_stats: bool = False,
        filter: Optional[NameFilter] = None
    ) -> FileListing:
        """
        List a directory

        Args:
            relative_path: Directory relative to the root ("" for the root)
            recursive: Descend into subdirectories, depth-first
            include_stats: Attach a FileInfo (without checksum) to each entry
            filter: Predicate over entry names; rejected directories are not descended

        Returns:
            FileListing, which walks the directory each time it is iterated
        """
        # Validate eagerly so a traversal attempt fails at the call site
        self.resolve(relative_path)
        return FileListing(self, relative_path, recursive, include_stats, filter)

    def calculate_disk_usage(self, relative_path: str = "") -> DiskUsage:
        """
        Recursive size, file count and directory count

        Cost is linear in the size of the tree; nothing is cached.
        """
        full_path = self.resolve(relative_path)

        if not full_path.exists():
            return DiskUsage(total_size=0, file_count=0, directory_count=0)

        if full_path.is_file():
            return DiskUsage(total_size=full_path.stat().st_size, file_count=1, directory_count=0)

        total_size = 0
        file_count = 0
        directory_count = 0

        pending = [full_path]
        try:
            while pending:
                current = pending.pop()
                with os.scandir(current) as iterator:
                    for item in iterator:
                        if item.is_dir(follow_symlinks=False):
                            directory_count += 1
                            pending.append(Path(item.path))
                        else:
                            file_count += 1
                            total_size += item.stat(follow_symlinks=False).st_size
        except OSError as e:
            raise StorageIOError("calculate disk usage", e)

        return DiskUsage(
            total_size=total_size,
            file_count=file_count,
            directory_count=directory_count,
        )
