"""
Access Broker

Serves stored files and brokers indirect, token-based downloads.
Implements:
- Direct (buffered) and streamed downloads with a fixed header contract
- Time- and count-limited download tokens
- Secure download links built on tokens
- CSV template downloads from templates/
- An access-check hook for authorization policies
"""
import dataclasses
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, Iterator, Optional, Protocol

from filevault.core.errors import (
    FileNotFoundInStorageError,
    FileValidationError,
    FileVaultError,
    InvalidTokenError,
    TokenExhaustedError,
    TokenExpiredError,
)
from filevault.metrics import (
    download_bytes_total,
    download_token_redemptions_total,
    download_tokens_issued_total,
    downloads_total,
)
from filevault.storage.engine import DEFAULT_CHUNK_SIZE, TEMPLATES_DIR, StorageEngine, path_segment
from filevault.storage.mime import mime_type_for_filename
from filevault.storage.tokens import (
    DownloadToken,
    InMemoryTokenStore,
    RedeemOutcome,
    TokenStore,
    generate_token,
)

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_MINUTES = 60
SECURE_DOWNLOAD_PATH = "/api/v1/files/download/secure"

CACHE_HEADERS = {
    'Cache-Control': 'no-cache, no-store, must-revalidate',
    'Pragma': 'no-cache',
    'Expires': '0',
}


class Permission(str, Enum):
    READ = "read"
    DOWNLOAD = "download"
    ADMIN = "admin"


class DownloadSink(Protocol):
    """Destination of a download: receives headers, then body chunks"""

    def set_header(self, name: str, value: str) -> None:
        ...

    def write(self, chunk: bytes) -> None:
        ...


class BufferedSink:
    """Collects headers and body in memory"""

    def __init__(self):
        self.headers: Dict[str, str] = {}
        self._body = bytearray()

    def set_header(self, name: str, value: str) -> None:
        self.headers[name] = value

    def write(self, chunk: bytes) -> None:
        self._body.extend(chunk)

    @property
    def content(self) -> bytes:
        return bytes(self._body)


@dataclass
class DownloadOptions:
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    force_download: bool = False
    custom_filename: Optional[str] = None


@dataclass
class DownloadResult:
    success: bool
    file_size: int
    download_id: str
    timestamp: datetime
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'file_size': self.file_size,
            'download_id': self.download_id,
            'timestamp': self.timestamp.isoformat(),
            'error': self.error,
        }


@dataclass
class SecureDownloadLink:
    download_url: str
    token: str
    expires_at: datetime
    file_id: str
    max_downloads: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'download_url': self.download_url,
            'token': self.token,
            'expires_at': self.expires_at.isoformat(),
            'file_id': self.file_id,
            'max_downloads': self.max_downloads,
        }


@dataclass
class PreparedDownload:
    """Headers plus a lazy chunk iterator, for transports that pull bytes"""
    file_path: str
    file_name: str
    file_size: int
    headers: Dict[str, str]
    chunks: Iterator[bytes] = field(repr=False)


def generate_download_id() -> str:
    millis = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"dl_{millis}_{secrets.token_hex(5)}"


def build_download_headers(file_name: str, file_size: int, force_download: bool = False) -> Dict[str, str]:
    """
    Response headers for a download

    Args:
        file_name: Name presented to the client
        file_size: Body length in bytes
        force_download: attachment instead of inline disposition
    """
    disposition = 'attachment' if force_download else 'inline'
    quoted_name = file_name.replace('\\', '\\\\').replace('"', '\\"')

    headers = {
        'Content-Disposition': f'{disposition}; filename="{quoted_name}"',
        'Content-Length': str(file_size),
        'Content-Type': mime_type_for_filename(file_name),
    }
    headers.update(CACHE_HEADERS)
    return headers


class AccessBroker:
    """
    Download broker for stored files

    Features:
    - Buffered and streamed downloads
    - Download tokens with expiry and usage caps, redeemed atomically
    - Token info that never reveals the file path
    - Download events recorded to logs and metrics
    """

    def __init__(
        self,
        engine: StorageEngine,
        token_store: Optional[TokenStore] = None,
        default_token_ttl_minutes: int = DEFAULT_TOKEN_TTL_MINUTES,
        secure_download_path: str = SECURE_DOWNLOAD_PATH,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        chunk_size: int = DEFAULT_CHUNK_SIZE
    ):
        """
        Initialize access broker

        Args:
            engine: Storage engine holding the files
            token_store: Token backend (in-memory by default)
            default_token_ttl_minutes: TTL applied when a token request gives none
            secure_download_path: URL path prefix for secure download links
            clock: Source of "now" (UTC) for token expiry
            chunk_size: Read size for streamed downloads
        """
        self.engine = engine
        self.token_store = token_store or InMemoryTokenStore()
        self.default_token_ttl_minutes = default_token_ttl_minutes
        self.secure_download_path = secure_download_path.rstrip('/')
        self.clock = clock
        self.chunk_size = chunk_size

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    def download_direct(
        self,
        file_path: str,
        sink: DownloadSink,
        options: Optional[DownloadOptions] = None
    ) -> DownloadResult:
        """
        Buffer the whole file, then write headers and body to the sink

        Raises:
            FileNotFoundInStorageError: if the file does not exist
        """
        return self._download_direct(file_path, sink, options or DownloadOptions(), mode="direct")

    def _download_direct(
        self,
        file_path: str,
        sink: DownloadSink,
        options: DownloadOptions,
        mode: str
    ) -> DownloadResult:
        info = self.engine.get_file_info(file_path, with_checksum=False)
        if not info.exists or info.is_directory:
            downloads_total.labels(mode=mode, status="not_found").inc()
            raise FileNotFoundInStorageError()

        data = self.engine.read_file(file_path)
        file_name = options.custom_filename or PurePosixPath(file_path).name

        for name, value in build_download_headers(file_name, len(data), options.force_download).items():
            sink.set_header(name, value)
        sink.write(data)

        result = DownloadResult(
            success=True,
            file_size=len(data),
            download_id=generate_download_id(),
            timestamp=self.clock(),
        )
        self._record_download(file_path, result, options, mode)
        return result

    def open_download(self, file_path: str, options: Optional[DownloadOptions] = None) -> PreparedDownload:
        """
        Resolve headers and a chunk iterator without reading the file yet

        The download event is recorded once the iterator is exhausted, or
        fails with a read error.

        Raises:
            FileNotFoundInStorageError: if the file does not exist
        """
        options = options or DownloadOptions()
        prepared = self._prepare(file_path, options, mode="streamed")
        prepared.chunks = self._tracked_chunks(prepared, prepared.chunks, options)
        return prepared

    def _tracked_chunks(
        self,
        prepared: PreparedDownload,
        source: Iterator[bytes],
        options: DownloadOptions
    ) -> Iterator[bytes]:
        sent = 0
        try:
            for chunk in source:
                sent += len(chunk)
                yield chunk
        except OSError as e:
            logger.error(f"Stream error for {prepared.file_path} after {sent} bytes: {e}")
            self._record_download(prepared.file_path, DownloadResult(
                success=False,
                file_size=sent,
                download_id=generate_download_id(),
                timestamp=self.clock(),
                error=f"Stream error: {e}",
            ), options, "streamed")
            raise

        self._record_download(prepared.file_path, DownloadResult(
            success=True,
            file_size=sent,
            download_id=generate_download_id(),
            timestamp=self.clock(),
        ), options, "streamed")

    def _prepare(self, file_path: str, options: DownloadOptions, mode: str) -> PreparedDownload:
        info = self.engine.get_file_info(file_path, with_checksum=False)
        if not info.exists or info.is_directory:
            downloads_total.labels(mode=mode, status="not_found").inc()
            raise FileNotFoundInStorageError()

        file_name = options.custom_filename or PurePosixPath(file_path).name

        return PreparedDownload(
            file_path=file_path,
            file_name=file_name,
            file_size=info.size,
            headers=build_download_headers(file_name, info.size, options.force_download),
            chunks=self.engine.open_stream(file_path, self.chunk_size),
        )

    def download_streamed(
        self,
        file_path: str,
        sink: DownloadSink,
        options: Optional[DownloadOptions] = None
    ) -> DownloadResult:
        """
        Write headers, then pipe the file to the sink chunk by chunk

        A read or write error mid-stream yields a failed result instead of
        raising.

        Raises:
            FileNotFoundInStorageError: if the file does not exist
        """
        options = options or DownloadOptions()

        prepared = self._prepare(file_path, options, mode="streamed")

        for name, value in prepared.headers.items():
            sink.set_header(name, value)

        sent = 0
        try:
            for chunk in prepared.chunks:
                sink.write(chunk)
                sent += len(chunk)
        except OSError as e:
            logger.error(f"Stream error for {file_path} after {sent} bytes: {e}")
            result = DownloadResult(
                success=False,
                file_size=sent,
                download_id=generate_download_id(),
                timestamp=self.clock(),
                error=f"Stream error: {e}",
            )
            self._record_download(file_path, result, options, "streamed")
            return result

        result = DownloadResult(
            success=True,
            file_size=sent,
            download_id=generate_download_id(),
            timestamp=self.clock(),
        )
        self._record_download(file_path, result, options, "streamed")
        return result

    def download_template(
        self,
        template_name: str,
        sink: DownloadSink,
        options: Optional[DownloadOptions] = None
    ) -> DownloadResult:
        """
        Serve templates/<name>.csv as an attachment named <name>-template.csv

        Raises:
            FileValidationError: if the name is not a single path segment
            FileNotFoundInStorageError: if no such template exists
        """
        name = path_segment(template_name, "template name")
        options = dataclasses.replace(
            options or DownloadOptions(),
            custom_filename=f"{name}-template.csv",
            force_download=True,
        )

        try:
            return self._download_direct(f"{TEMPLATES_DIR}/{name}.csv", sink, options, mode="template")
        except FileNotFoundInStorageError:
            raise FileNotFoundInStorageError(f"Template '{name}' not found")

    def _record_download(
        self,
        file_path: str,
        result: DownloadResult,
        options: DownloadOptions,
        mode: str
    ) -> None:
        status = "success" if result.success else "error"
        downloads_total.labels(mode=mode, status=status).inc()
        download_bytes_total.labels(mode=mode).inc(result.file_size)

        logger.info(
            f"Download recorded: {file_path}",
            extra={
                'download_id': result.download_id,
                'file_size': result.file_size,
                'download_mode': mode,
                'success': result.success,
                'user_id': options.user_id,
                'ip_address': options.ip_address,
            },
        )

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def issue_token(
        self,
        file_id: str,
        file_path: str,
        ttl_minutes: Optional[int] = None,
        max_downloads: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> DownloadToken:
        """
        Issue a download token for one stored file

        Args:
            file_id: Logical file id, reported back by token info
            file_path: Relative storage path the token unlocks
            ttl_minutes: Lifetime; None uses the default, 0 issues an expired token
            max_downloads: Optional usage cap (>= 1)
            user_id: Owner recorded on downloads made with the token

        Returns:
            The stored DownloadToken
        """
        if ttl_minutes is None:
            ttl_minutes = self.default_token_ttl_minutes
        if ttl_minutes < 0:
            raise FileValidationError("ttl_minutes must be >= 0")
        if max_downloads is not None and max_downloads < 1:
            raise FileValidationError("max_downloads must be >= 1")

        now = self.clock()
        record = DownloadToken(
            token=generate_token(),
            file_id=file_id,
            file_path=file_path,
            expires_at=now + timedelta(minutes=ttl_minutes),
            max_downloads=max_downloads,
            user_id=user_id,
            created_at=now,
        )
        self.token_store.set(record)
        download_tokens_issued_total.inc()

        logger.info(
            f"Issued download token for file {file_id} "
            f"(ttl={ttl_minutes}m, max_downloads={max_downloads})"
        )

        return record

    def generate_secure_download_link(
        self,
        file_id: str,
        file_path: str,
        ttl_minutes: Optional[int] = None,
        max_downloads: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> SecureDownloadLink:
        record = self.issue_token(file_id, file_path, ttl_minutes, max_downloads, user_id)

        return SecureDownloadLink(
            download_url=f"{self.secure_download_path}/{record.token}",
            token=record.token,
            expires_at=record.expires_at,
            file_id=file_id,
            max_downloads=max_downloads,
        )

    def redeem_token(
        self,
        token: str,
        sink: DownloadSink,
        options: Optional[DownloadOptions] = None
    ) -> DownloadResult:
        """
        Consume one use of a token and download its file

        Raises:
            InvalidTokenError: unknown token
            TokenExpiredError: token past its expiry (evicted)
            TokenExhaustedError: usage cap already reached
            FileNotFoundInStorageError: the file behind the token is gone
        """
        result = self.token_store.try_redeem(token, self.clock())
        download_token_redemptions_total.labels(outcome=result.outcome.value).inc()

        if result.outcome is RedeemOutcome.INVALID:
            raise InvalidTokenError()
        if result.outcome is RedeemOutcome.EXPIRED:
            raise TokenExpiredError()
        if result.outcome is RedeemOutcome.EXHAUSTED:
            raise TokenExhaustedError()

        record = result.token
        options = dataclasses.replace(options or DownloadOptions(), user_id=record.user_id)

        return self._download_direct(record.file_path, sink, options, mode="token")

    def revoke_token(self, token: str) -> bool:
        return self.token_store.delete(token)

    def get_token_info(self, token: str) -> Optional[Dict[str, Any]]:
        record = self.token_store.get(token)
        return record.public_info() if record else None

    def sweep_expired(self) -> int:
        """Drop expired tokens; safe to call opportunistically"""
        removed = self.token_store.sweep_expired(self.clock())
        if removed:
            logger.debug(f"Swept {removed} expired download tokens")
        return removed

    def active_token_count(self) -> int:
        self.sweep_expired()
        return self.token_store.count()

    # ------------------------------------------------------------------
    # Access control
    # ------------------------------------------------------------------

    def check_access(
        self,
        file_path: str,
        user_id: Optional[str] = None,
        required_permission: Permission = Permission.READ
    ) -> bool:
        """
        Existence-based gate; an authorization policy plugs in here

        No per-user policy is enforced: any existing file is accessible.
        """
        try:
            info = self.engine.get_file_info(file_path, with_checksum=False)
        except FileVaultError:
            return False

        return info.exists and not info.is_directory
