"""
Lifecycle Facade

Single entry point over storage, retention and downloads.
Implements:
- Ordered start-up (engine, then retention) with lazy initialization
- Pass-through file operations
- Access-checked downloads and token redemption
- Health checks and graceful shutdown
"""
import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from filevault.core.errors import FileAccessDeniedError
from filevault.metrics import storage_used_bytes
from filevault.storage.access import (
    DEFAULT_TOKEN_TTL_MINUTES,
    AccessBroker,
    DownloadOptions,
    DownloadResult,
    DownloadSink,
    Permission,
    PreparedDownload,
    SecureDownloadLink,
)
from filevault.storage.engine import (
    DiskUsage,
    FileInfo,
    FileListing,
    NameFilter,
    PlacementOptions,
    StorageConfig,
    StorageEngine,
    StoredFile,
)
from filevault.storage.retention import (
    ArchiveMatcher,
    CleanupOptions,
    CleanupRun,
    Clock,
    RetentionConfig,
    RetentionManager,
    default_archive_matcher,
    utc_now,
)
from filevault.storage.tokens import TokenStore

logger = logging.getLogger(__name__)

STATUS_HEALTHY = "healthy"
STATUS_WARNING = "warning"
STATUS_ERROR = "error"

# Disk space check fails at this fraction of the storage ceiling
DISK_SPACE_WARNING_RATIO = 0.8

HEALTH_CHECK_NAME = "health-check.txt"
HEALTH_CHECK_CONTENT = b"health check"


@dataclass
class HealthReport:
    status: str
    checks: Dict[str, bool]
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_healthy(self) -> bool:
        return self.status == STATUS_HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'checks': dict(self.checks),
            'details': self.details,
        }


class LifecycleFacade:
    """
    Coordinates StorageEngine, RetentionManager and AccessBroker

    Every operation initializes the subsystem on first use. Retention and
    downloads never call each other; both go through the engine.
    """

    def __init__(
        self,
        storage_config: Optional[StorageConfig] = None,
        retention_config: Optional[RetentionConfig] = None,
        token_store: Optional[TokenStore] = None,
        default_token_ttl_minutes: int = DEFAULT_TOKEN_TTL_MINUTES,
        clock: Clock = utc_now,
        archive_matcher: ArchiveMatcher = default_archive_matcher,
        start_scheduler: bool = True
    ):
        """
        Initialize lifecycle facade (components are built lazily)

        Args:
            storage_config: Storage policy for the engine
            retention_config: Garbage collection policy
            token_store: Download token backend (in-memory by default)
            default_token_ttl_minutes: TTL for tokens issued without one
            clock: Source of "now" shared by retention and tokens
            archive_matcher: Archived-file heuristic for retention
            start_scheduler: Allow the automatic cleanup schedule to start
        """
        self.storage_config = storage_config or StorageConfig()
        self.retention_config = retention_config or RetentionConfig()
        self.token_store = token_store
        self.default_token_ttl_minutes = default_token_ttl_minutes
        self.clock = clock
        self.archive_matcher = archive_matcher
        self.start_scheduler = start_scheduler

        self._lock = threading.RLock()
        self._engine: Optional[StorageEngine] = None
        self._retention: Optional[RetentionManager] = None
        self._broker: Optional[AccessBroker] = None
        self.is_initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """
        Build the engine (provisioning directories), then retention, then
        the download broker. A second call is a no-op.
        """
        with self._lock:
            if self.is_initialized:
                logger.warning("LifecycleFacade already initialized")
                return

            engine = StorageEngine(self.storage_config)
            engine.ensure_directories()

            retention = RetentionManager(
                engine,
                self.retention_config,
                clock=self.clock,
                archive_matcher=self.archive_matcher,
                start_scheduler=self.start_scheduler,
            )

            broker = AccessBroker(
                engine,
                token_store=self.token_store,
                default_token_ttl_minutes=self.default_token_ttl_minutes,
                clock=self.clock,
            )

            self._engine = engine
            self._retention = retention
            self._broker = broker
            self.is_initialized = True

            logger.info("LifecycleFacade initialized successfully")

    def _ensure_initialized(self) -> None:
        if not self.is_initialized:
            self.initialize()

    @property
    def engine(self) -> StorageEngine:
        self._ensure_initialized()
        return self._engine

    @property
    def retention(self) -> RetentionManager:
        self._ensure_initialized()
        return self._retention

    @property
    def broker(self) -> AccessBroker:
        self._ensure_initialized()
        return self._broker

    def shutdown(self) -> None:
        """Stop the cleanup schedule; calling it again does nothing"""
        with self._lock:
            if not self.is_initialized:
                return

            self._retention.stop_automatic_cleanup()
            self.is_initialized = False
            logger.info("LifecycleFacade shutdown complete")

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def upload_file(
        self,
        data: bytes,
        original_name: str,
        mime_type: str,
        placement: Optional[PlacementOptions] = None
    ) -> StoredFile:
        return self.engine.store(data, original_name, mime_type, placement)

    def store_file_from_path(
        self,
        source_path: Union[str, Path],
        original_name: str,
        mime_type: str,
        placement: Optional[PlacementOptions] = None,
        move_file: bool = False
    ) -> StoredFile:
        return self.engine.store_from_path(source_path, original_name, mime_type, placement, move_file)

    def read_file(self, file_path: str) -> bytes:
        return self.engine.read_file(file_path)

    def get_file_info(self, file_path: str) -> FileInfo:
        return self.engine.get_file_info(file_path)

    def list_files(
        self,
        relative_path: str = "",
        recursive: bool = False,
        include_stats: bool = False,
        filter: Optional[NameFilter] = None
    ) -> FileListing:
        return self.engine.list_files(relative_path, recursive, include_stats, filter)

    def delete_file(self, file_path: str) -> None:
        self.engine.delete(file_path)

    def copy_file(self, source_path: str, placement: Optional[PlacementOptions] = None) -> StoredFile:
        return self.engine.copy(source_path, placement)

    def move_file(self, source_path: str, placement: Optional[PlacementOptions] = None) -> StoredFile:
        return self.engine.move(source_path, placement)

    def get_disk_usage(self, relative_path: str = "") -> DiskUsage:
        usage = self.engine.calculate_disk_usage(relative_path)
        if not relative_path:
            storage_used_bytes.set(usage.total_size)
        return usage

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    def _check_download_access(self, file_path: str, options: DownloadOptions) -> None:
        if not self.broker.check_access(file_path, options.user_id, Permission.DOWNLOAD):
            raise FileAccessDeniedError()

    def download_file(
        self,
        file_path: str,
        sink: DownloadSink,
        options: Optional[DownloadOptions] = None
    ) -> DownloadResult:
        """
        Buffered download behind the access check

        Raises:
            FileAccessDeniedError: if access is denied
        """
        options = options or DownloadOptions()
        self._check_download_access(file_path, options)
        return self.broker.download_direct(file_path, sink, options)

    def stream_file(self, file_path: str, options: Optional[DownloadOptions] = None) -> PreparedDownload:
        """
        Streamed download behind the access check; the caller pulls the chunks

        Raises:
            FileAccessDeniedError: if access is denied
        """
        options = options or DownloadOptions()
        self._check_download_access(file_path, options)
        return self.broker.open_download(file_path, options)

    def download_template(
        self,
        template_name: str,
        sink: DownloadSink,
        options: Optional[DownloadOptions] = None
    ) -> DownloadResult:
        return self.broker.download_template(template_name, sink, options)

    def generate_secure_download_link(
        self,
        file_id: str,
        file_path: str,
        ttl_minutes: Optional[int] = None,
        max_downloads: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> SecureDownloadLink:
        return self.broker.generate_secure_download_link(
            file_id, file_path, ttl_minutes, max_downloads, user_id
        )

    def download_by_token(
        self,
        token: str,
        sink: DownloadSink,
        options: Optional[DownloadOptions] = None
    ) -> DownloadResult:
        return self.broker.redeem_token(token, sink, options)

    def get_token_info(self, token: str) -> Optional[Dict[str, Any]]:
        return self.broker.get_token_info(token)

    def revoke_token(self, token: str) -> bool:
        return self.broker.revoke_token(token)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def cleanup_files(self, options: Optional[CleanupOptions] = None) -> CleanupRun:
        return self.retention.run_cleanup(options)

    def check_storage_and_cleanup(self) -> CleanupRun:
        return self.retention.check_storage_and_cleanup()

    def get_cleanup_stats(self) -> Dict[str, Any]:
        return self.retention.get_cleanup_stats()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_system_status(self) -> Dict[str, Any]:
        """Configuration snapshot; does not initialize the subsystem"""
        if not self.is_initialized:
            return {
                'initialized': False,
                'storage': None,
                'cleanup': None,
                'downloads': {'active_tokens': 0},
            }

        storage = dataclasses.asdict(self._engine.get_config())
        storage['base_dir'] = str(storage['base_dir'])
        storage['allowed_mime_types'] = sorted(storage['allowed_mime_types'])

        return {
            'initialized': True,
            'storage': storage,
            'cleanup': self._retention.get_cleanup_stats(),
            'downloads': {'active_tokens': self._broker.active_token_count()},
        }

    def health_check(self) -> HealthReport:
        """
        Live health check

        - storage: write then delete a small temporary file
        - cleanup: scheduler running state matches enable_automatic_cleanup
        - disk_space: usage below 80% of max_storage_size

        Returns:
            HealthReport; healthy when every check passes, warning when some
            fail, error when all fail or the check itself breaks
        """
        try:
            self._ensure_initialized()

            checks = {
                'storage': self._check_storage(),
                'cleanup': self._check_cleanup(),
                'disk_space': self._check_disk_space(),
            }

            if all(checks.values()):
                status = STATUS_HEALTHY
            elif any(checks.values()):
                status = STATUS_WARNING
            else:
                status = STATUS_ERROR

            return HealthReport(
                status=status,
                checks=checks,
                details={
                    'timestamp': self.clock().isoformat(),
                    'system_status': self.get_system_status(),
                },
            )

        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            return HealthReport(
                status=STATUS_ERROR,
                checks={'storage': False, 'cleanup': False, 'disk_space': False},
                details={'error': str(e) or 'Health check failed'},
            )

    def _check_storage(self) -> bool:
        try:
            check_file = self._engine.store(
                HEALTH_CHECK_CONTENT,
                HEALTH_CHECK_NAME,
                "text/plain",
                PlacementOptions(is_temporary=True),
            )
            self._engine.delete(check_file.file_path)
            return True
        except Exception as e:
            logger.warning(f"Storage health check failed: {e}")
            return False

    def _check_cleanup(self) -> bool:
        try:
            stats = self._retention.get_cleanup_stats()
            return stats['is_running'] == self._retention.config.enable_automatic_cleanup
        except Exception as e:
            logger.warning(f"Cleanup health check failed: {e}")
            return False

    def _check_disk_space(self) -> bool:
        try:
            usage = self._engine.calculate_disk_usage()
            storage_used_bytes.set(usage.total_size)
            threshold = self._retention.config.max_storage_size * DISK_SPACE_WARNING_RATIO
            return usage.total_size < threshold
        except Exception as e:
            logger.warning(f"Disk space health check failed: {e}")
            return False
