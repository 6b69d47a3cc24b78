"""
Retention Manager

Policy-driven garbage collection over stored files.
Implements:
- Temporary file expiry (minutes-based TTL under temp/)
- Archived file expiry (days-based TTL, pluggable archive detection)
- Permanent purge of soft-deleted files under deleted/
- Age-threshold sweeps and campaign/user targeted sweeps
- Dry-run simulation and per-pass file caps
- Scheduled cleanup and ceiling-triggered cleanup
"""
import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from filevault.core.errors import FileValidationError, StorageIOError
from filevault.metrics import (
    cleanup_bytes_reclaimed_total,
    cleanup_errors_total,
    cleanup_files_deleted_total,
    cleanup_runs_total,
    storage_used_bytes,
)
from filevault.storage.engine import (
    CAMPAIGNS_DIR,
    DELETED_DIR,
    TEMP_DIR,
    USERS_DIR,
    FileEntry,
    StorageEngine,
    path_segment,
)

logger = logging.getLogger(__name__)

ACTION_DELETED = "deleted"
ACTION_ERROR = "error"
ACTION_SKIPPED = "skipped"

# Ceiling-triggered sweep bounds
CEILING_SWEEP_MIN_AGE_DAYS = 7
CEILING_SWEEP_MAX_FILES = 1000

# Scheduled sweep bound
AUTOMATIC_SWEEP_MAX_FILES = 500

Clock = Callable[[], datetime]
ArchiveMatcher = Callable[[str, str], bool]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def default_archive_matcher(name: str, path: str) -> bool:
    """Naming-convention heuristic: 'archive' in the file name or its path"""
    return "archive" in name or "archive" in path


@dataclass
class RetentionConfig:
    """
    Garbage collection policy
    """
    temp_file_retention_minutes: int = 60  # 1 hour
    archived_file_retention_days: int = 90  # 3 months
    deleted_file_retention_days: int = 30  # 1 month
    max_storage_size: int = 10 * 1024 * 1024 * 1024  # 10GB
    enable_automatic_cleanup: bool = True
    cleanup_interval_minutes: int = 60

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class CleanupOptions:
    """
    Selection of strategies for one cleanup invocation
    """
    dry_run: bool = False
    max_files_to_process: Optional[int] = None
    include_temporary: bool = True
    include_archived: bool = False
    include_deleted: bool = False
    older_than_days: Optional[int] = None
    campaign_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class CleanupDetail:
    file_path: str
    action: str
    reason: str
    size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class CleanupRun:
    """
    Outcome of one garbage collection pass (or several merged passes)
    """
    files_deleted: int = 0
    space_cleaned: int = 0
    errors: List[str] = field(default_factory=list)
    details: List[CleanupDetail] = field(default_factory=list)
    dry_run: bool = False

    @property
    def space_cleaned_mb(self) -> float:
        """Get reclaimed space in MB"""
        return self.space_cleaned / (1024 ** 2)

    def record_deletion(self, file_path: str, reason: str, size: int) -> None:
        self.files_deleted += 1
        self.space_cleaned += size
        self.details.append(CleanupDetail(file_path, ACTION_DELETED, reason, size))

    def record_error(self, file_path: str, message: str) -> None:
        self.errors.append(message)
        self.details.append(CleanupDetail(file_path, ACTION_ERROR, message))

    def merge(self, other: "CleanupRun") -> "CleanupRun":
        """Fold another run into this one"""
        self.files_deleted += other.files_deleted
        self.space_cleaned += other.space_cleaned
        self.errors.extend(other.errors)
        self.details.extend(other.details)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            'files_deleted': self.files_deleted,
            'space_cleaned': self.space_cleaned,
            'space_cleaned_mb': round(self.space_cleaned_mb, 2),
            'errors': list(self.errors),
            'details': [detail.to_dict() for detail in self.details],
            'dry_run': self.dry_run,
        }


class CleanupScheduler:
    """
    Runs a task on a fixed interval from a single daemon thread.

    At most one schedule is active: start() stops the previous thread
    before launching a new one.
    """

    def __init__(
        self,
        task: Callable[[], Any],
        interval_seconds: float,
        name: str = "filevault-cleanup"
    ):
        self.task = task
        self.interval_seconds = interval_seconds
        self.name = name
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None
        self.next_run_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, interval_seconds: Optional[float] = None) -> None:
        with self._lock:
            self._stop_locked()

            if interval_seconds is not None:
                self.interval_seconds = interval_seconds

            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(stop_event, self.interval_seconds),
                name=self.name,
                daemon=True,
            )
            self._stop_event = stop_event
            self._thread = thread
            self.next_run_at = utc_now() + timedelta(seconds=self.interval_seconds)
            thread.start()

    def stop(self) -> None:
        with self._lock:
            self._stop_locked()

    def _stop_locked(self) -> None:
        if self._thread is None:
            return

        self._stop_event.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=5)

        self._thread = None
        self._stop_event = None
        self.next_run_at = None

    def _run(self, stop_event: threading.Event, interval_seconds: float) -> None:
        while not stop_event.wait(interval_seconds):
            try:
                self.task()
            except Exception:
                logger.exception("Automatic cleanup failed")
            self.next_run_at = utc_now() + timedelta(seconds=interval_seconds)


class RetentionManager:
    """
    Garbage collection over the storage engine

    Features:
    - Five independent strategies, composable through run_cleanup()
    - Dry-run mode producing the same report without deleting
    - Continue-on-error per file
    - Fixed-interval automatic cleanup of temporary files
    - Cleanup triggered when usage exceeds the storage ceiling
    """

    def __init__(
        self,
        engine: StorageEngine,
        config: Optional[RetentionConfig] = None,
        clock: Clock = utc_now,
        archive_matcher: ArchiveMatcher = default_archive_matcher,
        start_scheduler: bool = True
    ):
        """
        Initialize retention manager

        Args:
            engine: Storage engine owning the files
            config: Retention policy
            clock: Source of "now" (UTC) for every age check
            archive_matcher: Decides whether a (name, path) is an archived file
            start_scheduler: Start automatic cleanup when the config enables it
        """
        self.engine = engine
        self.config = config or RetentionConfig()
        self.clock = clock
        self.archive_matcher = archive_matcher
        self.scheduler = CleanupScheduler(
            self.perform_automatic_cleanup,
            self.config.cleanup_interval_minutes * 60,
        )

        if start_scheduler and self.config.enable_automatic_cleanup:
            self.start_automatic_cleanup()

        logger.info(
            f"RetentionManager initialized (temp_ttl={self.config.temp_file_retention_minutes}m, "
            f"archived_ttl={self.config.archived_file_retention_days}d, "
            f"deleted_ttl={self.config.deleted_file_retention_days}d, "
            f"auto_cleanup={self.config.enable_automatic_cleanup})"
        )

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def cleanup_temporary_files(self, options: Optional[CleanupOptions] = None) -> CleanupRun:
        """
        Remove files under temp/ created at or before now - temp TTL
        """
        options = options or CleanupOptions()
        cutoff = self.clock() - timedelta(minutes=self.config.temp_file_retention_minutes)

        files = self.engine.list_files(TEMP_DIR, recursive=True, include_stats=True)

        return self._sweep(
            "temporary",
            files,
            lambda entry: entry.stats.created_at <= cutoff,
            lambda entry: "Temporary file cleanup",
            options,
        )

    def cleanup_archived_files(self, options: Optional[CleanupOptions] = None) -> CleanupRun:
        """
        Remove archived files created at or before now - archived TTL

        Whether a file is archived is decided by the archive matcher.
        """
        options = options or CleanupOptions()
        days = self.config.archived_file_retention_days
        cutoff = self.clock() - timedelta(days=days)

        files = self.engine.list_files(
            "",
            recursive=True,
            include_stats=True,
            filter=lambda name: not name.startswith('.'),
        )

        def is_candidate(entry: FileEntry) -> bool:
            if entry.path.startswith(f"{TEMP_DIR}/"):
                return False
            if entry.stats.created_at > cutoff:
                return False
            return self.archive_matcher(entry.name, entry.path)

        return self._sweep(
            "archived",
            files,
            is_candidate,
            lambda entry: f"Archived file older than {days} days",
            options,
        )

    def cleanup_deleted_files(self, options: Optional[CleanupOptions] = None) -> CleanupRun:
        """
        Permanently remove soft-deleted files whose grace period has passed
        """
        options = options or CleanupOptions()
        days = self.config.deleted_file_retention_days
        cutoff = self.clock() - timedelta(days=days)

        files = self.engine.list_files(DELETED_DIR, recursive=True, include_stats=True)

        return self._sweep(
            "deleted",
            files,
            lambda entry: entry.stats.modified_at <= cutoff,
            lambda entry: f"Deleted file older than {days} days (permanent removal)",
            options,
        )

    def cleanup_old_files(
        self,
        older_than_days: int,
        options: Optional[CleanupOptions] = None
    ) -> CleanupRun:
        """
        Remove any file created at or before now - N days

        Hidden entries and anything named like a template are skipped.
        """
        options = options or CleanupOptions()
        cutoff = self.clock() - timedelta(days=older_than_days)

        files = self.engine.list_files(
            "",
            recursive=True,
            include_stats=True,
            filter=lambda name: not name.startswith('.') and 'template' not in name,
        )

        return self._sweep(
            "age",
            files,
            lambda entry: entry.stats.created_at <= cutoff,
            lambda entry: f"File older than {older_than_days} days",
            options,
        )

    def cleanup_targeted_files(self, options: CleanupOptions) -> CleanupRun:
        """
        Remove every file owned by a campaign (preferred) or a user

        Raises:
            FileValidationError: if neither campaign_id nor user_id is given,
                or the id is not a single path segment
        """
        if options.campaign_id is not None and str(options.campaign_id) != "":
            campaign = path_segment(options.campaign_id, "campaign id")
            target_path = f"{CAMPAIGNS_DIR}/{campaign}"
            label = f"campaign {options.campaign_id}"
        elif options.user_id:
            user = path_segment(options.user_id, "user id")
            target_path = f"{USERS_DIR}/{user}"
            label = f"user {options.user_id}"
        else:
            raise FileValidationError("No campaign ID or user ID provided for targeted cleanup")

        files = self.engine.list_files(target_path, recursive=True, include_stats=True)

        return self._sweep(
            "targeted",
            files,
            lambda entry: True,
            lambda entry: f"Targeted cleanup for {label}",
            options,
        )

    def _sweep(
        self,
        strategy: str,
        files: Iterable[FileEntry],
        is_candidate: Callable[[FileEntry], bool],
        reason: Callable[[FileEntry], str],
        options: CleanupOptions
    ) -> CleanupRun:
        """
        Delete (or simulate deleting) every candidate, continuing past failures

        Enumeration failures propagate; per-file failures are recorded.
        """
        limit = options.max_files_to_process
        if limit is not None and limit < 0:
            raise FileValidationError("max_files_to_process must be >= 0")

        logger.info(f"Starting cleanup: {strategy} (dry_run={options.dry_run}, limit={limit})")

        run = CleanupRun(dry_run=options.dry_run)
        processed = 0

        for entry in files:
            if limit is not None and processed >= limit:
                break

            stats = entry.stats
            if stats is None or not stats.exists or stats.is_directory:
                continue
            if not is_candidate(entry):
                continue

            processed += 1

            if not options.dry_run:
                try:
                    self.engine.delete(entry.path)
                except StorageIOError as e:
                    error_msg = f"Failed to delete {entry.path}: {e}"
                    logger.error(error_msg)
                    run.record_error(entry.path, error_msg)
                    continue

            run.record_deletion(entry.path, reason(entry), stats.size)

        cleanup_runs_total.labels(strategy=strategy, dry_run=str(options.dry_run).lower()).inc()
        if not options.dry_run:
            cleanup_files_deleted_total.labels(strategy=strategy).inc(run.files_deleted)
            cleanup_bytes_reclaimed_total.labels(strategy=strategy).inc(run.space_cleaned)
        if run.errors:
            cleanup_errors_total.labels(strategy=strategy).inc(len(run.errors))

        logger.info(
            f"Cleanup completed: {strategy} - {run.files_deleted} files, "
            f"{run.space_cleaned} bytes, {len(run.errors)} errors",
            extra={'strategy': strategy, 'dry_run': options.dry_run},
        )

        return run

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def run_cleanup(self, options: Optional[CleanupOptions] = None) -> CleanupRun:
        """
        Run every requested strategy and merge the results

        Args:
            options: Strategy selection plus shared dry_run / cap settings

        Returns:
            Merged CleanupRun
        """
        options = options or CleanupOptions()

        # Reject bad targets before any strategy deletes anything
        if options.campaign_id is not None and str(options.campaign_id) != "":
            path_segment(options.campaign_id, "campaign id")
        if options.user_id:
            path_segment(options.user_id, "user id")

        result = CleanupRun(dry_run=options.dry_run)

        if options.include_temporary:
            result.merge(self.cleanup_temporary_files(options))

        if options.include_archived:
            result.merge(self.cleanup_archived_files(options))

        if options.include_deleted:
            result.merge(self.cleanup_deleted_files(options))

        if options.older_than_days is not None:
            result.merge(self.cleanup_old_files(options.older_than_days, options))

        if (options.campaign_id is not None and str(options.campaign_id) != "") or options.user_id:
            result.merge(self.cleanup_targeted_files(options))

        return result

    def check_storage_and_cleanup(self) -> CleanupRun:
        """
        Sweep only when total usage exceeds the configured ceiling

        Returns:
            An empty run with a 'skipped' detail when under the ceiling,
            otherwise the merged result of the bounded sweep
        """
        usage = self.engine.calculate_disk_usage()
        storage_used_bytes.set(usage.total_size)
        limit = self.config.max_storage_size

        if usage.total_size <= limit:
            run = CleanupRun()
            run.details.append(CleanupDetail(
                file_path="storage-check",
                action=ACTION_SKIPPED,
                reason=f"Storage usage {usage.total_size} bytes is within limit of {limit} bytes",
            ))
            return run

        logger.warning(
            f"Storage usage {usage.total_size} bytes exceeds limit of {limit} bytes, starting cleanup"
        )

        return self.run_cleanup(CleanupOptions(
            include_temporary=True,
            include_archived=True,
            older_than_days=CEILING_SWEEP_MIN_AGE_DAYS,
            max_files_to_process=CEILING_SWEEP_MAX_FILES,
        ))

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def perform_automatic_cleanup(self) -> CleanupRun:
        """Scheduled pass: temporary files only"""
        logger.info("Starting automatic file cleanup...")

        result = self.run_cleanup(CleanupOptions(
            include_temporary=True,
            dry_run=False,
            max_files_to_process=AUTOMATIC_SWEEP_MAX_FILES,
        ))

        logger.info(
            f"Automatic cleanup completed: {result.files_deleted} files deleted, "
            f"{result.space_cleaned} bytes cleaned"
        )

        if result.errors:
            logger.warning(f"Cleanup errors: {result.errors}")

        return result

    @property
    def is_running(self) -> bool:
        return self.scheduler.is_running

    def start_automatic_cleanup(self) -> None:
        """Start (or restart) the fixed-interval schedule"""
        self.scheduler.start(self.config.cleanup_interval_minutes * 60)
        logger.info(
            f"Automatic file cleanup started. Interval: {self.config.cleanup_interval_minutes} minutes"
        )

    def stop_automatic_cleanup(self) -> None:
        if self.scheduler.is_running:
            self.scheduler.stop()
            logger.info("Automatic file cleanup stopped")

    def get_config(self) -> RetentionConfig:
        return dataclasses.replace(self.config)

    def update_config(self, **changes: Any) -> RetentionConfig:
        """
        Replace configuration fields and reconcile the scheduler

        Enabling starts the schedule, disabling stops it, and an interval
        change while running restarts it. Anything else leaves it alone.
        """
        previous_interval = self.config.cleanup_interval_minutes
        self.config = dataclasses.replace(self.config, **changes)

        if self.config.enable_automatic_cleanup:
            if not self.is_running:
                self.start_automatic_cleanup()
            elif self.config.cleanup_interval_minutes != previous_interval:
                self.start_automatic_cleanup()
        elif self.is_running:
            self.stop_automatic_cleanup()

        return self.get_config()

    def get_cleanup_stats(self) -> Dict[str, Any]:
        next_run = self.scheduler.next_run_at if self.is_running else None

        return {
            'is_running': self.is_running,
            'interval_minutes': self.config.cleanup_interval_minutes,
            'next_cleanup_estimate': next_run.isoformat() if next_run else None,
            'config': self.config.to_dict(),
        }
