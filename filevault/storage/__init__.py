"""
Storage Lifecycle Module

This module manages stored files from upload to removal:
- Filesystem storage with validated, organised placement
- Retention policies and scheduled cleanup
- Direct, streamed and token-based downloads
- A facade coordinating the three with health checks
"""

from .engine import (
    StorageEngine,
    StorageConfig,
    PlacementOptions,
    StoredFile,
    FileInfo,
    FileEntry,
    FileListing,
    DiskUsage,
    calculate_checksum,
)
from .retention import (
    RetentionManager,
    RetentionConfig,
    CleanupOptions,
    CleanupRun,
    CleanupDetail,
    CleanupScheduler,
    default_archive_matcher,
)
from .tokens import (
    TokenStore,
    InMemoryTokenStore,
    RedisTokenStore,
    DownloadToken,
    RedeemOutcome,
    RedeemResult,
)
from .access import (
    AccessBroker,
    BufferedSink,
    DownloadOptions,
    DownloadResult,
    DownloadSink,
    Permission,
    PreparedDownload,
    SecureDownloadLink,
)
from .lifecycle import LifecycleFacade, HealthReport

__all__ = [
    # Storage engine
    'StorageEngine',
    'StorageConfig',
    'PlacementOptions',
    'StoredFile',
    'FileInfo',
    'FileEntry',
    'FileListing',
    'DiskUsage',
    'calculate_checksum',

    # Retention
    'RetentionManager',
    'RetentionConfig',
    'CleanupOptions',
    'CleanupRun',
    'CleanupDetail',
    'CleanupScheduler',
    'default_archive_matcher',

    # Download tokens
    'TokenStore',
    'InMemoryTokenStore',
    'RedisTokenStore',
    'DownloadToken',
    'RedeemOutcome',
    'RedeemResult',

    # Downloads
    'AccessBroker',
    'BufferedSink',
    'DownloadOptions',
    'DownloadResult',
    'DownloadSink',
    'Permission',
    'PreparedDownload',
    'SecureDownloadLink',

    # Facade
    'LifecycleFacade',
    'HealthReport',
]
