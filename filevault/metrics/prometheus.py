"""
Prometheus metrics for application monitoring.

This module defines all Prometheus metrics used throughout the application:
- API request metrics (requests, duration, in-progress)
- Storage metrics (operations, bytes written, usage)
- Retention metrics (cleanup runs, files deleted, bytes reclaimed)
- Download metrics (downloads, bytes served, token redemptions)
"""
from prometheus_client import Counter, Gauge, Histogram


# ============================================================================
# API Metrics
# ============================================================================

api_requests_total = Counter(
    "filevault_api_requests_total",
    "Total number of API requests",
    ["method", "endpoint", "status"],
)

api_request_duration_seconds = Histogram(
    "filevault_api_request_duration_seconds",
    "API request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

api_requests_in_progress = Gauge(
    "filevault_api_requests_in_progress",
    "Number of API requests currently being processed",
    ["method", "endpoint"],
)


# ============================================================================
# Storage Metrics
# ============================================================================

storage_operations_total = Counter(
    "filevault_storage_operations_total",
    "Total number of storage operations",
    ["operation", "status"],  # operation: store, read, copy, move, delete
)

storage_operation_duration_seconds = Histogram(
    "filevault_storage_operation_duration_seconds",
    "Duration of storage operations",
    ["operation"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10],
)

storage_bytes_written_total = Counter(
    "filevault_storage_bytes_written_total",
    "Total bytes written by store operations",
)

storage_used_bytes = Gauge(
    "filevault_storage_used_bytes",
    "Bytes used under the storage root at the last usage check",
)


# ============================================================================
# Retention Metrics
# ============================================================================

cleanup_runs_total = Counter(
    "filevault_cleanup_runs_total",
    "Total number of cleanup strategy runs",
    ["strategy", "dry_run"],
)

cleanup_files_deleted_total = Counter(
    "filevault_cleanup_files_deleted_total",
    "Files removed by cleanup strategies",
    ["strategy"],
)

cleanup_bytes_reclaimed_total = Counter(
    "filevault_cleanup_bytes_reclaimed_total",
    "Bytes reclaimed by cleanup strategies",
    ["strategy"],
)

cleanup_errors_total = Counter(
    "filevault_cleanup_errors_total",
    "Per-file failures recorded during cleanup",
    ["strategy"],
)


# ============================================================================
# Download Metrics
# ============================================================================

downloads_total = Counter(
    "filevault_downloads_total",
    "Total number of file downloads",
    ["mode", "status"],  # mode: direct, streamed, token, template
)

download_bytes_total = Counter(
    "filevault_download_bytes_total",
    "Total bytes served by downloads",
    ["mode"],
)

download_tokens_issued_total = Counter(
    "filevault_download_tokens_issued_total",
    "Total number of download tokens issued",
)

download_token_redemptions_total = Counter(
    "filevault_download_token_redemptions_total",
    "Token redemption attempts by outcome",
    ["outcome"],  # ok, invalid, expired, exhausted
)


# ============================================================================
# Application Metrics
# ============================================================================

app_info = Gauge(
    "filevault_app_info",
    "Application information",
    ["version"],
)

app_uptime_seconds = Gauge(
    "filevault_app_uptime_seconds",
    "Application uptime in seconds",
)
