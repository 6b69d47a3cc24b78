"""
Metrics module for application monitoring.

This module provides Prometheus metrics collection.
"""
from filevault.metrics.prometheus import (
    # API Metrics
    api_requests_total,
    api_request_duration_seconds,
    api_requests_in_progress,

    # Storage Metrics
    storage_operations_total,
    storage_operation_duration_seconds,
    storage_bytes_written_total,
    storage_used_bytes,

    # Retention Metrics
    cleanup_runs_total,
    cleanup_files_deleted_total,
    cleanup_bytes_reclaimed_total,
    cleanup_errors_total,

    # Download Metrics
    downloads_total,
    download_bytes_total,
    download_tokens_issued_total,
    download_token_redemptions_total,

    # Application Metrics
    app_info,
    app_uptime_seconds,
)

__all__ = [
    "api_requests_total",
    "api_request_duration_seconds",
    "api_requests_in_progress",
    "storage_operations_total",
    "storage_operation_duration_seconds",
    "storage_bytes_written_total",
    "storage_used_bytes",
    "cleanup_runs_total",
    "cleanup_files_deleted_total",
    "cleanup_bytes_reclaimed_total",
    "cleanup_errors_total",
    "downloads_total",
    "download_bytes_total",
    "download_tokens_issued_total",
    "download_token_redemptions_total",
    "app_info",
    "app_uptime_seconds",
]
