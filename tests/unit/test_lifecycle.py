"""
Unit tests for the lifecycle facade.
Tests filevault/storage/lifecycle.py
"""
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import set_file_time
from filevault.core.errors import FileAccessDeniedError, FileValidationError, TokenExhaustedError
from filevault.storage.access import BufferedSink, DownloadOptions
from filevault.storage.engine import PlacementOptions, StorageConfig
from filevault.storage.lifecycle import (
    STATUS_ERROR,
    STATUS_HEALTHY,
    STATUS_WARNING,
    LifecycleFacade,
)
from filevault.storage.retention import CleanupOptions, RetentionConfig


@pytest.mark.unit
class TestInitialization:
    """Test initialize() and shutdown()."""

    def test_initialize_provisions_directories(self, tmp_path):
        facade = LifecycleFacade(
            StorageConfig(base_dir=tmp_path / "root"),
            RetentionConfig(enable_automatic_cleanup=False),
        )

        facade.initialize()

        assert facade.is_initialized
        assert (tmp_path / "root" / "temp").is_dir()

    def test_second_initialize_is_noop(self, facade):
        engine = facade.engine

        facade.initialize()

        assert facade.engine is engine

    def test_operations_initialize_lazily(self, tmp_path, csv_bytes):
        facade = LifecycleFacade(
            StorageConfig(base_dir=tmp_path / "lazy"),
            RetentionConfig(enable_automatic_cleanup=False),
        )

        stored = facade.upload_file(csv_bytes, "a.csv", "text/csv")

        assert facade.is_initialized
        assert facade.read_file(stored.file_path) == csv_bytes

    def test_shutdown_stops_scheduler_and_is_idempotent(self, tmp_path):
        facade = LifecycleFacade(
            StorageConfig(base_dir=tmp_path / "root"),
            RetentionConfig(enable_automatic_cleanup=True),
        )
        facade.initialize()
        retention = facade.retention
        assert retention.is_running

        facade.shutdown()
        facade.shutdown()

        assert retention.is_running is False
        assert facade.is_initialized is False

    def test_system_status_before_initialize(self, tmp_path):
        facade = LifecycleFacade(StorageConfig(base_dir=tmp_path / "root"))

        status = facade.get_system_status()

        assert status["initialized"] is False
        assert status["downloads"]["active_tokens"] == 0
        assert facade.is_initialized is False

    def test_system_status(self, facade):
        facade.generate_secure_download_link("f1", "general/f1.csv")

        status = facade.get_system_status()

        assert status["initialized"] is True
        assert status["storage"]["max_file_size"] == 100 * 1024 * 1024
        assert status["cleanup"]["is_running"] is False
        assert status["downloads"]["active_tokens"] == 1


@pytest.mark.unit
class TestPassThroughs:
    """Test file operations through the facade."""

    def test_file_operations(self, facade, csv_bytes):
        stored = facade.upload_file(csv_bytes, "a.csv", "text/csv", PlacementOptions(user_id="u1"))

        copy = facade.copy_file(stored.file_path, PlacementOptions(campaign_id=1))
        moved = facade.move_file(copy.file_path, PlacementOptions(file_type="leads"))

        assert facade.get_file_info(stored.file_path).checksum == stored.checksum
        assert not facade.get_file_info(copy.file_path).exists
        assert facade.read_file(moved.file_path) == csv_bytes
        assert len(list(facade.list_files("users/u1"))) == 1
        assert facade.get_disk_usage().file_count == 2

        facade.delete_file(stored.file_path)

        assert facade.get_disk_usage().file_count == 1

    def test_store_file_from_path(self, facade, tmp_path, csv_bytes):
        source = tmp_path / "spool.bin"
        source.write_bytes(csv_bytes)

        stored = facade.store_file_from_path(source, "a.csv", "text/csv", move_file=True)

        assert facade.read_file(stored.file_path) == csv_bytes
        assert not source.exists()


@pytest.mark.unit
class TestDownloads:
    """Test downloads through the facade."""

    def test_download_file(self, facade, csv_bytes):
        stored = facade.upload_file(csv_bytes, "a.csv", "text/csv")
        sink = BufferedSink()

        result = facade.download_file(stored.file_path, sink, DownloadOptions(user_id="u1"))

        assert result.success
        assert sink.content == csv_bytes

    def test_download_denied_for_missing_file(self, facade):
        with pytest.raises(FileAccessDeniedError, match="Access denied to file") as exc_info:
            facade.download_file("general/missing.csv", BufferedSink())

        assert exc_info.value.status_code == 403

    def test_download_denied_by_access_policy(self, facade, csv_bytes):
        stored = facade.upload_file(csv_bytes, "a.csv", "text/csv")

        with patch.object(facade.broker, "check_access", return_value=False):
            with pytest.raises(FileAccessDeniedError):
                facade.download_file(stored.file_path, BufferedSink())
            with pytest.raises(FileAccessDeniedError):
                facade.stream_file(stored.file_path)

    def test_stream_file(self, facade, csv_bytes):
        stored = facade.upload_file(csv_bytes, "a.csv", "text/csv")

        prepared = facade.stream_file(stored.file_path)

        assert b"".join(prepared.chunks) == csv_bytes

    def test_download_template(self, facade):
        (facade.engine.root / "templates" / "leads.csv").write_bytes(b"email\n")
        sink = BufferedSink()

        facade.download_template("leads", sink)

        assert sink.content == b"email\n"
        assert sink.headers["Content-Disposition"] == 'attachment; filename="leads-template.csv"'

    def test_secure_link_round_trip(self, facade, csv_bytes):
        stored = facade.upload_file(csv_bytes, "a.csv", "text/csv")
        link = facade.generate_secure_download_link(stored.file_id, stored.file_path, max_downloads=1)

        sink = BufferedSink()
        facade.download_by_token(link.token, sink)

        assert sink.content == csv_bytes
        with pytest.raises(TokenExhaustedError):
            facade.download_by_token(link.token, BufferedSink())


@pytest.mark.unit
class TestCleanup:
    """Test cleanup through the facade."""

    def test_cleanup_files(self, facade, clock, csv_bytes):
        stored = facade.upload_file(csv_bytes, "a.csv", "text/csv", PlacementOptions(is_temporary=True))
        set_file_time(facade.engine, stored.file_path, clock.now - timedelta(hours=2))

        dry = facade.cleanup_files(CleanupOptions(dry_run=True))
        assert dry.files_deleted == 1
        assert facade.get_file_info(stored.file_path).exists

        run = facade.cleanup_files()
        assert run.files_deleted == 1
        assert not facade.get_file_info(stored.file_path).exists

    def test_targeted_cleanup_cannot_leave_its_area(self, facade, csv_bytes):
        stored = facade.upload_file(csv_bytes, "a.csv", "text/csv", PlacementOptions(user_id="alice"))

        with pytest.raises(FileValidationError):
            facade.cleanup_files(CleanupOptions(campaign_id=".."))

        assert facade.get_file_info(stored.file_path).exists

    def test_check_storage_and_cleanup(self, facade):
        run = facade.check_storage_and_cleanup()

        assert run.details[0].action == "skipped"


@pytest.mark.unit
class TestHealthCheck:
    """Test health_check() status aggregation."""

    def test_healthy(self, facade):
        report = facade.health_check()

        assert report.status == STATUS_HEALTHY
        assert report.checks == {"storage": True, "cleanup": True, "disk_space": True}
        assert report.details["system_status"]["initialized"] is True

    def test_health_check_file_is_removed(self, facade):
        facade.health_check()

        assert list(facade.list_files("temp")) == []

    def test_scheduler_mismatch_is_warning(self, tmp_path):
        facade = LifecycleFacade(
            StorageConfig(base_dir=tmp_path / "root"),
            RetentionConfig(enable_automatic_cleanup=True),
            start_scheduler=False,
        )

        report = facade.health_check()

        assert report.status == STATUS_WARNING
        assert report.checks["cleanup"] is False
        assert report.checks["storage"] is True

    def test_disk_space_over_threshold_is_warning(self, tmp_path):
        facade = LifecycleFacade(
            StorageConfig(base_dir=tmp_path / "root"),
            RetentionConfig(enable_automatic_cleanup=False, max_storage_size=10),
        )
        facade.upload_file(b"0123456789", "a.txt", "text/plain")

        report = facade.health_check()

        assert report.status == STATUS_WARNING
        assert report.checks["disk_space"] is False

    def test_all_checks_failing_is_error(self, facade):
        with patch.object(facade.engine, "store", side_effect=OSError("disk gone")), \
                patch.object(facade.engine, "calculate_disk_usage", side_effect=OSError("disk gone")), \
                patch.object(facade.retention, "get_cleanup_stats", side_effect=RuntimeError("broken")):
            report = facade.health_check()

        assert report.status == STATUS_ERROR
        assert report.checks == {"storage": False, "cleanup": False, "disk_space": False}

    def test_unexpected_failure_never_raises(self, tmp_path):
        facade = LifecycleFacade(StorageConfig(base_dir=tmp_path / "root"))

        with patch.object(facade, "initialize", side_effect=RuntimeError("cannot start")):
            report = facade.health_check()

        assert report.status == STATUS_ERROR
        assert report.details["error"] == "cannot start"
