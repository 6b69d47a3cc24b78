"""
Unit tests for retention policies and cleanup scheduling.
Tests filevault/storage/retention.py
"""
import hashlib
import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import set_file_time
from filevault.core.errors import FileValidationError, StorageIOError
from filevault.storage.engine import PlacementOptions
from filevault.storage.retention import (
    ACTION_DELETED,
    ACTION_ERROR,
    ACTION_SKIPPED,
    CleanupOptions,
    CleanupRun,
    CleanupScheduler,
    RetentionConfig,
    RetentionManager,
    default_archive_matcher,
    utc_now,
)


def store_temp(engine, data=b"temporary", name="t.csv"):
    return engine.store(data, name, "text/csv", PlacementOptions(is_temporary=True))


def snapshot(engine):
    return sorted(entry.path for entry in engine.list_files("", recursive=True))


@pytest.mark.unit
class TestTemporaryCleanup:
    """Test cleanup_temporary_files()."""

    def test_prospects_scenario(self, engine):
        """A 10-byte temp CSV is removed by a zero-minute TTL sweep."""
        data = b"a,b\n1,2\n3,"
        assert len(data) == 10

        stored = engine.store(data, "prospects.csv", "text/csv", PlacementOptions(is_temporary=True))
        assert stored.file_path.startswith("temp/")
        assert stored.checksum == hashlib.sha256(data).hexdigest()

        manager = RetentionManager(
            engine,
            RetentionConfig(temp_file_retention_minutes=0, enable_automatic_cleanup=False),
            clock=utc_now,
            start_scheduler=False,
        )
        run = manager.cleanup_temporary_files()

        assert run.files_deleted == 1
        assert run.space_cleaned == 10
        assert not engine.get_file_info(stored.file_path).exists

    def test_boundary_is_inclusive(self, engine, retention, clock):
        """Exactly TTL old is selected; one second younger is not."""
        at_boundary = store_temp(engine, name="old.csv")
        just_inside = store_temp(engine, name="young.csv")

        ttl = timedelta(minutes=retention.config.temp_file_retention_minutes)
        set_file_time(engine, at_boundary.file_path, clock.now - ttl)
        set_file_time(engine, just_inside.file_path, clock.now - ttl + timedelta(seconds=1))

        run = retention.cleanup_temporary_files()

        assert [d.file_path for d in run.details] == [at_boundary.file_path]
        assert not engine.get_file_info(at_boundary.file_path).exists
        assert engine.get_file_info(just_inside.file_path).exists

    def test_only_temp_directory_is_swept(self, engine, retention, clock):
        old = engine.store(b"general", "g.csv", "text/csv")
        set_file_time(engine, old.file_path, clock.now - timedelta(days=365))

        run = retention.cleanup_temporary_files()

        assert run.files_deleted == 0
        assert engine.get_file_info(old.file_path).exists

    def test_dry_run_does_not_mutate(self, engine, retention, clock):
        stale = [store_temp(engine, name=f"{i}.csv") for i in range(3)]
        for stored in stale:
            set_file_time(engine, stored.file_path, clock.now - timedelta(hours=2))
        before = snapshot(engine)

        dry = retention.cleanup_temporary_files(CleanupOptions(dry_run=True))

        assert snapshot(engine) == before
        assert dry.dry_run is True

        real = retention.cleanup_temporary_files(CleanupOptions(dry_run=False))

        assert [d.file_path for d in dry.details] == [d.file_path for d in real.details]
        assert dry.files_deleted == real.files_deleted == 3
        assert dry.space_cleaned == real.space_cleaned

    def test_max_files_to_process(self, engine, retention, clock):
        for i in range(5):
            stored = store_temp(engine, name=f"{i}.csv")
            set_file_time(engine, stored.file_path, clock.now - timedelta(hours=2))

        run = retention.cleanup_temporary_files(CleanupOptions(max_files_to_process=2))

        assert run.files_deleted == 2
        assert engine.calculate_disk_usage("temp").file_count == 3

    def test_max_files_zero_processes_nothing(self, engine, retention, clock):
        stored = store_temp(engine)
        set_file_time(engine, stored.file_path, clock.now - timedelta(hours=2))

        run = retention.cleanup_temporary_files(CleanupOptions(max_files_to_process=0))

        assert run.files_deleted == 0

    def test_negative_max_files_rejected(self, retention):
        with pytest.raises(FileValidationError):
            retention.cleanup_temporary_files(CleanupOptions(max_files_to_process=-1))

    def test_continues_after_delete_failure(self, engine, retention, clock):
        first = store_temp(engine, data=b"11", name="1.csv")
        second = store_temp(engine, data=b"222", name="2.csv")
        for stored in (first, second):
            set_file_time(engine, stored.file_path, clock.now - timedelta(hours=2))

        real_delete = engine.delete
        failing = sorted([first.file_path, second.file_path])[0]

        def flaky_delete(path):
            if path == failing:
                raise StorageIOError("delete file", PermissionError("denied"))
            real_delete(path)

        with patch.object(engine, "delete", side_effect=flaky_delete):
            run = retention.cleanup_temporary_files()

        assert run.files_deleted == 1
        assert len(run.errors) == 1
        assert failing in run.errors[0]
        actions = {d.file_path: d.action for d in run.details}
        assert actions[failing] == ACTION_ERROR
        assert list(actions.values()).count(ACTION_DELETED) == 1

    def test_enumeration_failure_propagates(self, engine, retention):
        with patch("os.scandir", side_effect=PermissionError("denied")):
            with pytest.raises(StorageIOError):
                retention.cleanup_temporary_files()

    def test_counts_match_details(self, engine, retention, clock):
        for i in range(4):
            stored = store_temp(engine, data=b"x" * (i + 1), name=f"{i}.csv")
            set_file_time(engine, stored.file_path, clock.now - timedelta(hours=2))

        run = retention.cleanup_temporary_files()
        deleted = [d for d in run.details if d.action == ACTION_DELETED]

        assert run.files_deleted == len(deleted)
        assert run.space_cleaned == sum(d.size for d in deleted) == 10


@pytest.mark.unit
class TestArchivedCleanup:
    """Test cleanup_archived_files()."""

    def test_removes_old_archived_files(self, engine, retention, clock):
        archived = engine.store(b"old", "x.csv", "text/csv", PlacementOptions(file_type="archive"))
        plain = engine.store(b"old", "y.csv", "text/csv", PlacementOptions(file_type="leads"))
        for stored in (archived, plain):
            set_file_time(engine, stored.file_path, clock.now - timedelta(days=91))

        run = retention.cleanup_archived_files()

        assert [d.file_path for d in run.details] == [archived.file_path]
        assert engine.get_file_info(plain.file_path).exists

    def test_recent_archives_survive(self, engine, retention, clock):
        archived = engine.store(b"new", "x.csv", "text/csv", PlacementOptions(file_type="archive"))
        set_file_time(engine, archived.file_path, clock.now - timedelta(days=89))

        assert retention.cleanup_archived_files().files_deleted == 0

    def test_temp_files_are_not_archives(self, engine, clock):
        manager = RetentionManager(
            engine,
            RetentionConfig(enable_automatic_cleanup=False),
            clock=clock,
            archive_matcher=lambda name, path: True,
            start_scheduler=False,
        )
        temp = store_temp(engine)
        set_file_time(engine, temp.file_path, clock.now - timedelta(days=365))

        assert manager.cleanup_archived_files().files_deleted == 0

    def test_custom_archive_matcher(self, engine, clock):
        seen = []

        def matcher(name, path):
            seen.append(path)
            return path.startswith("exports/")

        manager = RetentionManager(
            engine,
            RetentionConfig(enable_automatic_cleanup=False),
            clock=clock,
            archive_matcher=matcher,
            start_scheduler=False,
        )
        stored = engine.store(b"e", "e.csv", "text/csv", PlacementOptions(file_type="x"))
        export = engine.root / "exports" / "report.csv"
        export.write_bytes(b"export")
        set_file_time(engine, stored.file_path, clock.now - timedelta(days=100))
        set_file_time(engine, "exports/report.csv", clock.now - timedelta(days=100))

        run = manager.cleanup_archived_files()

        assert [d.file_path for d in run.details] == ["exports/report.csv"]
        assert stored.file_path in seen

    def test_default_matcher(self):
        assert default_archive_matcher("archive-2024.csv", "general/archive-2024.csv")
        assert default_archive_matcher("a.csv", "types/archive/a.csv")
        assert not default_archive_matcher("a.csv", "general/a.csv")


@pytest.mark.unit
class TestDeletedCleanup:
    """Test cleanup_deleted_files()."""

    def test_purges_after_grace_period(self, engine, retention, clock):
        deleted_dir = engine.root / "deleted"
        (deleted_dir / "gone.csv").write_bytes(b"gone")
        (deleted_dir / "recent.csv").write_bytes(b"recent")
        set_file_time(engine, "deleted/gone.csv", clock.now - timedelta(days=30))
        set_file_time(engine, "deleted/recent.csv", clock.now - timedelta(days=29))

        run = retention.cleanup_deleted_files()

        assert [d.file_path for d in run.details] == ["deleted/gone.csv"]
        assert "permanent removal" in run.details[0].reason
        assert (deleted_dir / "recent.csv").exists()


@pytest.mark.unit
class TestAgeCleanup:
    """Test cleanup_old_files()."""

    def test_removes_files_older_than_threshold(self, engine, retention, clock):
        old = engine.store(b"old", "old.csv", "text/csv", PlacementOptions(user_id="u1"))
        new = engine.store(b"new", "new.csv", "text/csv", PlacementOptions(user_id="u1"))
        set_file_time(engine, old.file_path, clock.now - timedelta(days=10))
        set_file_time(engine, new.file_path, clock.now - timedelta(days=3))

        run = retention.cleanup_old_files(7)

        assert [d.file_path for d in run.details] == [old.file_path]

    def test_skips_templates_and_hidden_files(self, engine, retention, clock):
        (engine.root / "general" / ".keep").write_bytes(b"k")
        (engine.root / "general" / "email-template.txt").write_bytes(b"t")
        for path in ("general/.keep", "general/email-template.txt"):
            set_file_time(engine, path, clock.now - timedelta(days=100))

        assert retention.cleanup_old_files(7).files_deleted == 0

    def test_templates_directory_is_not_descended(self, engine, retention, clock):
        (engine.root / "templates" / "welcome.txt").write_bytes(b"hello")
        set_file_time(engine, "templates/welcome.txt", clock.now - timedelta(days=100))

        assert retention.cleanup_old_files(7).files_deleted == 0


@pytest.mark.unit
class TestTargetedCleanup:
    """Test cleanup_targeted_files()."""

    def test_campaign_is_preferred_over_user(self, engine, retention):
        campaign_file = engine.store(b"c", "c.csv", "text/csv", PlacementOptions(campaign_id=5, batch_id=1))
        user_file = engine.store(b"u", "u.csv", "text/csv", PlacementOptions(user_id="u1"))

        run = retention.cleanup_targeted_files(CleanupOptions(campaign_id="5", user_id="u1"))

        assert [d.file_path for d in run.details] == [campaign_file.file_path]
        assert engine.get_file_info(user_file.file_path).exists

    def test_user_target(self, engine, retention):
        user_file = engine.store(b"u", "u.csv", "text/csv", PlacementOptions(user_id="u1"))

        run = retention.cleanup_targeted_files(CleanupOptions(user_id="u1"))

        assert run.files_deleted == 1
        assert "user u1" in run.details[0].reason
        assert not engine.get_file_info(user_file.file_path).exists

    def test_requires_a_target(self, retention):
        with pytest.raises(FileValidationError, match="No campaign ID or user ID"):
            retention.cleanup_targeted_files(CleanupOptions())

    @pytest.mark.parametrize("target", [
        {"campaign_id": ".."},
        {"campaign_id": "."},
        {"campaign_id": "7/../.."},
        {"user_id": ".."},
        {"user_id": "alice/../../campaigns"},
        {"user_id": "a\\b"},
    ])
    def test_target_must_be_single_segment(self, engine, retention, target):
        engine.store(b"u", "u.csv", "text/csv", PlacementOptions(user_id="alice"))
        engine.store(b"c", "c.csv", "text/csv", PlacementOptions(campaign_id=7))
        before = snapshot(engine)

        with pytest.raises(FileValidationError, match="Invalid"):
            retention.cleanup_targeted_files(CleanupOptions(**target))

        assert snapshot(engine) == before

    def test_run_cleanup_rejects_target_before_sweeping(self, engine, retention, clock):
        temp = store_temp(engine)
        set_file_time(engine, temp.file_path, clock.now - timedelta(hours=2))

        with pytest.raises(FileValidationError):
            retention.run_cleanup(CleanupOptions(campaign_id=".."))

        assert engine.get_file_info(temp.file_path).exists


@pytest.mark.unit
class TestRunCleanup:
    """Test run_cleanup() and check_storage_and_cleanup()."""

    def test_merges_requested_strategies(self, engine, retention, clock):
        temp = store_temp(engine, data=b"tt")
        set_file_time(engine, temp.file_path, clock.now - timedelta(hours=2))
        (engine.root / "deleted" / "d.csv").write_bytes(b"ddd")
        set_file_time(engine, "deleted/d.csv", clock.now - timedelta(days=40))

        run = retention.run_cleanup(CleanupOptions(include_deleted=True))

        assert run.files_deleted == 2
        assert run.space_cleaned == 5

    def test_temporary_can_be_excluded(self, engine, retention, clock):
        temp = store_temp(engine)
        set_file_time(engine, temp.file_path, clock.now - timedelta(hours=2))

        run = retention.run_cleanup(CleanupOptions(include_temporary=False))

        assert run.files_deleted == 0
        assert engine.get_file_info(temp.file_path).exists

    def test_targeted_pass_runs_when_id_given(self, engine, retention):
        engine.store(b"u", "u.csv", "text/csv", PlacementOptions(user_id="u9"))

        run = retention.run_cleanup(CleanupOptions(user_id="u9"))

        assert run.files_deleted == 1

    def test_under_ceiling_is_skipped(self, engine, retention):
        engine.store(b"data", "a.csv", "text/csv")

        run = retention.check_storage_and_cleanup()

        assert run.files_deleted == 0
        assert len(run.details) == 1
        assert run.details[0].file_path == "storage-check"
        assert run.details[0].action == ACTION_SKIPPED

    def test_over_ceiling_sweeps(self, engine, clock):
        manager = RetentionManager(
            engine,
            RetentionConfig(max_storage_size=5, enable_automatic_cleanup=False),
            clock=clock,
            start_scheduler=False,
        )
        old = engine.store(b"0123456789", "old.csv", "text/csv", PlacementOptions(user_id="u1"))
        set_file_time(engine, old.file_path, clock.now - timedelta(days=8))

        run = manager.check_storage_and_cleanup()

        assert run.files_deleted == 1
        assert not engine.get_file_info(old.file_path).exists


@pytest.mark.unit
class TestCleanupRun:
    """Test CleanupRun aggregation."""

    def test_merge(self):
        first = CleanupRun()
        first.record_deletion("a", "r", 3)
        second = CleanupRun()
        second.record_deletion("b", "r", 4)
        second.record_error("c", "boom")

        merged = first.merge(second)

        assert merged.files_deleted == 2
        assert merged.space_cleaned == 7
        assert merged.errors == ["boom"]
        assert [d.file_path for d in merged.details] == ["a", "b", "c"]

    def test_to_dict(self):
        run = CleanupRun(dry_run=True)
        run.record_deletion("a", "r", 1024 * 1024)

        data = run.to_dict()

        assert data["space_cleaned_mb"] == 1.0
        assert data["details"][0]["action"] == ACTION_DELETED
        assert data["dry_run"] is True


@pytest.mark.unit
class TestScheduling:
    """Test automatic cleanup scheduling."""

    def test_scheduler_not_started_when_disabled(self, engine):
        manager = RetentionManager(engine, RetentionConfig(enable_automatic_cleanup=False))

        assert manager.is_running is False

    def test_scheduler_started_when_enabled(self, engine):
        manager = RetentionManager(engine, RetentionConfig(enable_automatic_cleanup=True))
        try:
            assert manager.is_running is True
            assert manager.get_cleanup_stats()["next_cleanup_estimate"] is not None
        finally:
            manager.stop_automatic_cleanup()

        assert manager.is_running is False

    def test_start_and_stop_are_idempotent(self, retention):
        retention.start_automatic_cleanup()
        first_thread = retention.scheduler._thread
        retention.start_automatic_cleanup()

        assert retention.is_running
        assert not first_thread.is_alive()

        retention.stop_automatic_cleanup()
        retention.stop_automatic_cleanup()

        assert retention.is_running is False

    def test_update_config_reconciles_scheduler(self, retention):
        retention.update_config(enable_automatic_cleanup=True)
        assert retention.is_running
        thread = retention.scheduler._thread

        retention.update_config(cleanup_interval_minutes=5)
        assert retention.is_running
        assert retention.scheduler._thread is not thread
        assert retention.get_cleanup_stats()["interval_minutes"] == 5

        retention.update_config(enable_automatic_cleanup=False)
        assert retention.is_running is False

    def test_scheduler_runs_task_and_survives_errors(self):
        calls = []

        def task():
            calls.append(1)
            raise RuntimeError("boom")

        scheduler = CleanupScheduler(task, interval_seconds=0.01)
        scheduler.start()
        try:
            deadline = time.time() + 2
            while len(calls) < 2 and time.time() < deadline:
                time.sleep(0.01)
        finally:
            scheduler.stop()

        assert len(calls) >= 2
        assert scheduler.is_running is False

    def test_automatic_cleanup_only_sweeps_temp(self, engine, retention, clock):
        temp = store_temp(engine)
        other = engine.store(b"u", "u.csv", "text/csv", PlacementOptions(user_id="u1"))
        for stored in (temp, other):
            set_file_time(engine, stored.file_path, clock.now - timedelta(days=400))

        run = retention.perform_automatic_cleanup()

        assert [d.file_path for d in run.details] == [temp.file_path]
        assert engine.get_file_info(other.file_path).exists
