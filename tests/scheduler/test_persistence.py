"""
Persistence (run ledger) tests.

- Schema creation and additive migrations
- Job CRUD and the persisted paused flag
- Run lifecycle: create, single terminal update, skipped runs
- Listing, counting, daily spend aggregate
- Startup recovery of orphaned runs
"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from claude_cron.scheduler import (
    InvalidOperationError,
    JobNotFoundError,
    PersistenceAdapter,
    RunNotFoundError,
    RunStatus,
)
from claude_cron.scheduler.entities import local_midnight, now_iso, to_iso
from claude_cron.scheduler.persistence import ORPHANED_RUN_ERROR


def _finish(persistence, run, status=RunStatus.SUCCESS, **kwargs):
    return persistence.finish_run(
        run.id,
        status=status,
        finished_at=now_iso(),
        duration_ms=kwargs.pop("duration_ms", 100),
        **kwargs,
    )


class TestSchema:

    def test_creates_parent_directory(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "cron.db"
        PersistenceAdapter(db_path)
        assert db_path.exists()

    def test_wal_mode(self, persistence):
        conn = sqlite3.connect(persistence.db_path)
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        conn.close()
        assert mode.lower() == "wal"

    def test_migrations_are_idempotent(self, temp_db_path, make_job):
        job = make_job(name="survivor")

        # Reopening applies the migration list again
        reopened = PersistenceAdapter(temp_db_path)
        PersistenceAdapter(temp_db_path)

        assert reopened.get_job(job.id).name == "survivor"

    def test_migrates_database_from_first_release(self, tmp_path):
        db_path = tmp_path / "old.db"
        conn = sqlite3.connect(db_path)
        conn.execute("""
            CREATE TABLE jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                expression TEXT NOT NULL,
                prompt TEXT NOT NULL,
                cwd TEXT NOT NULL,
                model TEXT NOT NULL DEFAULT 'sonnet',
                permission_mode TEXT NOT NULL DEFAULT 'bypassPermissions',
                max_budget REAL,
                timeout_ms INTEGER NOT NULL DEFAULT 600000,
                allowed_tools TEXT NOT NULL DEFAULT '[]',
                append_system_prompt TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id INTEGER NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                exit_code INTEGER,
                duration_ms INTEGER,
                log_file TEXT,
                error TEXT,
                status TEXT NOT NULL DEFAULT 'running'
            )
        """)
        conn.execute(
            "INSERT INTO jobs (name, expression, prompt, cwd, created_at) VALUES (?, ?, ?, ?, ?)",
            ("legacy", "0 * * * *", "hello", "/tmp", "2025-01-01T00:00:00.000Z"),
        )
        conn.commit()
        conn.close()

        persistence = PersistenceAdapter(db_path)
        job = persistence.list_jobs()[0]

        assert job.name == "legacy"
        assert job.session_limit_threshold == 90
        assert job.daily_budget_usd is None
        assert job.block_token_limit is None
        assert job.paused is False

        run = persistence.create_run(job.id, now_iso(), None)
        finished = _finish(persistence, run, cost_usd=0.1, input_tokens=10, output_tokens=5)
        assert finished.cost_usd == 0.1


class TestJobs:

    def test_create_applies_defaults(self, make_job):
        job = make_job()

        assert job.id > 0
        assert job.model == "sonnet"
        assert job.permission_mode == "bypassPermissions"
        assert job.timeout_ms == 600000
        assert job.session_limit_threshold == 90
        assert job.allowed_tools == []
        assert job.max_budget is None
        assert job.paused is False
        assert job.created_at.endswith("Z")

    def test_ids_are_sequential(self, make_job):
        first = make_job()
        second = make_job()
        assert second.id > first.id

    def test_round_trips_all_fields(self, persistence, make_job):
        job = make_job(
            model="opus",
            permission_mode="acceptEdits",
            max_budget=2.5,
            timeout_ms=60000,
            allowed_tools=["Read", "Bash(git:*)"],
            append_system_prompt="Be brief.",
            session_limit_threshold=75,
            daily_budget_usd=20.0,
            block_token_limit=5_000_000,
        )

        assert persistence.get_job(job.id) == job

    def test_get_missing_job(self, persistence):
        assert persistence.get_job(999) is None

    def test_list_in_id_order(self, persistence, make_job):
        ids = [make_job(name=f"job-{i}").id for i in range(3)]
        assert [job.id for job in persistence.list_jobs()] == ids

    def test_update_fields(self, persistence, make_job):
        job = make_job()

        updated = persistence.update_job(
            job.id,
            prompt="New prompt",
            allowed_tools=["Read"],
            daily_budget_usd=None,
            unknown_field="ignored",
        )

        assert updated.prompt == "New prompt"
        assert updated.allowed_tools == ["Read"]
        assert updated.daily_budget_usd is None

    def test_update_missing_job(self, persistence):
        with pytest.raises(JobNotFoundError):
            persistence.update_job(42, prompt="x")

    def test_paused_flag_persists(self, persistence, make_job):
        job = make_job()

        persistence.set_job_paused(job.id, True)
        assert persistence.get_job(job.id).paused is True

        persistence.set_job_paused(job.id, False)
        assert persistence.get_job(job.id).paused is False

    def test_delete_purges_runs(self, persistence, make_job):
        job = make_job()
        other = make_job(name="other")
        persistence.record_skipped_run(job.id, "Parallel limit reached (3/3)")
        persistence.record_skipped_run(other.id, "Parallel limit reached (3/3)")

        persistence.delete_job(job.id)

        assert persistence.get_job(job.id) is None
        assert persistence.count_runs(job.id) == 0
        assert persistence.count_runs(other.id) == 1


class TestRuns:

    def test_create_run_is_running(self, persistence, make_job):
        job = make_job()
        run = persistence.create_run(job.id, now_iso(), "/tmp/job.log")

        stored = persistence.get_run(run.id)
        assert stored.status == RunStatus.RUNNING
        assert stored.finished_at is None
        assert stored.log_file == "/tmp/job.log"
        assert not stored.is_terminal()

    def test_finish_run_records_outcome(self, persistence, make_job):
        job = make_job()
        run = persistence.create_run(job.id, now_iso(), None)

        finished = _finish(
            persistence,
            run,
            exit_code=0,
            duration_ms=1234,
            cost_usd=0.05,
            input_tokens=100,
            output_tokens=20,
        )

        assert finished.status == RunStatus.SUCCESS
        assert finished.exit_code == 0
        assert finished.duration_ms == 1234
        assert finished.cost_usd == 0.05
        assert finished.input_tokens == 100
        assert finished.output_tokens == 20
        assert finished.finished_at is not None
        assert finished.is_terminal()

    def test_terminal_update_happens_once(self, persistence, make_job):
        job = make_job()
        run = persistence.create_run(job.id, now_iso(), None)
        _finish(persistence, run, status=RunStatus.FAILED, error="boom")

        with pytest.raises(InvalidOperationError):
            _finish(persistence, run, status=RunStatus.SUCCESS)

        assert persistence.get_run(run.id).status == RunStatus.FAILED

    def test_finish_requires_terminal_status(self, persistence, make_job):
        job = make_job()
        run = persistence.create_run(job.id, now_iso(), None)

        with pytest.raises(InvalidOperationError):
            _finish(persistence, run, status=RunStatus.RUNNING)

    def test_finish_unknown_run(self, persistence):
        with pytest.raises(RunNotFoundError):
            persistence.finish_run(
                404, status=RunStatus.SUCCESS, finished_at=now_iso(), duration_ms=0
            )

    def test_skipped_run_is_terminal_immediately(self, persistence, make_job):
        job = make_job()

        run = persistence.record_skipped_run(job.id, "Daily usage $45.00 >= threshold $45.00")

        assert run.status == RunStatus.SKIPPED
        assert run.started_at == run.finished_at
        assert run.duration_ms == 0
        assert run.exit_code is None
        assert run.log_file is None
        assert "Daily usage" in run.error

    def test_get_run_scoped_to_job(self, persistence, make_job):
        job = make_job()
        other = make_job(name="other")
        run = persistence.record_skipped_run(job.id, "reason")

        assert persistence.get_run(run.id, job_id=job.id) is not None
        assert persistence.get_run(run.id, job_id=other.id) is None

    def test_list_runs_newest_first_with_paging(self, persistence, make_job):
        job = make_job()
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        runs = [
            persistence.create_run(job.id, to_iso(base + timedelta(minutes=i)), None)
            for i in range(5)
        ]

        page = persistence.list_runs(job.id, limit=2, offset=1)

        assert [r.id for r in page] == [runs[3].id, runs[2].id]
        assert persistence.count_runs(job.id) == 5

    def test_list_runs_status_filter(self, persistence, make_job):
        job = make_job()
        run = persistence.create_run(job.id, now_iso(), None)
        _finish(persistence, run, status=RunStatus.FAILED, error="exit 1")
        persistence.record_skipped_run(job.id, "skip")
        persistence.record_skipped_run(job.id, "skip")

        skipped = persistence.list_runs(job.id, status=RunStatus.SKIPPED)

        assert len(skipped) == 2
        assert all(r.status == RunStatus.SKIPPED for r in skipped)
        assert persistence.count_runs(job.id, status="failed") == 1

    def test_latest_run(self, persistence, make_job):
        job = make_job()
        assert persistence.get_latest_run(job.id) is None

        persistence.record_skipped_run(job.id, "first")
        latest = persistence.record_skipped_run(job.id, "second")

        assert persistence.get_latest_run(job.id).id == latest.id


class TestDailyUsage:

    def _costed_run(self, persistence, job, started: datetime, cost):
        run = persistence.create_run(job.id, to_iso(started), None)
        _finish(persistence, run, cost_usd=cost)

    def test_no_runs(self, persistence):
        assert persistence.daily_usage() == 0.0

    def test_sums_todays_costs_across_jobs(self, persistence, make_job):
        now = datetime.now(timezone.utc)
        first = make_job()
        second = make_job(name="second")

        self._costed_run(persistence, first, now, 20.0)
        self._costed_run(persistence, second, now, 25.0)
        self._costed_run(persistence, second, now, None)

        assert persistence.daily_usage(now) == pytest.approx(45.0)

    def test_excludes_runs_before_local_midnight(self, persistence, make_job):
        now = datetime.now(timezone.utc)
        job = make_job()
        yesterday = local_midnight(now) - timedelta(minutes=1)

        self._costed_run(persistence, job, yesterday, 100.0)
        self._costed_run(persistence, job, now, 1.5)

        assert persistence.daily_usage(now) == pytest.approx(1.5)

    def test_day_boundary_follows_given_zone(self, persistence, make_job):
        tz = timezone(timedelta(hours=14))
        now = datetime.now(timezone.utc)
        midnight = local_midnight(now, tz)
        job = make_job()

        self._costed_run(persistence, job, midnight - timedelta(minutes=1), 100.0)
        self._costed_run(persistence, job, midnight + timedelta(minutes=1), 2.0)

        assert midnight.utcoffset() == timedelta(hours=14)
        assert persistence.daily_usage(now, tz=tz) == pytest.approx(2.0)


class TestOrphanRecovery:

    def test_running_rows_are_failed(self, persistence, make_job):
        job = make_job()
        orphan = persistence.create_run(job.id, now_iso(), None)
        done = persistence.record_skipped_run(job.id, "skip")

        count = persistence.fail_orphaned_runs()

        assert count == 1
        recovered = persistence.get_run(orphan.id)
        assert recovered.status == RunStatus.FAILED
        assert recovered.error == ORPHANED_RUN_ERROR
        assert recovered.finished_at is not None
        assert persistence.get_run(done.id).status == RunStatus.SKIPPED

    def test_nothing_to_recover(self, persistence):
        assert persistence.fail_orphaned_runs() == 0
