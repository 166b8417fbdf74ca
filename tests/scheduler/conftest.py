"""
Scheduler Test Fixtures.

Base fixtures:
  - Empty database in a temporary directory
  - Started trigger factory (shut down after each test)
  - Stub usage source with a fixed active block or a forced failure

Per-test fixtures:
  - Job factory persisting jobs with sensible defaults
  - Fake CLI script standing in for `claude`, driven by environment
    variables (FAKE_CLI_EXIT, FAKE_CLI_SLEEP, FAKE_CLI_COST)
"""

import stat
import sys
from pathlib import Path
from typing import Callable, Generator, Optional

import pytest

from claude_cron.config import Settings
from claude_cron.scheduler import (
    ActiveBlock,
    AdmissionController,
    CronTriggerFactory,
    Job,
    JobRegistry,
    PersistenceAdapter,
    ProcessRunner,
    SchedulerService,
)


# Never fires during a test run
DISTANT_EXPRESSION = "0 3 1 1 *"


FAKE_CLI_SOURCE = '''#!{python}
import json
import os
import sys
import time

sys.stderr.write("progress: starting\\n")
sys.stderr.flush()

sleep = float(os.environ.get("FAKE_CLI_SLEEP", "0"))
if sleep:
    time.sleep(sleep)

exit_code = int(os.environ.get("FAKE_CLI_EXIT", "0"))
record = {{
    "type": "result",
    "subtype": "success" if exit_code == 0 else "error_during_execution",
    "is_error": exit_code != 0,
    "result": "done: " + sys.argv[-1],
    "total_cost_usd": float(os.environ.get("FAKE_CLI_COST", "0.25")),
    "usage": {{"input_tokens": 120, "output_tokens": 45}},
    "session_id": "sess-fake",
    "num_turns": 2,
}}
sys.stderr.write("progress: finished\\n")
print(json.dumps(record))
sys.exit(exit_code)
'''


class StubUsageSource:
    """
    Usage source returning a fixed block, or raising when `error` is set.

    Counts calls so tests can assert whether the block guard queried it.
    """

    def __init__(
        self,
        block: Optional[ActiveBlock] = None,
        error: Optional[Exception] = None,
    ):
        self.block = block
        self.error = error
        self.calls = 0

    def get_active_block(self) -> Optional[ActiveBlock]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.block


def make_block(total_tokens: int, is_active: bool = True) -> ActiveBlock:
    """Active usage block with the given token total."""
    return ActiveBlock(
        id="2026-01-01T00:00:00.000Z",
        start_time="2026-01-01T00:00:00.000Z",
        end_time="2026-01-01T05:00:00.000Z",
        is_active=is_active,
        total_tokens=total_tokens,
        cost_usd=12.5,
    )


class RecordingRunner:
    """ProcessRunner stand-in that records admitted jobs without spawning."""

    def __init__(self):
        self.executed: list[Job] = []

    def execute(self, job: Job):
        self.executed.append(job)
        job.is_running = False
        return "executed"


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Database file inside the test's temporary directory."""
    return tmp_path / "data" / "cron.db"


@pytest.fixture
def persistence(temp_db_path: Path) -> PersistenceAdapter:
    """Create a fresh PersistenceAdapter with empty database."""
    return PersistenceAdapter(temp_db_path)


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def trigger_factory() -> Generator[CronTriggerFactory, None, None]:
    """Started trigger factory on a private BackgroundScheduler."""
    factory = CronTriggerFactory(timezone="UTC", max_workers=4)
    factory.start()
    yield factory
    factory.shutdown(wait=False)


@pytest.fixture
def registry(
    trigger_factory: CronTriggerFactory,
    persistence: PersistenceAdapter,
) -> JobRegistry:
    """Create a JobRegistry persisting the paused flag."""
    return JobRegistry(trigger_factory, persistence)


@pytest.fixture
def usage_source() -> StubUsageSource:
    """Usage source with no active block."""
    return StubUsageSource()


@pytest.fixture
def recording_runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def admission(
    registry: JobRegistry,
    persistence: PersistenceAdapter,
    recording_runner: RecordingRunner,
    usage_source: StubUsageSource,
) -> AdmissionController:
    """AdmissionController with a recording runner and cap of 2."""
    return AdmissionController(
        registry=registry,
        persistence=persistence,
        runner=recording_runner,
        usage_source=usage_source,
        max_parallel_jobs=2,
    )


@pytest.fixture
def fake_cli(tmp_path: Path) -> Path:
    """Executable script that behaves like `claude -p --output-format json`."""
    script = tmp_path / "fake-claude"
    script.write_text(FAKE_CLI_SOURCE.format(python=sys.executable), encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def logs_dir(tmp_path: Path) -> Path:
    return tmp_path / "logs"


@pytest.fixture
def runner(
    persistence: PersistenceAdapter,
    logs_dir: Path,
    fake_cli: Path,
) -> ProcessRunner:
    """ProcessRunner invoking the fake CLI."""
    return ProcessRunner(persistence, logs_dir, command=str(fake_cli))


@pytest.fixture
def settings(tmp_path: Path, fake_cli: Path) -> Settings:
    """Settings pointing at temporary storage and the fake CLI."""
    return Settings(
        db_path=tmp_path / "data" / "cron.db",
        logs_dir=tmp_path / "logs",
        max_parallel_jobs=2,
        claude_command=str(fake_cli),
        timezone="UTC",
    )


@pytest.fixture
def service(
    settings: Settings,
    usage_source: StubUsageSource,
) -> Generator[SchedulerService, None, None]:
    """Started SchedulerService backed by temporary storage."""
    svc = SchedulerService.create(settings, usage_source=usage_source)
    svc.start()
    yield svc
    svc.stop()


# =============================================================================
# Job Factory Fixtures
# =============================================================================


@pytest.fixture
def make_job(persistence: PersistenceAdapter, tmp_path: Path) -> Callable[..., Job]:
    """
    Factory fixture for persisted jobs.

    Returns a function accepting Job field overrides.
    """

    def _create(**overrides) -> Job:
        fields = {
            "name": "test-job",
            "expression": DISTANT_EXPRESSION,
            "prompt": "Summarize the repository",
            "cwd": str(tmp_path),
        }
        fields.update(overrides)
        return persistence.create_job(fields)

    return _create


@pytest.fixture
def fake_cli_env(monkeypatch) -> Callable[..., None]:
    """Set the fake CLI's behavior for the current test."""

    def _set(exit_code: int = 0, sleep: float = 0, cost: float = 0.25) -> None:
        monkeypatch.setenv("FAKE_CLI_EXIT", str(exit_code))
        monkeypatch.setenv("FAKE_CLI_SLEEP", str(sleep))
        monkeypatch.setenv("FAKE_CLI_COST", str(cost))

    return _set
