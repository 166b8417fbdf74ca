"""
Process Runner.

Supervises one `claude -p` invocation for an admitted job:
- Creates the RUNNING run row and its log file
- Spawns the CLI in the job's working directory
- Buffers stdout, streams stderr into the log as it arrives
- Enforces the job timeout by killing the process
- Extracts the structured result and finalizes the run

What the runner MUST NOT do:
- Decide admission (AdmissionController's responsibility)
- Retry failed runs
- Raise execution failures to its caller
"""

import logging
import os
import subprocess
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Optional

from ..config import DEFAULT_CLAUDE_COMMAND
from .entities import Job, ResultRecord, Run, RunStatus, format_number, to_iso
from .persistence import PersistenceAdapter
from .result_extractor import extract_result


logger = logging.getLogger(__name__)

STDERR_TAG = "[stderr] "
SEPARATOR = "=" * 60

# Upper bound on waiting for drain threads after the process is gone.
# Grandchildren that inherited the pipes can keep them open.
DRAIN_JOIN_TIMEOUT = 10.0


def build_command(job: Job, command: str = DEFAULT_CLAUDE_COMMAND) -> list[str]:
    """
    Build the CLI argv for a job.

    Optional flags are omitted when their field is unset. The prompt is
    always the last argument. The timeout is enforced by supervision.
    """
    cmd = [
        command,
        "-p",
        "--output-format", "json",
        "--model", job.model,
        "--permission-mode", job.permission_mode,
        "--verbose",
    ]

    if job.max_budget:
        cmd.extend(["--max-budget-usd", format_number(job.max_budget)])

    if job.allowed_tools:
        cmd.append("--allowedTools")
        cmd.extend(job.allowed_tools)

    if job.append_system_prompt:
        cmd.extend(["--append-system-prompt", job.append_system_prompt])

    cmd.append(job.prompt)
    return cmd


def log_path_for(logs_dir: Path, job: Job, started: datetime) -> Path:
    """Log artifact path unique per job and start time."""
    stamp = to_iso(started).replace(":", "-").replace(".", "-")
    return logs_dir / f"job-{job.id}-{stamp}.log"


class _LogSink:
    """Thread-safe text writer shared by the stderr drain and the runner."""

    def __init__(self, handle: IO[str]):
        self._handle = handle
        self._lock = threading.Lock()

    def write(self, text: str) -> None:
        with self._lock:
            self._handle.write(text)
            self._handle.flush()


class ProcessRunner:
    """
    Executes admitted jobs and writes their terminal run update.

    Execution is synchronous: the caller (a trigger thread or the manual
    trigger pool) blocks until the run is finalized.
    """

    def __init__(
        self,
        persistence: PersistenceAdapter,
        logs_dir: Path,
        command: str = DEFAULT_CLAUDE_COMMAND,
    ):
        """
        Args:
            persistence: Run ledger
            logs_dir: Directory for per-run log files
            command: CLI executable name or path
        """
        self.persistence = persistence
        self.logs_dir = Path(logs_dir)
        self.command = command

    def execute(self, job: Job) -> Optional[Run]:
        """
        Run the job to completion and return the finalized Run.

        `job.is_running` is cleared on every exit path. Returns None only if
        the RUNNING row itself could not be created.
        """
        job.is_running = True
        try:
            return self._execute(job)
        finally:
            job.is_running = False

    def _execute(self, job: Job) -> Optional[Run]:
        started = datetime.now(timezone.utc)
        started_mono = time.monotonic()
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_path_for(self.logs_dir, job, started)

        try:
            run = self.persistence.create_run(job.id, to_iso(started), str(log_file))
        except Exception:
            logger.exception(f"Could not create run row for job {job.id}")
            return None

        logger.info(f"[START] Job \"{job.name}\" (id={job.id}) run={run.id}")
        logger.info(f"  prompt: {job.prompt[:100]}...")
        logger.info(f"  cwd: {job.cwd}")
        logger.info(f"  log: {log_file}")

        exit_code: Optional[int] = None
        error: Optional[str] = None
        result: Optional[ResultRecord] = None

        try:
            exit_code, error, result = self._supervise(job, run, log_file, started)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.error(f"  [ERROR] {error}")

        duration_ms = int((time.monotonic() - started_mono) * 1000)
        if error:
            status = RunStatus.FAILED
        elif exit_code == 0:
            status = RunStatus.SUCCESS
        else:
            status = RunStatus.FAILED

        try:
            finished = self.persistence.finish_run(
                run.id,
                status=status,
                finished_at=to_iso(datetime.now(timezone.utc)),
                duration_ms=duration_ms,
                exit_code=exit_code,
                error=error,
                cost_usd=result.cost_usd if result else None,
                input_tokens=result.input_tokens if result else None,
                output_tokens=result.output_tokens if result else None,
            )
        except Exception:
            logger.exception(f"Could not finalize run {run.id} of job {job.id}")
            return run

        logger.info(
            f"[DONE] Job \"{job.name}\" (id={job.id}) run={run.id} "
            f"status={status.value} duration={duration_ms}ms"
        )
        return finished

    def _supervise(
        self,
        job: Job,
        run: Run,
        log_file: Path,
        started: datetime,
    ) -> tuple[Optional[int], Optional[str], Optional[ResultRecord]]:
        """Spawn, drain, wait with timeout. Returns (exit_code, error, result)."""
        cmd = build_command(job, self.command)
        exit_code: Optional[int] = None
        error: Optional[str] = None

        with open(log_file, "w", encoding="utf-8") as handle:
            sink = _LogSink(handle)
            sink.write(self._header(job, run, started, cmd))

            process = subprocess.Popen(
                cmd,
                cwd=job.cwd,
                env=os.environ.copy(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )

            stdout_chunks: list[bytes] = []
            stdout_thread = threading.Thread(
                target=self._drain_stdout,
                args=(process.stdout, stdout_chunks, job),
                name=f"job-{job.id}-stdout",
                daemon=True,
            )
            stderr_thread = threading.Thread(
                target=self._drain_stderr,
                args=(process.stderr, sink, job),
                name=f"job-{job.id}-stderr",
                daemon=True,
            )
            stdout_thread.start()
            stderr_thread.start()

            try:
                try:
                    exit_code = process.wait(timeout=job.timeout_ms / 1000)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
                    error = f"Timed out after {job.timeout_ms}ms"
                    sink.write(f"\n[TIMEOUT] {error}\n")
                    logger.warning(f"  [TIMEOUT] Job {job.id} run={run.id}: {error}")
            finally:
                if process.poll() is None:
                    process.kill()
                    process.wait()
                for thread in (stdout_thread, stderr_thread):
                    thread.join(DRAIN_JOIN_TIMEOUT)
                    if thread.is_alive():
                        logger.warning(f"Drain thread {thread.name} did not finish")

            stdout_text = b"".join(stdout_chunks).decode("utf-8", errors="replace")
            result = extract_result(stdout_text)

            if result is not None:
                sink.write(self._result_section(result))
            elif stdout_text.strip():
                sink.write(f"\n{stdout_text}")
                if not stdout_text.endswith("\n"):
                    sink.write("\n")

        return exit_code, error, result

    @staticmethod
    def _drain_stdout(stream: IO[bytes], chunks: list[bytes], job: Job) -> None:
        try:
            for chunk in iter(lambda: stream.read(65536), b""):
                chunks.append(chunk)
        except (OSError, ValueError) as e:
            logger.warning(f"stdout reader for job {job.id} failed: {e}")
        finally:
            stream.close()

    @staticmethod
    def _drain_stderr(stream: IO[bytes], sink: _LogSink, job: Job) -> None:
        try:
            for line in iter(stream.readline, b""):
                sink.write(STDERR_TAG + line.decode("utf-8", errors="replace"))
        except (OSError, ValueError) as e:
            logger.warning(f"stderr reader for job {job.id} failed: {e}")
        finally:
            stream.close()

    @staticmethod
    def _header(job: Job, run: Run, started: datetime, cmd: list[str]) -> str:
        return "\n".join([
            f"=== Job: {job.name} (id={job.id}) run={run.id} ===",
            f"Started: {to_iso(started)}",
            f"Prompt: {job.prompt}",
            f"Model: {job.model}",
            f"CWD: {job.cwd}",
            f"Command: {' '.join(cmd)}",
            SEPARATOR,
            "",
        ])

    @staticmethod
    def _result_section(result: ResultRecord) -> str:
        cost = f"${result.cost_usd:.4f}" if result.cost_usd is not None else "n/a"
        lines = [
            "",
            SEPARATOR,
            f"[RESULT] cost={cost} input_tokens={result.input_tokens} "
            f"output_tokens={result.output_tokens}",
            SEPARATOR,
            result.result,
            "",
        ]
        return "\n".join(lines)
