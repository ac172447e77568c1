"""
Test gate execution.

Runs the project's test command directly via subprocess inside a checkout
(before merging an agent branch) or on the mainline (after all merges). The
exit status alone decides pass or fail.
"""

import logging
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 10000


def _kill_process_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (AttributeError, ProcessLookupError, PermissionError):
        proc.kill()


class GateResult(BaseModel):
    """Result of one test gate run."""
    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    command: str = ""
    working_dir: str = ""
    timed_out: bool = False
    error: Optional[str] = None
    duration_seconds: Optional[float] = None

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)

    def tail(self, lines: int) -> list[str]:
        """Last lines of combined output, or the error when there is none."""
        text = self.output or (self.error or "")
        return text.splitlines()[-lines:] if text else []


class TestGate:
    """
    Executes a shell test command with a bounded timeout.

    Test gates:
    - Run externally (not via an agent)
    - Block the agent's merge on failure
    - Treat a timeout as a failure of that step only
    """

    __test__ = False  # not a pytest test class

    DEFAULT_TIMEOUT = 300  # 5 minutes

    def __init__(self, timeout: Optional[float] = None):
        """
        Initialize the gate.

        Args:
            timeout: Command timeout in seconds (default 300)
        """
        self.timeout = timeout or self.DEFAULT_TIMEOUT

    def run(
        self,
        command: str,
        working_dir: Path,
        env: Optional[dict] = None
    ) -> GateResult:
        """
        Run the test command.

        Args:
            command: Shell command string
            working_dir: Directory to run it in
            env: Extra environment variables

        Returns:
            GateResult with success status and output
        """
        start_time = time.time()

        run_env = os.environ.copy()
        if env:
            run_env.update(env)

        logger.info(f"Running tests in {working_dir}: {command}")

        try:
            with subprocess.Popen(
                command,
                cwd=working_dir,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=run_env,
                shell=True,
                start_new_session=True
            ) as proc:
                try:
                    stdout, stderr = proc.communicate(timeout=self.timeout)
                except subprocess.TimeoutExpired:
                    # Kill the whole group so test runners spawned by the shell die too
                    _kill_process_group(proc)
                    proc.communicate()
                    raise
            duration = time.time() - start_time

            return GateResult(
                success=proc.returncode == 0,
                exit_code=proc.returncode,
                stdout=stdout[-MAX_OUTPUT_CHARS:] if stdout else "",
                stderr=stderr[-MAX_OUTPUT_CHARS:] if stderr else "",
                command=command,
                working_dir=str(working_dir),
                duration_seconds=duration
            )

        except subprocess.TimeoutExpired:
            duration = time.time() - start_time
            logger.error(f"Test command timed out after {self.timeout}s: {command}")
            return GateResult(
                success=False,
                exit_code=-1,
                command=command,
                working_dir=str(working_dir),
                timed_out=True,
                error=f"Command timed out after {self.timeout:g} seconds",
                duration_seconds=duration
            )

        except OSError as e:
            duration = time.time() - start_time
            logger.exception(f"Test command failed to start: {command}")
            return GateResult(
                success=False,
                exit_code=-1,
                command=command,
                working_dir=str(working_dir),
                error=str(e),
                duration_seconds=duration
            )
