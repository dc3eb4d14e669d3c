"""Worker dispatch: one isolated OS process per job.

Dispatch is fire-and-forget. The orchestrator only learns about the
outcome through the worker's HTTP callback; the supervisor thread started
here exists purely to relay worker output into the log and to record how
the process exited:
- exit 0: success reported
- exit 3: failure reported
- exit 2: arguments rejected
- anything else (including 1, the interpreter's status for an uncaught
  exception): crashed before or while reporting
"""

import logging
import os
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional

from ..errors import DispatchError
from .models import WorkerRequest

logger = logging.getLogger(__name__)

WORKER_MODULE = "transcode_service.worker"

EXIT_SUCCESS = 0
EXIT_BAD_ARGUMENTS = 2
EXIT_REPORTED_FAILURE = 3


def describe_exit(returncode: int) -> str:
    """Human-readable meaning of a worker exit status."""
    if returncode == EXIT_SUCCESS:
        return "completed"
    if returncode == EXIT_REPORTED_FAILURE:
        return "reported failure"
    if returncode == EXIT_BAD_ARGUMENTS:
        return "rejected its arguments"
    if returncode < 0:
        return f"killed by signal {-returncode}"
    return f"crashed (exit {returncode})"


class WorkerDispatcher(ABC):
    """Launches an isolated execution unit for a job."""

    @abstractmethod
    def dispatch(self, request: WorkerRequest) -> Any:
        """Start a worker for ``request`` without waiting for it.

        Returns an implementation-specific handle; callers may ignore it.

        Raises:
            DispatchError: If the worker could not be started
        """
        pass


class ProcessDispatcher(WorkerDispatcher):
    """Spawns ``python -m transcode_service.worker`` per job.

    Parameters are passed by value on the command line; the child inherits
    the environment so it resolves the same configuration.
    """

    def __init__(
        self,
        python_executable: Optional[str] = None,
        env: Optional[dict] = None,
        cwd: Optional[str] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self.python_executable = python_executable or sys.executable
        self.env = env
        self.cwd = cwd
        self._popen = popen

    def build_command(self, request: WorkerRequest) -> List[str]:
        return [self.python_executable, "-m", WORKER_MODULE, *request.to_argv()]

    def dispatch(self, request: WorkerRequest) -> subprocess.Popen:
        """Spawn the worker and return its process handle."""
        cmd = self.build_command(request)
        logger.info("Spawning worker for job %s: %s", request.job_id, " ".join(cmd))

        env = dict(os.environ if self.env is None else self.env)
        try:
            process = self._popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=env,
                cwd=self.cwd,
                start_new_session=True,  # Worker survives orchestrator signals
            )
        except (OSError, ValueError) as e:
            raise DispatchError(request.job_id, str(e)) from e

        supervisor = threading.Thread(
            target=self._supervise,
            args=(request.job_id, process),
            name=f"worker-supervisor-{request.job_id}",
            daemon=True,
        )
        supervisor.start()
        return process

    @staticmethod
    def _supervise(job_id: str, process: subprocess.Popen) -> None:
        """Relay worker output to the log and record its exit status."""
        if process.stdout is not None:
            for line in process.stdout:
                line = line.rstrip()
                if line:
                    logger.info("[worker %s] %s", job_id, line)
        returncode = process.wait()
        outcome = describe_exit(returncode)
        if returncode in (EXIT_SUCCESS, EXIT_REPORTED_FAILURE):
            logger.info("Worker for job %s exited: %s", job_id, outcome)
        else:
            # No callback is guaranteed; the job may stay progressing
            logger.error("Worker for job %s %s", job_id, outcome)
