"""Best-effort teardown of a job's workspace."""

import logging
import os
import shutil
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from autopr.agent.workspace import WorktreeManager
from autopr.config import DEFAULT_KILL_LIST

logger = logging.getLogger(__name__)

ENV_VARS_TO_RESET = ("DATABASE_URL", "API_KEY", "SECRET_KEY", "NODE_ENV", "PORT")
TEMP_PATHS = ("tmp", ".cache", ".npm/_cacache")


class BestEffort:
    """Runs sub-actions, logging and collecting every error instead of raising."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.warnings: list[str] = []

    @contextmanager
    def attempt(self, action: str):
        try:
            yield
        except Exception as e:
            message = f"{action} failed: {e}"
            logger.warning("Cleanup for job %s: %s", self.job_id, message)
            self.warnings.append(message)

    def warn(self, message: str):
        logger.warning("Cleanup for job %s: %s", self.job_id, message)
        self.warnings.append(message)


@dataclass
class CleanupResult:
    job_id: str
    status: str = "done"
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"job_id": self.job_id, "status": self.status, "warnings": self.warnings}


class WorkspaceCleaner:
    def __init__(self, worktrees: WorktreeManager, kill_list: list[str] | None = None):
        self.worktrees = worktrees
        self.kill_list = list(DEFAULT_KILL_LIST if kill_list is None else kill_list)

    def cleanup(self, job_id: str) -> CleanupResult:
        """Tear down everything a job left behind. Always reports done."""
        collector = BestEffort(job_id)

        for name in self.kill_list:
            with collector.attempt(f"Killing {name}"):
                self._kill(name)

        for rel in TEMP_PATHS:
            path = self.worktrees.root / rel
            with collector.attempt(f"Clearing {path}"):
                if path.exists():
                    shutil.rmtree(path)

        for var in ENV_VARS_TO_RESET:
            os.environ.pop(var, None)

        job_dir = self.worktrees.job_dir(job_id)
        with collector.attempt("Removing worktrees"):
            for warning in self.worktrees.remove_all_worktrees_under(job_dir):
                collector.warn(warning)

        with collector.attempt(f"Deleting {job_dir}"):
            if job_dir.exists():
                shutil.rmtree(job_dir)

        logger.info("Cleanup for job %s done with %d warning(s)", job_id, len(collector.warnings))
        return CleanupResult(job_id=job_id, warnings=collector.warnings)

    def _kill(self, name: str) -> None:
        # pkill exits 1 when nothing matched; only >1 is an error.
        result = subprocess.run(
            ["pkill", "-9", "-x", name], capture_output=True, text=True
        )
        if result.returncode > 1:
            raise RuntimeError(result.stderr.strip() or f"pkill exited with {result.returncode}")
