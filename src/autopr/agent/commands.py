"""Run repo-supplied shell commands inside a worktree and stream their output."""

import logging
import subprocess
from pathlib import Path
from typing import Iterator

from autopr.agent.streams import EventPump
from autopr.db.models import LogEvent

logger = logging.getLogger(__name__)


class CommandFailed(Exception):
    def __init__(self, command: str, returncode: int):
        self.command = command
        self.returncode = returncode
        super().__init__(f"Command '{command}' exited with code {returncode}")


def run_command(command: str, cwd: Path, job_id: str, stage: str) -> Iterator[LogEvent]:
    """Run one shell command; stdout lines are info, stderr lines are warn.

    Raises CommandFailed on a non-zero exit.
    """
    yield LogEvent(level="info", message=f"$ {command}", job_id=job_id, stage=stage)
    proc = subprocess.Popen(
        command,
        shell=True,
        cwd=str(cwd),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        bufsize=1,
    )
    pump = EventPump()
    pump.attach(proc.stdout, "stdout")
    pump.attach(proc.stderr, "stderr")
    try:
        while not pump.closed:
            item = pump.get(timeout=0.1)
            if item is None or item.line is None or not item.line.strip():
                continue
            level = "info" if item.source == "stdout" else "warn"
            yield LogEvent(level=level, message=item.line, job_id=job_id, stage=stage)
        returncode = proc.wait()
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        pump.join()

    if returncode != 0:
        raise CommandFailed(command, returncode)
