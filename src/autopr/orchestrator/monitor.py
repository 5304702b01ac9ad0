"""Background threads of the control plane: job scheduling and agent health."""

import logging
import threading
from pathlib import Path
from typing import Callable

from autopr.core import agents as agents_mod
from autopr.core import jobs as jobs_mod
from autopr.db.engine import init_db
from autopr.db.models import Agent, Job
from autopr.orchestrator.channels import ChannelRegistry, check_liveness

logger = logging.getLogger(__name__)


class _Monitor:
    """Start/stop plumbing shared by the monitors."""

    name = "monitor"

    def __init__(self, db_path: Path, poll_interval: float):
        self.db_path = db_path
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the monitor thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info("%s started", self.name)

    def stop(self):
        """Signal the monitor thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("%s stopped", self.name)

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Error in %s loop", self.name)
            self._stop_event.wait(self.poll_interval)

    def tick(self):
        raise NotImplementedError


class QueueMonitor(_Monitor):
    """Claims queued jobs for idle agents and runs each workflow in its own thread."""

    name = "queue-monitor"

    def __init__(
        self,
        db_path: Path,
        run_workflow: Callable[[Agent, Job], object],
        poll_interval: float = 30.0,
    ):
        super().__init__(db_path, poll_interval)
        self.run_workflow = run_workflow
        self._running: dict[str, threading.Thread] = {}
        self._active_jobs: dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def active_job_ids(self) -> set[str]:
        with self._lock:
            return set(self._active_jobs.values())

    def tick(self):
        db = init_db(self.db_path)
        try:
            agents = agents_mod.list_schedulable_agents(db)
            for org_id in {a.org_id for a in agents}:
                stuck = jobs_mod.detect_stuck_jobs(db, org_id, self.active_job_ids)
                for job_id in stuck:
                    logger.warning("Marked stuck job %s as failed", job_id)

            for agent in agents:
                if self._is_busy(agent.id):
                    continue
                job = jobs_mod.claim_next_job(db, agent.org_id, agent.id)
                if job:
                    self._launch(agent, job)
        finally:
            db.close()

    def join(self, timeout: float | None = None):
        """Wait for every running workflow to finish."""
        with self._lock:
            threads = list(self._running.values())
        for thread in threads:
            thread.join(timeout=timeout)

    def _is_busy(self, agent_id: str) -> bool:
        with self._lock:
            thread = self._running.get(agent_id)
            return thread is not None and thread.is_alive()

    def _launch(self, agent: Agent, job: Job):
        def target():
            try:
                self.run_workflow(agent, job)
            except Exception:
                logger.exception("Workflow for job %s failed to run", job.id)
            finally:
                with self._lock:
                    self._active_jobs.pop(agent.id, None)

        thread = threading.Thread(target=target, name=f"workflow-{job.id}", daemon=True)
        with self._lock:
            self._running[agent.id] = thread
            self._active_jobs[agent.id] = job.id
        logger.info("Starting workflow for job %s on agent %s", job.id, agent.id)
        thread.start()


class HealthMonitor(_Monitor):
    """Periodically pings every registered agent and records the result."""

    name = "health-monitor"

    def __init__(
        self,
        db_path: Path,
        registry: ChannelRegistry,
        poll_interval: float = 60.0,
        wait: float = 5.0,
        freshness: float = 10.0,
    ):
        super().__init__(db_path, poll_interval)
        self.registry = registry
        self.wait = wait
        self.freshness = freshness

    def tick(self):
        db = init_db(self.db_path)
        try:
            for agent in agents_mod.list_agents(db):
                alive = check_liveness(
                    self.registry,
                    lambda agent_id: agents_mod.get_last_active(db, agent_id),
                    agent.id,
                    wait=self.wait,
                    freshness=self.freshness,
                )
                agents_mod.record_health_result(db, agent.id, alive)
                if not alive:
                    logger.info("Agent %s did not answer its health check", agent.id)
        finally:
            db.close()
