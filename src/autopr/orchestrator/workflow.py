"""The job workflow: credentials, checkout, setup, execute, build, verify, PRs, cleanup.

Credential and checkout failures are fatal and skip straight to cleanup.
Setup, execute, build and verify failures are recorded and the workflow keeps
going so the job still yields reviewable pull requests. Cleanup runs exactly
once on every path.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from autopr.core import credentials as credentials_mod
from autopr.core import jobs as jobs_mod
from autopr.core import repos as repos_mod
from autopr.core.logs import Broadcast, JobLog, LogSink
from autopr.db.engine import init_db
from autopr.db.models import RepoRef, Step, StepExecution
from autopr.errors import FatalWorkflowError, RemoteError, StepFailed, TransportError
from autopr.orchestrator.client import AgentClient
from autopr.orchestrator.durable import ActivityOptions, Journal, WorkflowContext

logger = logging.getLogger(__name__)

RECOVERABLE_STEPS = (
    (Step.SETUP, "Setup"),
    (Step.EXECUTE, "Execute"),
    (Step.BUILD, "Build"),
    (Step.VALIDATE, "Verify"),
)


@dataclass
class WorkflowResult:
    job_id: str
    status: str
    pr_links: list[str] = field(default_factory=list)
    failed_steps: list[str] = field(default_factory=list)
    verification_errors: list[str] = field(default_factory=list)
    pr_errors: list[str] = field(default_factory=list)
    steps: list[StepExecution] = field(default_factory=list)
    fatal_error: str | None = None

    @property
    def error_summary(self) -> str | None:
        if self.fatal_error:
            return self.fatal_error
        errors = self.verification_errors + self.pr_errors
        return "; ".join(errors) if errors else None


def pr_summary(job_id: str, prompt: str, failed_steps: list[str]) -> str:
    """Opening section of every PR body; the agent appends the error list."""
    lines = [f"This PR was automatically generated for job {job_id}.", "", "Task:", prompt.strip()]
    if failed_steps:
        lines += ["", "Some steps failed:"]
        lines += [f"- {name} step failed" for name in failed_steps]
    return "\n".join(lines)


def pr_title(prompt: str) -> str:
    first = (prompt.strip().splitlines() or [""])[0].strip()
    if len(first) > 72:
        first = first[:69] + "..."
    return f"autopr: {first}" if first else "autopr: automated changes"


def merge_repos(repo_ids: list[str], configs: list[RepoRef]) -> list[RepoRef]:
    """Configured repos in the order of repo_ids; unknown ids get defaults."""
    by_id = {c.repo_id: c for c in configs}
    merged = []
    for repo_id in repo_ids:
        repo = by_id.get(repo_id)
        if repo is None:
            repo = RepoRef(repo_id=repo_id, name=repo_id.rstrip("/").split("/")[-1] or "repo")
        merged.append(repo)
    return merged


class JobWorkflow:
    def __init__(
        self,
        db_path: Path,
        client: AgentClient,
        sink: LogSink | None = None,
        broadcast: Broadcast | None = None,
        notifier: Callable[[WorkflowResult], None] | None = None,
        options: ActivityOptions | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db_path = db_path
        self.client = client
        self.sink = sink
        self.broadcast = broadcast
        self.notifier = notifier
        self.options = options or client.options
        self.sleep = sleep

    def run(
        self,
        job_id: str,
        org_id: str,
        repos: list[str] | None = None,
        workflow_id: str | None = None,
    ) -> WorkflowResult:
        db = init_db(self.db_path)
        try:
            ctx = WorkflowContext(workflow_id or f"job-{job_id}", Journal(db), sleep=self.sleep)
            log = JobLog(job_id, org_id, sink=self.sink, broadcast=self.broadcast)
            return _Run(self, db, ctx, log, job_id, org_id, repos).execute()
        finally:
            db.close()


class _Run:
    """State of a single workflow execution."""

    def __init__(self, workflow: JobWorkflow, db, ctx: WorkflowContext, log: JobLog,
                 job_id: str, org_id: str, repo_ids: list[str] | None):
        self.wf = workflow
        self.db = db
        self.ctx = ctx
        self.log = log
        self.job_id = job_id
        self.org_id = org_id
        self.repo_ids = repo_ids
        self.result = WorkflowResult(job_id=job_id, status="in-progress")
        self.prompt = ""
        self.repos: list[RepoRef] = []
        self.git_credentials: dict = {}
        self.coder_credentials: dict = {}

    def activity(self, name: str, fn, *args, sensitive: bool = False, **kwargs):
        self.log.log("info", f"Starting {name}")
        try:
            value = self.ctx.call(
                name, fn, *args, retry=self.wf.options.retry, sensitive=sensitive, **kwargs
            )
        except Exception as e:
            self.log.log("error", f"{name} failed: {e}")
            raise
        self.log.log("info", f"Finished {name}")
        return value

    def execute(self) -> WorkflowResult:
        try:
            self.prepare()
            self.checkout()
            self.run_recoverable_steps()
            self.create_pull_requests()
        except FatalWorkflowError as e:
            self.result.fatal_error = str(e)
        except Exception as e:
            logger.exception("Workflow for job %s crashed", self.job_id)
            self.result.fatal_error = f"Unexpected error: {e}"

        self.cleanup()
        self.finish()
        return self.result

    # ── Phases ───────────────────────────────────────────────────────────

    def prepare(self):
        try:
            job = self.activity("get_job_details", self._load_job)
        except Exception as e:
            raise FatalWorkflowError(f"Failed to load job {self.job_id}: {e}") from e
        if job is None:
            raise FatalWorkflowError(f"Job {self.job_id} not found")
        self.prompt = job["prompt"]
        self.log.job_version = job["version"]

        repo_ids = self.repo_ids if self.repo_ids is not None else job["repos"]
        configs = self.activity("get_repo_configs", self._load_repo_configs, repo_ids)
        self.repos = merge_repos(repo_ids, [RepoRef.from_dict(c) for c in configs])

        try:
            self.git_credentials = self.activity(
                "get_git_credentials", self._load_credentials, "git", sensitive=True
            )
            self.coder_credentials = self.activity(
                "get_coder_credentials", self._load_credentials, "coder", sensitive=True
            )
        except Exception as e:
            raise FatalWorkflowError(f"Failed to retrieve credentials: {e}") from e

    def checkout(self):
        try:
            self._run_step(Step.CHECKOUT)
        except Exception as e:
            raise FatalWorkflowError(f"Checkout failed: {e}") from e

    def run_recoverable_steps(self):
        for step, label in RECOVERABLE_STEPS:
            try:
                self._run_step(step)
            except StepFailed as e:
                self._record_failure(label, e.errors or [str(e)])
            except TransportError as e:
                raise FatalWorkflowError(f"{label} step unreachable: {e}") from e
            except RemoteError as e:
                self._record_failure(label, [str(e)])

    def create_pull_requests(self):
        if not self.repos:
            self.log.log("info", "No repositories configured, skipping pull requests")
            return
        summary = pr_summary(self.job_id, self.prompt, self.result.failed_steps)
        title = pr_title(self.prompt)
        for repo in self.repos:
            try:
                link = self.activity(
                    f"create_pr:{repo.repo_id}",
                    self.wf.client.create_pr,
                    self.job_id,
                    repo.to_dict(),
                    self.git_credentials,
                    title,
                    summary,
                    list(self.result.verification_errors),
                )
            except Exception as e:
                self.result.pr_errors.append(f"PR for {repo.folder_name} failed: {e}")
                continue
            self.result.pr_links.append(link)
            self.log.log("success", f"Opened pull request for {repo.folder_name}: {link}", stage="pr")

    def cleanup(self):
        try:
            result = self.activity("cleanup", self.wf.client.cleanup, self.job_id)
        except Exception as e:
            logger.warning("Cleanup for job %s failed: %s", self.job_id, e)
            return
        for warning in (result or {}).get("warnings") or []:
            self.log.log("warn", warning, stage="cleanup")

    def finish(self):
        r = self.result
        failed = bool(r.fatal_error or r.failed_steps or r.pr_errors)
        r.status = "failed" if failed else "completed"
        level = "error" if failed else "success"
        self.log.log(level, f"Job {self.job_id} {r.status}")

        try:
            self.activity(
                "update_job_status",
                self._update_status,
                r.status,
                r.pr_links[0] if r.pr_links else None,
                r.error_summary,
            )
        except Exception as e:
            logger.error("Failed to update status of job %s: %s", self.job_id, e)

        if self.wf.notifier:
            try:
                self.activity("notify", self._notify)
            except Exception as e:
                logger.warning("Notification for job %s failed: %s", self.job_id, e)

    # ── Helpers ──────────────────────────────────────────────────────────

    def _run_step(self, step: Step) -> dict:
        execution = StepExecution(step=step)
        self.result.steps.append(execution)

        def on_event(event):
            execution.logs.append(event)
            self.log.emit(event)

        try:
            value = self.activity(
                f"run_step:{step.value}",
                self.wf.client.run_step,
                self.job_id,
                step.value,
                [r.to_dict() for r in self.repos],
                self.git_credentials,
                self.coder_credentials,
                self.prompt,
                on_event=on_event,
            )
        except Exception as e:
            execution.status = "failed"
            execution.error = str(e)
            raise
        execution.status = "succeeded"
        return value

    def _record_failure(self, label: str, errors: list[str]):
        self.result.failed_steps.append(label)
        self.result.verification_errors.extend(errors)
        self.log.log("warn", f"{label} step failed, continuing: {'; '.join(errors)}")

    def _load_job(self) -> dict | None:
        job = jobs_mod.get_job_details(self.db, self.job_id, self.org_id)
        if job is None:
            return None
        return {"prompt": job.prompt, "repos": job.repos, "version": job.version}

    def _load_repo_configs(self, repo_ids: list[str]) -> list[dict]:
        return [r.to_dict() for r in repos_mod.get_repo_configs(self.db, self.org_id, repo_ids)]

    def _load_credentials(self, kind: str) -> dict:
        if kind == "git":
            return credentials_mod.get_git_credentials(self.db, self.org_id, self.job_id).to_dict()
        return credentials_mod.get_coder_credentials(self.db, self.org_id, self.job_id).to_dict()

    def _update_status(self, status: str, pr_link: str | None, error: str | None) -> None:
        jobs_mod.update_job_status(self.db, self.job_id, self.org_id, status, pr_link=pr_link, error=error)
        if len(self.result.pr_links) > 1:
            jobs_mod.add_pr_links(self.db, self.job_id, self.org_id, self.result.pr_links[1:])

    def _notify(self) -> None:
        self.wf.notifier(self.result)
