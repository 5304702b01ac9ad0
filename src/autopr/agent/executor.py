"""Executes one pipeline step against every repo of a job."""

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Iterator

from autopr.agent.commands import CommandFailed, run_command
from autopr.agent.supervisor import CodeGenSupervisor
from autopr.agent.workspace import WorktreeManager
from autopr.db.models import (
    CoderCredentials,
    GitCredentials,
    LogEvent,
    RepoRef,
    Step,
    branch_name,
)
from autopr.errors import CodeGenError, GitError, StepFailed

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    job_id: str
    step: Step
    repos: list[RepoRef]
    git_credentials: GitCredentials | None
    coder_credentials: CoderCredentials | None
    prompt: str
    errors: list[str] = field(default_factory=list)

    def event(self, message: str, level: str = "info", stage: str | None = None) -> LogEvent:
        return LogEvent(level=level, message=message, job_id=self.job_id, stage=stage or self.step.value)

    def fail(self, message: str) -> LogEvent:
        self.errors.append(message)
        return self.event(message, level="error")


Handler = Callable[[StepContext], Iterator[LogEvent]]


class StepExecutor:
    """Runs checkout, setup, execute, build and validate steps.

    A failure in one repo never stops the remaining repos; once every repo was
    tried the step raises StepFailed carrying all collected errors.
    """

    def __init__(
        self,
        worktrees: WorktreeManager,
        startup_timeout: float = 30.0,
        overall_timeout: float = 600.0,
        coder_executable: str | None = None,
    ):
        self.worktrees = worktrees
        self.startup_timeout = startup_timeout
        self.overall_timeout = overall_timeout
        self.coder_executable = coder_executable
        self._handlers: dict[Step, Handler] = {
            Step.CHECKOUT: self._checkout,
            Step.SETUP: self._run_commands,
            Step.EXECUTE: self._execute,
            Step.BUILD: self._run_commands,
            Step.VALIDATE: self._run_commands,
        }
        missing = set(Step) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for steps: {sorted(s.value for s in missing)}")

    def run_step(
        self,
        job_id: str,
        step: Step | str,
        repos: list[RepoRef],
        git_credentials: GitCredentials | None = None,
        coder_credentials: CoderCredentials | None = None,
        prompt: str = "",
    ) -> Iterator[LogEvent]:
        """Stream the step's log events. Raises StepFailed if any repo failed."""
        ctx = StepContext(
            job_id=job_id,
            step=Step(step),
            repos=list(repos),
            git_credentials=git_credentials,
            coder_credentials=coder_credentials,
            prompt=prompt,
        )
        self.worktrees.job_dir(job_id).mkdir(parents=True, exist_ok=True)

        yield ctx.event(f"Starting '{ctx.step.value}' step for job {job_id}")
        yield from self._handlers[ctx.step](ctx)

        if ctx.errors:
            logger.warning("Step %s failed for job %s: %s", ctx.step.value, job_id, ctx.errors)
            raise StepFailed(ctx.step.value, ctx.errors)
        yield ctx.event(f"{ctx.step.value.capitalize()} step completed for job {job_id}", level="success")

    def worktree_for(self, job_id: str, repo: RepoRef) -> Path:
        return self.worktrees.worktree_path(job_id, repo.folder_name)

    # ── Step handlers ────────────────────────────────────────────────────

    def _checkout(self, ctx: StepContext) -> Iterator[LogEvent]:
        for repo in ctx.repos:
            name = repo.folder_name
            source = repo.url or repo.repo_id
            yield ctx.event(f"Ensuring repository is available: {name} ({source})", stage="clone")
            try:
                bare = self.worktrees.ensure_bare_repo(repo.identifier, ctx.git_credentials, url=repo.url)
                yield ctx.event(f"Creating worktree for {name} from branch {repo.branch}")
                self.worktrees.create_worktree(bare, self.worktree_for(ctx.job_id, repo), repo.branch)
            except GitError as e:
                yield ctx.fail(f"Checkout of {name} failed: {e}")
                continue
            yield ctx.event(f"Checked out {name} on branch {repo.branch}", level="success")

    def _execute(self, ctx: StepContext) -> Iterator[LogEvent]:
        for repo in ctx.repos:
            name = repo.folder_name
            branch = branch_name(ctx.job_id, name)
            yield ctx.event(f"Creating branch {branch} in {name}", stage="git")
            try:
                self.worktrees.create_branch(self.worktree_for(ctx.job_id, repo), branch)
            except GitError as e:
                yield ctx.fail(f"Creating branch {branch} in {name} failed: {e}")

        credentials = ctx.coder_credentials or CoderCredentials()
        if not credentials.executable_path and self.coder_executable:
            credentials = replace(credentials, executable_path=self.coder_executable)
        supervisor = CodeGenSupervisor(
            credentials,
            startup_timeout=self.startup_timeout,
            overall_timeout=self.overall_timeout,
        )
        job_dir = self.worktrees.job_dir(ctx.job_id)
        try:
            yield from supervisor.run(job_dir, ctx.prompt, ctx.job_id)
        except CodeGenError as e:
            yield ctx.fail(f"Code generation failed: {e}")

    def _run_commands(self, ctx: StepContext) -> Iterator[LogEvent]:
        ran_any = False
        for repo in ctx.repos:
            commands = repo.commands_for(ctx.step)
            if not commands:
                continue
            ran_any = True
            worktree = self.worktree_for(ctx.job_id, repo)
            if not worktree.is_dir():
                yield ctx.fail(f"{repo.folder_name}: worktree {worktree} does not exist")
                continue
            yield ctx.event(f"Running {len(commands)} {ctx.step.value} command(s) in {repo.folder_name}")
            for command in commands:
                try:
                    yield from run_command(command, worktree, ctx.job_id, ctx.step.value)
                except (CommandFailed, OSError) as e:
                    yield ctx.fail(f"{repo.folder_name}: {e}")
                    break

        if not ran_any:
            yield ctx.event(f"No {ctx.step.value} commands configured, skipping")
