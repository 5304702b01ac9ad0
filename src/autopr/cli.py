"""CLI entry point for autopr."""

import json
import logging
import sys
import uuid

import click

from autopr.config import get_config
from autopr.core import agents as agents_mod
from autopr.core import credentials as credentials_mod
from autopr.core import jobs as jobs_mod
from autopr.core import repos as repos_mod
from autopr.db.engine import get_db
from autopr.db.models import RepoRef, split_commands


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
def main():
    """autopr - unattended coding jobs turned into pull requests"""
    pass


# ── Agent Commands ────────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Run and manage executor agents."""
    pass


@agent_group.command("serve")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on")
@click.option("--log-level", default="info", help="Logging level")
def agent_serve(host, port, log_level):
    """Start the executor agent."""
    from autopr.agent.channel import AgentChannel
    from autopr.agent.server import run_server

    _setup_logging(log_level)
    config = get_config()
    if host:
        config.agent_host = host
    if port:
        config.agent_port = port

    channel = None
    if config.agent_id:
        channel = AgentChannel(config.control_url, config.agent_id)
        channel.start()
    else:
        click.echo("AUTOPR_AGENT_ID not set; control channel disabled", err=True)

    click.echo(f"Agent listening on {config.agent_host}:{config.agent_port}")
    try:
        run_server(config)
    finally:
        if channel:
            channel.stop()


@agent_group.command("register")
@click.argument("agent_id")
@click.option("--org", required=True, help="Organisation ID")
@click.option("--host", default="localhost", help="Agent host")
@click.option("--port", default=50051, type=int, help="Agent port")
@click.option("--name", default="", help="Display name")
def agent_register(agent_id, org, host, port, name):
    """Register an agent with the control plane."""
    with _get_db() as db:
        agent = agents_mod.register_agent(db, agent_id, org, host, port, name)
        click.echo(f"Registered agent {agent.id} at {agent.host}:{agent.port} ({agent.status})")


@agent_group.command("list")
@click.option("--org", default=None, help="Organisation ID")
def agent_list(org):
    """List registered agents."""
    with _get_db() as db:
        agents = agents_mod.list_agents(db, org_id=org)
        if not agents:
            click.echo("No agents registered.")
            return
        for a in agents:
            click.echo(
                f"  {a.id} [{a.status}] {a.host}:{a.port} org={a.org_id} "
                f"failures={a.consecutive_failures}"
            )


@agent_group.command("cleanup")
@click.argument("job_id")
def agent_cleanup(job_id):
    """Tear down a job's workspace on this machine."""
    from autopr.agent.cleanup import WorkspaceCleaner
    from autopr.agent.workspace import WorktreeManager

    config = get_config()
    cleaner = WorkspaceCleaner(WorktreeManager(config.workspace_root), config.cleanup_kill_list)
    result = cleaner.cleanup(job_id)
    click.echo(f"Cleanup {result.status} for job {job_id}")
    for warning in result.warnings:
        click.echo(f"  warning: {warning}")


# ── Control Plane Commands ────────────────────────────────────────────────────


@main.group("control")
def control_group():
    """Run the control plane."""
    pass


@control_group.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--log-level", default="info", help="Logging level")
def control_serve(host, port, log_level):
    """Start the control plane with its queue and health monitors."""
    from autopr.orchestrator.app import run_server

    _setup_logging(log_level)
    click.echo(f"Control plane listening on {host}:{port}")
    run_server(get_config(), host=host, port=port)


# ── Job Commands ──────────────────────────────────────────────────────────────


@main.group("job")
def job_group():
    """Submit and run jobs."""
    pass


@job_group.command("submit")
@click.argument("prompt")
@click.option("--org", required=True, help="Organisation ID")
@click.option("--repo", "repos", multiple=True, help="Repo ID (repeatable)")
@click.option("--queue", "queue_type", default="backlog", type=click.Choice(["backlog", "rework"]))
def job_submit(prompt, org, repos, queue_type):
    """Queue a new job."""
    job_id = uuid.uuid4().hex[:12]
    with _get_db() as db:
        job = jobs_mod.create_job(db, job_id, org, prompt, list(repos), queue_type=queue_type)
        click.echo(f"Queued job {job.id} ({job.queue_type} #{job.order_in_queue})")


@job_group.command("run")
@click.argument("job_id")
@click.option("--org", required=True, help="Organisation ID")
@click.option("--agent-url", default=None, help="Agent base URL (defaults to the org's first active agent)")
@click.option("--log-level", default="info", help="Logging level")
def job_run(job_id, org, agent_url, log_level):
    """Run one job's workflow in the foreground."""
    from autopr.core.logs import LogSink
    from autopr.orchestrator.client import AgentClient
    from autopr.orchestrator.workflow import JobWorkflow

    _setup_logging(log_level)
    config = get_config()
    with _get_db() as db:
        job = jobs_mod.get_job_details(db, job_id, org)
        if not job:
            click.echo(f"Job not found: {job_id}", err=True)
            sys.exit(1)
        if not agent_url:
            agents = agents_mod.list_agents(db, org_id=org, status="active")
            if not agents:
                click.echo(f"No active agent for org {org}", err=True)
                sys.exit(1)
            agent_url = f"http://{agents[0].host}:{agents[0].port}"
        jobs_mod.update_job_status(db, job_id, org, "in-progress")

    client = AgentClient(base_url=agent_url)
    sink = LogSink(config.db_path)
    try:
        workflow = JobWorkflow(config.db_path, client, sink=sink)
        result = workflow.run(job.id, org, workflow_id=f"job-{job.id}-v{job.version}")
    finally:
        client.close()
        sink.close()

    click.echo(f"Job {job_id} {result.status}")
    for link in result.pr_links:
        click.echo(f"  PR: {link}")
    if result.error_summary:
        click.echo(f"  Error: {result.error_summary}")
    if result.status != "completed":
        sys.exit(1)


@job_group.command("show")
@click.argument("job_id")
@click.option("--org", required=True, help="Organisation ID")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def job_show(job_id, org, json_output):
    """Show job details."""
    with _get_db() as db:
        job = jobs_mod.get_job_details(db, job_id, org)
        if not job:
            click.echo(f"Job not found: {job_id}", err=True)
            sys.exit(1)
        if json_output:
            click.echo(json.dumps(_job_dict(job), indent=2))
            return
        click.echo(f"Job: {job.id} (v{job.version})")
        click.echo(f"  Status: {job.status}")
        click.echo(f"  Queue: {job.queue_type} #{job.order_in_queue}")
        click.echo(f"  Repos: {', '.join(job.repos) or '-'}")
        for link in job.pr_links:
            click.echo(f"  PR: {link}")
        if job.error:
            click.echo(f"  Error: {job.error}")


@job_group.command("move")
@click.argument("job_id")
@click.argument("queue_type", type=click.Choice(["backlog", "rework"]))
@click.option("--org", required=True, help="Organisation ID")
def job_move(job_id, queue_type, org):
    """Move a job to another queue."""
    with _get_db() as db:
        job = jobs_mod.move_job_to_queue(db, job_id, org, queue_type)
        if not job:
            click.echo(f"Job not found: {job_id}", err=True)
            sys.exit(1)
        click.echo(f"Job {job.id} now in {job.queue_type} #{job.order_in_queue}")


@job_group.command("requeue")
@click.argument("job_id")
@click.option("--org", required=True, help="Organisation ID")
def job_requeue(job_id, org):
    """Send a finished job back for another pass on the rework queue."""
    with _get_db() as db:
        job = jobs_mod.requeue_job(db, job_id, org)
        if not job:
            click.echo(f"Job not found: {job_id}", err=True)
            sys.exit(1)
        click.echo(f"Requeued job {job.id} as v{job.version} (rework #{job.order_in_queue})")


@job_group.command("list")
@click.option("--org", required=True, help="Organisation ID")
@click.option("--status", default=None, help="Filter by status")
def job_list(org, status):
    """List jobs in queue order."""
    with _get_db() as db:
        jobs = jobs_mod.list_jobs(db, org, status=status)
    if not jobs:
        click.echo("No jobs found.")
        return
    for j in jobs:
        prompt = j.prompt if len(j.prompt) <= 60 else j.prompt[:57] + "..."
        click.echo(f"  {j.id} [{j.status}] {j.queue_type} #{j.order_in_queue}  {prompt}")


@main.command("queue")
@click.argument("action", type=click.Choice(["pause", "resume"]))
@click.argument("queue_type", type=click.Choice(["backlog", "rework"]))
@click.option("--org", required=True, help="Organisation ID")
def queue_command(action, queue_type, org):
    """Pause or resume a queue."""
    with _get_db() as db:
        jobs_mod.set_queue_paused(db, org, queue_type, action == "pause")
        click.echo(f"{queue_type} queue {'paused' if action == 'pause' else 'resumed'} for {org}")


# ── Configuration Commands ────────────────────────────────────────────────────


@main.command("repo")
@click.argument("repo_id")
@click.option("--org", required=True, help="Organisation ID")
@click.option("--name", default=None, help="Worktree folder name")
@click.option("--url", default=None, help="Clone URL")
@click.option("--branch", default="main", help="Base branch")
@click.option("--setup", default="", help="Setup commands, ';' separated")
@click.option("--build", default="", help="Build commands, ';' separated")
@click.option("--test", default="", help="Test commands, ';' separated")
def repo_command(repo_id, org, name, url, branch, setup, build, test):
    """Add or update a repository configuration."""
    repo = RepoRef(
        repo_id=repo_id,
        name=name or repo_id.rstrip("/").split("/")[-1],
        url=url,
        branch=branch,
        setup_commands=split_commands(setup),
        build_commands=split_commands(build),
        test_commands=split_commands(test),
        is_confirmed=True,
    )
    with _get_db() as db:
        saved = repos_mod.upsert_repo_config(db, org, repo)
        click.echo(f"Saved repo {saved.repo_id} ({saved.name}, branch {saved.branch})")


@main.command("credentials")
@click.argument("kind", type=click.Choice(["git", "coder"]))
@click.option("--org", required=True, help="Organisation ID")
@click.option("--token", default=None, help="Git token")
@click.option("--username", default=None, help="Git username")
@click.option(
    "--type", "coder_type", default=lambda: get_config().coder_type, type=click.Choice(["cursor", "claude"])
)
@click.option("--executable", default=None, help="Code generator executable path")
@click.option("--api-key", default=None, help="Code generator API key")
def credentials_command(kind, org, token, username, coder_type, executable, api_key):
    """Store git or code generator credentials for an org."""
    if kind == "git":
        data = {"token": token, "username": username}
    else:
        data = {"type": coder_type, "executable_path": executable, "api_key": api_key}
    with _get_db() as db:
        credentials_mod.store_credentials(db, org, kind, data)
    click.echo(f"Stored {kind} credentials for {org}")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _job_dict(job) -> dict:
    return {
        "id": job.id,
        "org_id": job.org_id,
        "version": job.version,
        "status": job.status,
        "queue_type": job.queue_type,
        "order_in_queue": job.order_in_queue,
        "prompt": job.prompt,
        "repos": job.repos,
        "pr_links": job.pr_links,
        "error": job.error,
        "agent_id": job.agent_id,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
    }


if __name__ == "__main__":
    main()
