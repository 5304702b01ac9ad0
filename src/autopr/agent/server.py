"""HTTP surface of the executor agent.

``POST /steps/{step}`` streams NDJSON frames: ``log`` frames carrying a
LogEvent, ``heartbeat`` frames while the step is silent, then exactly one
``result`` or ``error`` frame. The other routes are unary JSON calls; their
errors are a single ``{code, message}`` body.
"""

import json
import logging
import queue
import threading
from typing import Iterator

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from autopr.agent.cleanup import WorkspaceCleaner
from autopr.agent.executor import StepExecutor
from autopr.agent.pull_requests import PullRequestCreator, PullRequestError
from autopr.agent.workspace import WorktreeManager
from autopr.config import Config, get_config
from autopr.db.models import CoderCredentials, GitCredentials, LogEvent, RepoRef, Step
from autopr.errors import GitError, StepFailed

logger = logging.getLogger(__name__)

NDJSON = "application/x-ndjson"
_DONE = object()


def _error(code: str, message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"code": code, "message": message}, status_code=status_code)


def _frame(payload: dict) -> str:
    return json.dumps(payload) + "\n"


def stream_frames(events: Iterator[LogEvent], heartbeat_interval: float = 15.0) -> Iterator[str]:
    """Run the step in a worker thread and turn its events into NDJSON frames.

    Closing the returned iterator (the client went away) stops the worker at
    its next event and closes the step, which tears down any running command.
    """
    outbox: queue.Queue = queue.Queue(maxsize=1000)
    stopped = threading.Event()

    def put(item) -> bool:
        while not stopped.is_set():
            try:
                outbox.put(item, timeout=0.5)
                return True
            except queue.Full:
                continue
        return False

    def produce():
        try:
            for event in events:
                if not put(("log", event)):
                    break
            else:
                put(("result", None))
        except StepFailed as e:
            put(("failed", e))
        except Exception as e:
            logger.exception("Step raised unexpectedly")
            put(("error", e))
        finally:
            if stopped.is_set():
                logger.info("Stream closed by the client, stopping step")
                close = getattr(events, "close", None)
                if close is not None:
                    close()
            put((_DONE, None))

    threading.Thread(target=produce, name="step-runner", daemon=True).start()

    try:
        while True:
            try:
                kind, value = outbox.get(timeout=heartbeat_interval)
            except queue.Empty:
                yield _frame({"type": "heartbeat"})
                continue
            if kind is _DONE:
                return
            if kind == "log":
                yield _frame({"type": "log", "event": value.to_dict()})
            elif kind == "result":
                yield _frame({"type": "result", "success": True, "errors": []})
            elif kind == "failed":
                yield _frame({"type": "result", "success": False, "errors": value.errors})
            else:
                yield _frame({"type": "error", "code": "internal", "message": str(value)})
    finally:
        stopped.set()


# ── Handlers ──────────────────────────────────────────────────────────────────


async def run_step(request: Request):
    try:
        step = Step(request.path_params["step"])
    except ValueError:
        return _error("invalid_argument", f"Unknown step: {request.path_params['step']}", 400)
    try:
        payload = await request.json()
        job_id = payload["job_id"]
        repos = [RepoRef.from_dict(r) for r in payload.get("repos") or []]
    except (ValueError, KeyError, TypeError) as e:
        return _error("invalid_argument", f"Malformed step request: {e}", 400)

    executor: StepExecutor = request.app.state.executor
    events = executor.run_step(
        job_id,
        step,
        repos,
        GitCredentials.from_dict(payload.get("git_credentials")),
        CoderCredentials.from_dict(payload.get("coder_credentials")),
        payload.get("prompt") or "",
    )
    logger.info("Running %s for job %s on %d repo(s)", step.value, job_id, len(repos))
    return StreamingResponse(
        stream_frames(events, request.app.state.heartbeat_interval), media_type=NDJSON
    )


async def create_pull_request(request: Request):
    try:
        payload = await request.json()
        job_id = payload["job_id"]
        repo = RepoRef.from_dict(payload["repo"])
    except (ValueError, KeyError, TypeError) as e:
        return _error("invalid_argument", f"Malformed pull request: {e}", 400)

    creator: PullRequestCreator = request.app.state.pr_creator
    try:
        link = await run_in_threadpool(
            creator.create_pr,
            job_id,
            repo,
            GitCredentials.from_dict(payload.get("git_credentials")),
            payload.get("title") or f"autopr: job {job_id}",
            payload.get("summary") or "",
            payload.get("verification_errors") or [],
        )
    except PullRequestError as e:
        return _error("pr_failed", str(e), 422)
    except GitError as e:
        return _error("git_error", str(e), 500)
    return JSONResponse({"pr_link": link})


async def cleanup_workspace(request: Request):
    try:
        payload = await request.json()
        job_id = payload["job_id"]
    except (ValueError, KeyError, TypeError) as e:
        return _error("invalid_argument", f"Malformed cleanup request: {e}", 400)
    cleaner: WorkspaceCleaner = request.app.state.cleaner
    result = await run_in_threadpool(cleaner.cleanup, job_id)
    return JSONResponse(result.to_dict())


async def health(request: Request):
    return JSONResponse({"status": "ok", "agent_id": request.app.state.agent_id})


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(
    config: Config | None = None,
    executor: StepExecutor | None = None,
    cleaner: WorkspaceCleaner | None = None,
    pr_creator: PullRequestCreator | None = None,
    heartbeat_interval: float = 15.0,
) -> Starlette:
    config = config or get_config()
    worktrees = WorktreeManager(config.workspace_root)

    routes = [
        Route("/steps/{step}", run_step, methods=["POST"]),
        Route("/pull-requests", create_pull_request, methods=["POST"]),
        Route("/cleanup", cleanup_workspace, methods=["POST"]),
        Route("/health", health),
    ]
    app = Starlette(routes=routes)
    app.state.agent_id = config.agent_id
    app.state.heartbeat_interval = heartbeat_interval
    app.state.executor = executor or StepExecutor(
        worktrees, config.startup_timeout, config.overall_timeout, config.coder_executable
    )
    app.state.cleaner = cleaner or WorkspaceCleaner(worktrees, config.cleanup_kill_list)
    app.state.pr_creator = pr_creator or PullRequestCreator(worktrees, config.github_api_url)
    return app


def run_server(config: Config | None = None):
    config = config or get_config()
    app = create_app(config)
    uvicorn.run(app, host=config.agent_host, port=config.agent_port)
