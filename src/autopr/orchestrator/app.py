"""Control plane server: agent channels, live job logs and the background monitors."""

import asyncio
import contextlib
import logging

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from autopr.config import Config, get_config
from autopr.core import agents as agents_mod
from autopr.core.logs import Broadcast, LogSink
from autopr.db.engine import get_db
from autopr.db.models import Agent, Job
from autopr.integrations.slack import make_job_notifier
from autopr.orchestrator.channels import ChannelRegistry, WebSocketChannel
from autopr.orchestrator.client import AgentClient
from autopr.orchestrator.monitor import HealthMonitor, QueueMonitor
from autopr.orchestrator.workflow import JobWorkflow, WorkflowResult

logger = logging.getLogger(__name__)


class ControlPlane:
    """Shared state of the control plane process."""

    def __init__(self, config: Config):
        self.config = config
        self.registry = ChannelRegistry()
        self.broadcast = Broadcast()
        self.sink = LogSink(config.db_path)
        self.notifier = make_job_notifier(config.slack_bot_token, config.slack_channel)
        self.queue_monitor = QueueMonitor(config.db_path, self.run_workflow, config.poll_interval)
        self.health_monitor = HealthMonitor(config.db_path, self.registry, config.health_interval)

    def run_workflow(self, agent: Agent, job: Job) -> WorkflowResult:
        client = AgentClient.for_agent(agent.host, agent.port)
        try:
            workflow = JobWorkflow(
                self.config.db_path,
                client,
                sink=self.sink,
                broadcast=self.broadcast,
                notifier=self.notifier,
            )
            return workflow.run(job.id, job.org_id, workflow_id=f"job-{job.id}-v{job.version}")
        finally:
            client.close()

    def touch_agent(self, agent_id: str) -> None:
        with get_db(self.config.db_path) as db:
            agents_mod.touch_agent(db, agent_id)

    def start(self):
        self.queue_monitor.start()
        self.health_monitor.start()

    def stop(self):
        self.queue_monitor.stop()
        self.health_monitor.stop()


# ── Handlers ──────────────────────────────────────────────────────────────────


async def agent_channel(websocket: WebSocket):
    plane: ControlPlane = websocket.app.state.plane
    agent_id = websocket.path_params["agent_id"]
    await websocket.accept()
    channel = WebSocketChannel(websocket, asyncio.get_running_loop())
    plane.registry.register(agent_id, channel)
    try:
        while True:
            await websocket.receive_text()
            await run_in_threadpool(plane.touch_agent, agent_id)
    except WebSocketDisconnect:
        pass
    finally:
        plane.registry.unregister(agent_id, channel)


async def job_logs(websocket: WebSocket):
    """Send a job's stored log, then follow it live."""
    plane: ControlPlane = websocket.app.state.plane
    job_id = websocket.path_params["job_id"]
    await websocket.accept()

    loop = asyncio.get_running_loop()
    pending: asyncio.Queue = asyncio.Queue()
    unsubscribe = plane.broadcast.subscribe(
        job_id, lambda event: loop.call_soon_threadsafe(pending.put_nowait, event)
    )
    try:
        for event in await run_in_threadpool(plane.sink.list_logs, job_id):
            await websocket.send_json(event.to_dict())
        while True:
            event = await pending.get()
            await websocket.send_json(event.to_dict())
    except (WebSocketDisconnect, RuntimeError):
        pass
    finally:
        unsubscribe()


async def health(request: Request):
    plane: ControlPlane = request.app.state.plane
    return JSONResponse({
        "status": "ok",
        "active_jobs": sorted(plane.queue_monitor.active_job_ids),
    })


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(config: Config | None = None, start_monitors: bool = True) -> Starlette:
    plane = ControlPlane(config or get_config())

    @contextlib.asynccontextmanager
    async def lifespan(app):
        if start_monitors:
            plane.start()
        try:
            yield
        finally:
            if start_monitors:
                plane.stop()

    routes = [
        Route("/health", health),
        WebSocketRoute("/agents/{agent_id}/channel", agent_channel),
        WebSocketRoute("/jobs/{job_id}/logs", job_logs),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.plane = plane
    return app


def run_server(config: Config | None = None, host: str = "127.0.0.1", port: int = 8787):
    app = create_app(config)
    uvicorn.run(app, host=host, port=port)
