"""Tests for the control plane server and its monitors."""

import tempfile
import threading
import time
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from autopr.config import Config
from autopr.core import agents as agents_mod
from autopr.core import jobs as jobs_mod
from autopr.db.engine import init_db
from autopr.db.models import LogEvent
from autopr.orchestrator.app import create_app
from autopr.orchestrator.channels import HEALTH_CHECK_PING, ChannelRegistry
from autopr.orchestrator.monitor import HealthMonitor, QueueMonitor


@pytest.fixture
def config():
    with tempfile.TemporaryDirectory() as tmp:
        yield Config(db_path=Path(tmp) / "test.db", workspace_root=Path(tmp) / "ws")


@pytest.fixture
def db(config):
    conn = init_db(config.db_path)
    yield conn
    conn.close()


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


class TestControlPlaneApp:
    def test_health(self, config):
        app = create_app(config, start_monitors=False)
        with TestClient(app) as client:
            resp = client.get("/health")
            assert resp.status_code == 200
            assert resp.json() == {"status": "ok", "active_jobs": []}

    def test_agent_channel_registers_and_touches(self, config, db):
        agents_mod.register_agent(db, "a1", "org", "localhost", 50051)
        agents_mod.touch_agent(db, "a1", ts=1.0)

        app = create_app(config, start_monitors=False)
        plane = app.state.plane
        with TestClient(app) as client:
            with client.websocket_connect("/agents/a1/channel") as ws:
                assert wait_for(lambda: plane.registry.has("a1"))

                assert plane.registry.send("a1", {"type": HEALTH_CHECK_PING, "timestamp": 5.0})
                assert ws.receive_json() == {"type": HEALTH_CHECK_PING, "timestamp": 5.0}

                ws.send_json({"type": "heartbeat", "agent_id": "a1"})
                assert wait_for(lambda: (agents_mod.get_last_active(db, "a1") or 0) > 1.0)
            assert wait_for(lambda: not plane.registry.has("a1"))

    def test_job_logs_replay_then_follow(self, config):
        app = create_app(config, start_monitors=False)
        plane = app.state.plane
        plane.sink.append(LogEvent(level="info", message="stored", job_id="j1", stage="workflow"))

        with TestClient(app) as client:
            with client.websocket_connect("/jobs/j1/logs") as ws:
                assert ws.receive_json()["message"] == "stored"
                plane.broadcast.publish(
                    LogEvent(level="success", message="live", job_id="j1", stage="workflow")
                )
                event = ws.receive_json()
                assert event["message"] == "live"
                assert event["level"] == "success"


class TestQueueMonitor:
    def test_claims_and_runs_job(self, config, db):
        agents_mod.register_agent(db, "a1", "org", "localhost", 50051)
        jobs_mod.create_job(db, "j1", "org", "Task")
        ran = []

        monitor = QueueMonitor(config.db_path, lambda agent, job: ran.append((agent.id, job.id)))
        monitor.tick()
        monitor.join(timeout=5)

        assert ran == [("a1", "j1")]
        assert jobs_mod.get_job(db, "j1").status == "in-progress"
        assert monitor.active_job_ids == set()

    def test_busy_agent_gets_nothing(self, config, db):
        agents_mod.register_agent(db, "a1", "org", "localhost", 50051)
        jobs_mod.create_job(db, "j1", "org", "Task")
        jobs_mod.create_job(db, "k1", "other", "Task")
        release = threading.Event()
        ran = []

        def run_workflow(agent, job):
            ran.append(job.id)
            release.wait(5)

        monitor = QueueMonitor(config.db_path, run_workflow)
        try:
            monitor.tick()
            assert wait_for(lambda: ran == ["j1"])
            assert monitor.active_job_ids == {"j1"}
            monitor.tick()
            assert ran == ["j1"]
        finally:
            release.set()
            monitor.join(timeout=5)

    def test_offline_agents_are_skipped(self, config, db):
        agents_mod.register_agent(db, "a1", "org", "localhost", 50051)
        agents_mod.set_agent_status(db, "a1", "offline")
        jobs_mod.create_job(db, "j1", "org", "Task")
        ran = []

        monitor = QueueMonitor(config.db_path, lambda agent, job: ran.append(job.id))
        monitor.tick()
        monitor.join(timeout=5)
        assert ran == []
        assert jobs_mod.get_job(db, "j1").status == "queued"


class TestHealthMonitor:
    def test_unreachable_agent_goes_offline(self, config, db):
        agents_mod.register_agent(db, "a1", "org", "localhost", 50051)
        monitor = HealthMonitor(config.db_path, ChannelRegistry(), wait=0.01)

        for _ in range(3):
            monitor.tick()
        agent = agents_mod.get_agent(db, "a1")
        assert agent.status == "offline"
        assert agent.consecutive_failures == 3
