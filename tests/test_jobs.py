"""Tests for job queues, agents, repo configs, credentials and job logs."""

import tempfile
from datetime import timedelta
from pathlib import Path

import pytest

from autopr.core import agents as agents_mod
from autopr.core import credentials as credentials_mod
from autopr.core import jobs as jobs_mod
from autopr.core import repos as repos_mod
from autopr.core.logs import Broadcast, JobLog, LogSink
from autopr.db.engine import init_db
from autopr.db.models import RepoRef


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"


@pytest.fixture
def db(db_path):
    conn = init_db(db_path)
    yield conn
    conn.close()


class TestJobs:
    def test_create_appends_to_queue(self, db):
        first = jobs_mod.create_job(db, "j1", "org", "First")
        second = jobs_mod.create_job(db, "j2", "org", "Second", ["acme/widgets"])
        assert first.order_in_queue == 0
        assert second.order_in_queue == 1
        assert second.repos == ["acme/widgets"]
        assert second.status == "queued"
        assert second.version == 1

    def test_details_scoped_to_org(self, db):
        jobs_mod.create_job(db, "j1", "org", "Task")
        assert jobs_mod.get_job_details(db, "j1", "org") is not None
        assert jobs_mod.get_job_details(db, "j1", "other") is None

    def test_invalid_status(self, db):
        jobs_mod.create_job(db, "j1", "org", "Task")
        with pytest.raises(ValueError, match="Invalid job status"):
            jobs_mod.update_job_status(db, "j1", "org", "done")

    def test_update_status_and_links(self, db):
        jobs_mod.create_job(db, "j1", "org", "Task")
        jobs_mod.update_job_status(db, "j1", "org", "completed", pr_link="https://x/pull/1")
        job = jobs_mod.add_pr_links(db, "j1", "org", ["https://x/pull/1", "https://x/pull/2"])
        assert job.status == "completed"
        assert job.pr_links == ["https://x/pull/1", "https://x/pull/2"]

    def test_update_status_records_error(self, db):
        jobs_mod.create_job(db, "j1", "org", "Task")
        job = jobs_mod.update_job_status(db, "j1", "org", "failed", error="Checkout failed")
        assert job.error == "Checkout failed"


class TestClaim:
    def test_rework_before_backlog(self, db):
        jobs_mod.create_job(db, "backlog-1", "org", "B")
        jobs_mod.create_job(db, "rework-1", "org", "R", queue_type="rework")

        job = jobs_mod.claim_next_job(db, "org", "agent-1")
        assert job.id == "rework-1"
        assert job.status == "in-progress"
        assert job.agent_id == "agent-1"

    def test_one_job_in_progress_per_org(self, db):
        jobs_mod.create_job(db, "j1", "org", "A")
        jobs_mod.create_job(db, "j2", "org", "B")
        jobs_mod.create_job(db, "k1", "other", "C")

        assert jobs_mod.claim_next_job(db, "org").id == "j1"
        assert jobs_mod.claim_next_job(db, "org") is None
        assert jobs_mod.claim_next_job(db, "other").id == "k1"

        jobs_mod.update_job_status(db, "j1", "org", "completed")
        assert jobs_mod.claim_next_job(db, "org").id == "j2"

    def test_paused_queue_is_skipped(self, db):
        jobs_mod.create_job(db, "r1", "org", "R", queue_type="rework")
        jobs_mod.create_job(db, "b1", "org", "B")
        jobs_mod.set_queue_paused(db, "org", "rework", True)

        assert jobs_mod.is_queue_paused(db, "org", "rework")
        assert jobs_mod.claim_next_job(db, "org").id == "b1"

    def test_all_paused(self, db):
        jobs_mod.create_job(db, "b1", "org", "B")
        jobs_mod.set_queue_paused(db, "org", "backlog", True)
        assert jobs_mod.claim_next_job(db, "org") is None

        jobs_mod.set_queue_paused(db, "org", "backlog", False)
        assert jobs_mod.claim_next_job(db, "org").id == "b1"

    def test_queue_order(self, db):
        for i in range(3):
            jobs_mod.create_job(db, f"b{i}", "org", "B")
        claimed = []
        for _ in range(3):
            job = jobs_mod.claim_next_job(db, "org")
            claimed.append(job.id)
            jobs_mod.update_job_status(db, job.id, "org", "completed")
        assert claimed == ["b0", "b1", "b2"]


class TestMoves:
    def test_move_job_to_queue(self, db):
        jobs_mod.create_job(db, "r1", "org", "R", queue_type="rework")
        jobs_mod.create_job(db, "b1", "org", "B")

        moved = jobs_mod.move_job_to_queue(db, "b1", "org", "rework")
        assert moved.queue_type == "rework"
        assert moved.order_in_queue == 1
        assert moved.status == "queued"

    def test_move_unknown_job(self, db):
        assert jobs_mod.move_job_to_queue(db, "nope", "org", "rework") is None

    def test_move_invalid_queue(self, db):
        jobs_mod.create_job(db, "b1", "org", "B")
        with pytest.raises(ValueError, match="Invalid queue type"):
            jobs_mod.move_job_to_queue(db, "b1", "org", "later")

    def test_requeue_bumps_version(self, db):
        jobs_mod.create_job(db, "b1", "org", "B")
        jobs_mod.update_job_status(db, "b1", "org", "failed", error="boom")

        job = jobs_mod.requeue_job(db, "b1", "org")
        assert job.version == 2
        assert job.status == "queued"
        assert job.queue_type == "rework"
        assert job.error is None

    def test_detect_stuck_jobs(self, db):
        jobs_mod.create_job(db, "old", "org", "A")
        jobs_mod.create_job(db, "live", "other", "B")
        jobs_mod.claim_next_job(db, "org")
        jobs_mod.claim_next_job(db, "other")
        db.execute("UPDATE jobs SET updated_at = datetime('now', '-3 hours')")
        db.commit()

        assert jobs_mod.detect_stuck_jobs(db, "org", set()) == ["old"]
        assert jobs_mod.get_job(db, "old").status == "failed"
        assert jobs_mod.detect_stuck_jobs(db, "other", {"live"}) == []
        assert jobs_mod.detect_stuck_jobs(db, "other", set(), max_age=timedelta(hours=4)) == []

    def test_stuck_cutoff_uses_database_clock(self, db):
        jobs_mod.create_job(db, "fresh", "org", "A")
        jobs_mod.create_job(db, "stale", "org", "B")
        db.execute("UPDATE jobs SET status = 'in-progress', updated_at = datetime('now')")
        db.execute("UPDATE jobs SET updated_at = datetime('now', '-45 minutes') WHERE id = 'stale'")
        db.commit()

        assert jobs_mod.detect_stuck_jobs(db, "org", set(), max_age=timedelta(minutes=30)) == ["stale"]
        assert jobs_mod.get_job(db, "fresh").status == "in-progress"


class TestAgents:
    def test_register_is_upsert(self, db):
        agents_mod.register_agent(db, "a1", "org", "localhost", 50051)
        agent = agents_mod.register_agent(db, "a1", "org", "10.0.0.2", 50052, "box")
        assert agent.host == "10.0.0.2"
        assert agent.port == 50052
        assert agent.status == "active"
        assert agent.last_active is not None
        assert len(agents_mod.list_agents(db)) == 1

    def test_three_failures_mark_offline(self, db):
        agents_mod.register_agent(db, "a1", "org", "localhost", 50051)
        for _ in range(2):
            agent = agents_mod.record_health_result(db, "a1", False)
        assert agent.status == "active"
        assert agent.consecutive_failures == 2

        agent = agents_mod.record_health_result(db, "a1", False)
        assert agent.status == "offline"
        assert agents_mod.list_schedulable_agents(db) == []

    def test_success_resets_and_reactivates(self, db):
        agents_mod.register_agent(db, "a1", "org", "localhost", 50051)
        for _ in range(3):
            agents_mod.record_health_result(db, "a1", False)
        agent = agents_mod.record_health_result(db, "a1", True)
        assert agent.status == "active"
        assert agent.consecutive_failures == 0

    def test_touch_agent(self, db):
        agents_mod.register_agent(db, "a1", "org", "localhost", 50051)
        agents_mod.touch_agent(db, "a1", ts=1234.5)
        assert agents_mod.get_last_active(db, "a1") == 1234.5
        assert agents_mod.get_last_active(db, "missing") is None

    def test_invalid_status(self, db):
        agents_mod.register_agent(db, "a1", "org", "localhost", 50051)
        with pytest.raises(ValueError, match="Invalid agent status"):
            agents_mod.set_agent_status(db, "a1", "busy")


class TestReposAndCredentials:
    def test_repo_configs_keep_order(self, db):
        repos_mod.upsert_repo_config(db, "org", RepoRef(repo_id="acme/a", name="a"))
        repos_mod.upsert_repo_config(db, "org", RepoRef(repo_id="acme/b", name="b", setup_commands=["make"]))

        configs = repos_mod.get_repo_configs(db, "org", ["acme/b", "acme/missing", "acme/a"])
        assert [c.repo_id for c in configs] == ["acme/b", "acme/a"]
        assert configs[0].setup_commands == ["make"]

    def test_scoped_credentials_win(self, db):
        credentials_mod.store_credentials(db, "org", "git", {"token": "org-wide"})
        credentials_mod.store_credentials(db, "org", "git", {"token": "for-j1"}, scope="j1")

        assert credentials_mod.get_git_credentials(db, "org").token == "org-wide"
        assert credentials_mod.get_git_credentials(db, "org", "j1").token == "for-j1"
        assert credentials_mod.get_git_credentials(db, "org", "j2").token == "org-wide"

    def test_missing_credentials(self, db):
        with pytest.raises(credentials_mod.CredentialsNotFound):
            credentials_mod.get_coder_credentials(db, "org")


class TestLogs:
    def test_job_log_persists_and_broadcasts(self, db_path):
        sink = LogSink(db_path)
        broadcast = Broadcast()
        received = []
        unsubscribe = broadcast.subscribe("j1", received.append)
        try:
            log = JobLog("j1", "org", job_version=2, sink=sink, broadcast=broadcast)
            log.log("info", "hello")
            unsubscribe()
            log.log("warn", "after unsubscribe")

            assert [e.message for e in received] == ["hello"]
            assert [e.message for e in sink.list_logs("j1")] == ["hello", "after unsubscribe"]
            assert sink.list_logs("j1", job_version=1) == []
        finally:
            sink.close()

    def test_failing_subscriber_does_not_block_others(self):
        broadcast = Broadcast()
        received = []

        def broken(event):
            raise RuntimeError("gone")

        broadcast.subscribe("j1", broken)
        broadcast.subscribe("j1", received.append)
        JobLog("j1", broadcast=broadcast).log("info", "hi")
        assert len(received) == 1
