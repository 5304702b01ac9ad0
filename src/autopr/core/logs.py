"""Job log persistence and in-process fan-out of live log events."""

import logging
import threading
from collections import defaultdict
from pathlib import Path
from typing import Callable

from autopr.db.engine import init_db
from autopr.db.models import LogEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[LogEvent], None]


class LogSink:
    """Appends log events to the job_logs table.

    The connection is shared between the workflow threads, so writes are
    serialised with a lock.
    """

    def __init__(self, db_path: Path):
        self._db = init_db(db_path, check_same_thread=False)
        self._lock = threading.Lock()

    def append(self, event: LogEvent, org_id: str = "", job_version: int = 1) -> None:
        with self._lock:
            self._db.execute(
                """INSERT INTO job_logs (job_id, job_version, org_id, level, stage, message, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    event.job_id, job_version, org_id, event.level,
                    event.stage, event.message, event.timestamp,
                ),
            )
            self._db.commit()

    def list_logs(self, job_id: str, job_version: int | None = None) -> list[LogEvent]:
        query = "SELECT * FROM job_logs WHERE job_id = ?"
        params: list = [job_id]
        if job_version is not None:
            query += " AND job_version = ?"
            params.append(job_version)
        query += " ORDER BY id"
        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [
            LogEvent(
                level=r["level"],
                message=r["message"],
                job_id=r["job_id"],
                stage=r["stage"],
                timestamp=r["timestamp"],
            )
            for r in rows
        ]

    def close(self):
        with self._lock:
            self._db.close()


class Broadcast:
    """Publishes live log events to per-job subscribers."""

    def __init__(self):
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, job_id: str, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for a job's events. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers[job_id].append(callback)

        def unsubscribe():
            with self._lock:
                subs = self._subscribers.get(job_id, [])
                if callback in subs:
                    subs.remove(callback)
                if not subs:
                    self._subscribers.pop(job_id, None)

        return unsubscribe

    def publish(self, event: LogEvent) -> None:
        with self._lock:
            subs = list(self._subscribers.get(event.job_id, []))
        for callback in subs:
            try:
                callback(event)
            except Exception:
                logger.debug("Dropping log event for a failed subscriber", exc_info=True)


class JobLog:
    """Sends a job's events to both the sink and the broadcast."""

    def __init__(
        self,
        job_id: str,
        org_id: str = "",
        job_version: int = 1,
        sink: LogSink | None = None,
        broadcast: Broadcast | None = None,
    ):
        self.job_id = job_id
        self.org_id = org_id
        self.job_version = job_version
        self.sink = sink
        self.broadcast = broadcast

    def emit(self, event: LogEvent) -> None:
        if self.sink:
            try:
                self.sink.append(event, self.org_id, self.job_version)
            except Exception:
                logger.exception("Failed to persist log event for job %s", self.job_id)
        if self.broadcast:
            self.broadcast.publish(event)

    def log(self, level: str, message: str, stage: str = "workflow") -> LogEvent:
        event = LogEvent(level=level, message=message, job_id=self.job_id, stage=stage)
        self.emit(event)
        return event
