"""Replay-safe activity execution backed by a sqlite journal.

Every activity a workflow performs gets the next sequence number. Its outcome
(result or error) is written to ``workflow_events`` before the workflow moves
on. Running the same workflow id again replays recorded outcomes in order
instead of repeating the calls, so a restarted process resumes where the
previous one stopped.
"""

import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from autopr.errors import (
    FatalWorkflowError,
    PipelineError,
    RemoteError,
    StepFailed,
    TransportError,
)

logger = logging.getLogger(__name__)


class NonDeterministicWorkflow(PipelineError):
    """The journal does not match the activities the workflow is issuing."""


@dataclass
class RetryPolicy:
    initial_interval: float = 1.0
    maximum_interval: float = 30.0
    backoff_coefficient: float = 2.0
    maximum_attempts: int = 3

    def delay(self, attempt: int) -> float:
        """Sleep before retry number attempt (1-based)."""
        return min(
            self.initial_interval * self.backoff_coefficient ** (attempt - 1),
            self.maximum_interval,
        )


@dataclass
class ActivityOptions:
    start_to_close: float = 30 * 60.0
    heartbeat: float = 5 * 60.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)


# ── Error (de)serialisation ───────────────────────────────────────────────────


def error_to_payload(error: Exception) -> dict:
    payload = {"type": type(error).__name__, "message": str(error)}
    if isinstance(error, StepFailed):
        payload.update(step=error.step, errors=error.errors)
    elif isinstance(error, RemoteError):
        payload.update(code=error.code, message=error.message)
    return payload


def error_from_payload(payload: dict) -> Exception:
    kind = payload.get("type")
    if kind == "StepFailed":
        return StepFailed(payload.get("step", ""), payload.get("errors") or [])
    if kind == "TransportError":
        return TransportError(payload.get("code", "unavailable"), payload.get("message", ""))
    if kind == "RemoteError":
        return RemoteError(payload.get("code", "unknown"), payload.get("message", ""))
    if kind == "FatalWorkflowError":
        return FatalWorkflowError(payload.get("message", ""))
    return PipelineError(payload.get("message", ""))


# ── Journal ───────────────────────────────────────────────────────────────────


@dataclass
class JournalEntry:
    seq: int
    activity: str
    outcome: str
    payload: Any


class Journal:
    def __init__(self, db: sqlite3.Connection):
        self.db = db

    def load(self, workflow_id: str) -> dict[int, JournalEntry]:
        rows = self.db.execute(
            "SELECT seq, activity, outcome, payload FROM workflow_events WHERE workflow_id = ? ORDER BY seq",
            (workflow_id,),
        ).fetchall()
        return {
            r["seq"]: JournalEntry(
                seq=r["seq"],
                activity=r["activity"],
                outcome=r["outcome"],
                payload=json.loads(r["payload"]) if r["payload"] is not None else None,
            )
            for r in rows
        }

    def record(self, workflow_id: str, seq: int, activity: str, outcome: str, payload: Any) -> None:
        self.db.execute(
            """INSERT INTO workflow_events (workflow_id, seq, activity, outcome, payload)
               VALUES (?, ?, ?, ?, ?)""",
            (workflow_id, seq, activity, outcome, json.dumps(payload)),
        )
        self.db.commit()


# ── Context ───────────────────────────────────────────────────────────────────


class WorkflowContext:
    """Issues activities for one workflow run, replaying the journal first."""

    def __init__(
        self,
        workflow_id: str,
        journal: Journal,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.workflow_id = workflow_id
        self.journal = journal
        self.sleep = sleep
        self._history = journal.load(workflow_id)
        self._seq = 0

    def call(
        self,
        activity: str,
        fn: Callable[..., Any],
        *args,
        retry: RetryPolicy | None = None,
        sensitive: bool = False,
        **kwargs,
    ) -> Any:
        """Run fn as the next activity and return its JSON-serialisable result.

        Only TransportError is retried. Results of sensitive activities are
        not written to the journal; on replay such an activity runs again.
        """
        self._seq += 1
        seq = self._seq
        recorded = self._history.get(seq)
        if recorded is not None:
            if recorded.activity != activity:
                raise NonDeterministicWorkflow(
                    f"Workflow {self.workflow_id} step {seq}: journal has "
                    f"'{recorded.activity}', workflow issued '{activity}'"
                )
            if recorded.outcome == "error":
                raise error_from_payload(recorded.payload)
            if not sensitive:
                logger.debug("Replaying %s #%d for %s", activity, seq, self.workflow_id)
                return recorded.payload
            return fn(*args, **kwargs)

        policy = retry or RetryPolicy()
        attempt = 1
        while True:
            try:
                result = fn(*args, **kwargs)
            except TransportError as e:
                if attempt >= policy.maximum_attempts:
                    self.journal.record(self.workflow_id, seq, activity, "error", error_to_payload(e))
                    raise
                delay = policy.delay(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    activity, attempt, policy.maximum_attempts, delay, e,
                )
                self.sleep(delay)
                attempt += 1
                continue
            except Exception as e:
                self.journal.record(self.workflow_id, seq, activity, "error", error_to_payload(e))
                raise
            self.journal.record(
                self.workflow_id, seq, activity, "ok", None if sensitive else result
            )
            return result
