"""HTTP client the control plane uses to drive an executor agent."""

import json
import logging
import time
from typing import Callable

import httpx

from autopr.db.models import LogEvent
from autopr.errors import RemoteError, StepFailed, TransportError
from autopr.orchestrator.durable import ActivityOptions

logger = logging.getLogger(__name__)

EventCallback = Callable[[LogEvent], None]


def _remote_error(response: httpx.Response) -> RemoteError:
    try:
        body = response.json()
        code, message = body.get("code", "unknown"), body.get("message", response.text)
    except ValueError:
        code, message = "unknown", response.text
    if response.status_code in (502, 503, 504):
        return TransportError(code or "unavailable", message)
    return RemoteError(code, message)


class AgentClient:
    """Calls one agent's step, pull request, cleanup and health endpoints.

    Connection failures, read timeouts (no frame within the heartbeat window)
    and the overall deadline surface as TransportError, which the workflow
    retries. A step that ran and failed raises StepFailed.
    """

    def __init__(
        self,
        base_url: str | None = None,
        http_client: httpx.Client | None = None,
        options: ActivityOptions | None = None,
    ):
        if http_client is None and base_url is None:
            raise ValueError("AgentClient needs a base_url or an http_client")
        self.options = options or ActivityOptions()
        self._owns_client = http_client is None
        self.http = http_client or httpx.Client(base_url=base_url)

    @classmethod
    def for_agent(cls, host: str, port: int, options: ActivityOptions | None = None) -> "AgentClient":
        return cls(base_url=f"http://{host}:{port}", options=options)

    def close(self):
        if self._owns_client:
            self.http.close()

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.options.heartbeat, connect=10.0)

    def _post(self, path: str, payload: dict) -> dict:
        try:
            response = self.http.post(path, json=payload, timeout=self._timeout())
        except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as e:
            raise TransportError("unavailable", f"POST {path} failed: {e}") from e
        if response.status_code >= 400:
            raise _remote_error(response)
        return response.json()

    def run_step(
        self,
        job_id: str,
        step: str,
        repos: list[dict],
        git_credentials: dict | None = None,
        coder_credentials: dict | None = None,
        prompt: str = "",
        on_event: EventCallback | None = None,
    ) -> dict:
        """Run a step remotely, forwarding every streamed event to on_event."""
        payload = {
            "job_id": job_id,
            "repos": repos,
            "git_credentials": git_credentials or {},
            "coder_credentials": coder_credentials or {},
            "prompt": prompt,
        }
        deadline = time.monotonic() + self.options.start_to_close
        try:
            with self.http.stream(
                "POST", f"/steps/{step}", json=payload, timeout=self._timeout()
            ) as response:
                if response.status_code >= 400:
                    response.read()
                    raise _remote_error(response)
                for line in response.iter_lines():
                    if time.monotonic() > deadline:
                        raise TransportError(
                            "deadline_exceeded",
                            f"{step} step exceeded {self.options.start_to_close:.0f}s",
                        )
                    if not line.strip():
                        continue
                    result = self._handle_frame(step, line, on_event)
                    if result is not None:
                        return result
        except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as e:
            raise TransportError("unavailable", f"{step} step stream failed: {e}") from e

        raise TransportError("unavailable", f"{step} step stream ended without a result")

    def _handle_frame(self, step: str, line: str, on_event: EventCallback | None) -> dict | None:
        try:
            frame = json.loads(line)
        except ValueError:
            logger.debug("Ignoring malformed frame: %r", line)
            return None
        kind = frame.get("type")
        if kind == "log":
            if on_event:
                on_event(LogEvent.from_dict(frame.get("event") or {}))
            return None
        if kind == "result":
            if frame.get("success"):
                return {"success": True, "errors": []}
            raise StepFailed(step, frame.get("errors") or [])
        if kind == "error":
            raise RemoteError(frame.get("code", "internal"), frame.get("message", ""))
        return None

    def create_pr(
        self,
        job_id: str,
        repo: dict,
        git_credentials: dict | None,
        title: str,
        summary: str,
        verification_errors: list[str],
    ) -> str:
        body = self._post(
            "/pull-requests",
            {
                "job_id": job_id,
                "repo": repo,
                "git_credentials": git_credentials or {},
                "title": title,
                "summary": summary,
                "verification_errors": verification_errors,
            },
        )
        return body["pr_link"]

    def cleanup(self, job_id: str) -> dict:
        return self._post("/cleanup", {"job_id": job_id})

    def health(self) -> dict:
        try:
            response = self.http.get("/health", timeout=10.0)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise TransportError("unavailable", f"health check failed: {e}") from e
        if response.status_code >= 400:
            raise _remote_error(response)
        return response.json()
