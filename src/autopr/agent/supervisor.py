"""Supervision of the code generation CLI (cursor-agent or claude).

The CLI runs non-interactively and reports progress as NDJSON on stdout. Each
line is turned into zero or more LogEvents; file writes and reads are collected
as FileActions and reported in one detail event at the end.
"""

import json
import logging
import os
import subprocess
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Iterator

from autopr.agent.streams import EventPump
from autopr.db.models import CoderCredentials, FileAction, LogEvent
from autopr.errors import CodeGenError

logger = logging.getLogger(__name__)

STAGE = "code-generation"
DETAIL_STAGE = "code-generation-detail"

AUTH_FAILURE_MARKERS = (
    "authentication failed",
    "authentication required",
    "not authenticated",
    "not logged in",
    "please log in",
    "login required",
    "unauthorized",
    "invalid api key",
)

PREVIEW_CHARS = 500

_CODERS = {
    "cursor": {
        "executable": "cursor-agent",
        "args": ["-p", "--force", "--output-format", "stream-json", "--stream-partial-output"],
        "api_key_env": "CURSOR_API_KEY",
    },
    "claude": {
        "executable": "claude",
        "args": [
            "-p", "--output-format", "stream-json", "--verbose",
            "--permission-mode", "acceptEdits",
        ],
        "api_key_env": "ANTHROPIC_API_KEY",
    },
}


@dataclass
class StreamState:
    accumulated_text: str = ""
    last_chunk: str = ""
    tool_count: int = 0
    files: list[FileAction] = field(default_factory=list)


def build_command(credentials: CoderCredentials, prompt: str) -> list[str]:
    coder = _CODERS.get(credentials.type)
    if coder is None:
        raise CodeGenError(f"Unsupported code generator: {credentials.type}")
    executable = credentials.executable_path or coder["executable"]
    return [executable, *coder["args"], prompt]


def build_env(credentials: CoderCredentials) -> dict[str, str]:
    """Process environment; an explicit API key replaces any ambient login."""
    env = dict(os.environ)
    coder = _CODERS.get(credentials.type, _CODERS["cursor"])
    if credentials.api_key:
        env[coder["api_key_env"]] = credentials.api_key
    return env


class CodeGenSupervisor:
    """Runs one code generation process and streams its progress."""

    def __init__(
        self,
        credentials: CoderCredentials,
        startup_timeout: float = 30.0,
        overall_timeout: float = 600.0,
        poll_interval: float = 0.1,
    ):
        self.credentials = credentials
        self.startup_timeout = startup_timeout
        self.overall_timeout = overall_timeout
        self.poll_interval = poll_interval

    def run(self, cwd: Path, prompt: str, job_id: str) -> Iterator[LogEvent]:
        """Run the CLI in cwd. Raises CodeGenError on any failure."""
        cmd = build_command(self.credentials, prompt)
        state = StreamState()
        started = time.monotonic()
        stderr_lines: list[str] = []

        def event(message: str, level: str = "info", stage: str = STAGE) -> LogEvent:
            return LogEvent(level=level, message=message, job_id=job_id, stage=stage)

        yield event(f"Starting {self.credentials.type} code generation")

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                env=build_env(self.credentials),
            )
        except OSError as e:
            raise CodeGenError(f"Failed to start {cmd[0]}: {e}") from e

        # Nothing is ever sent on stdin; some CLIs wait for EOF before starting.
        proc.stdin.close()

        pump = EventPump()
        pump.attach(proc.stdout, "stdout")
        pump.attach(proc.stderr, "stderr")
        saw_stdout = False

        try:
            while not pump.closed:
                elapsed = time.monotonic() - started
                if not saw_stdout and elapsed > self.startup_timeout:
                    self._kill(proc)
                    raise CodeGenError(
                        f"{cmd[0]} produced no output within {self.startup_timeout:.0f}s; "
                        "authentication or startup failed"
                    )
                if elapsed > self.overall_timeout:
                    self._kill(proc)
                    raise CodeGenError(
                        f"{cmd[0]} exceeded the {self.overall_timeout:.0f}s time limit"
                    )

                item = pump.get(timeout=self.poll_interval)
                if item is None or item.line is None:
                    continue

                if item.source == "stderr":
                    stderr_lines.append(item.line)
                    lowered = item.line.lower()
                    if any(marker in lowered for marker in AUTH_FAILURE_MARKERS):
                        self._kill(proc)
                        raise CodeGenError(f"{cmd[0]} authentication failed: {item.line.strip()}")
                    continue

                saw_stdout = True
                yield from self._parse_line(item.line, state, event, started)

            returncode = proc.wait()
        finally:
            if proc.poll() is None:
                self._kill(proc)
            pump.join()

        if returncode != 0:
            detail = "\n".join(stderr_lines[-20:]).strip()
            raise CodeGenError(
                f"{cmd[0]} exited with code {returncode}" + (f": {detail}" if detail else "")
            )

        total = int(time.monotonic() - started)
        touched = {f.path for f in state.files}
        generated = sum(f.lines for f in state.files if f.action == "created")
        yield event(
            f"Completed in {total}s: {state.tool_count} tools, {len(touched)} files touched, "
            f"{generated} lines generated",
            level="success",
        )
        if state.files:
            yield event(
                json.dumps({"logType": "detail", "details": [asdict(f) for f in state.files]}),
                stage=DETAIL_STAGE,
            )

    def _kill(self, proc: subprocess.Popen) -> None:
        try:
            proc.kill()
            proc.wait(timeout=5)
        except (OSError, subprocess.TimeoutExpired):
            logger.warning("Could not reap code generation process %s", proc.pid)

    def _parse_line(self, line: str, state: StreamState, event, started: float) -> Iterator[LogEvent]:
        if not line.strip():
            return
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            yield event(f"Unparsed output: {line.strip()[:200]}", level="debug")
            return
        if not isinstance(data, dict):
            return

        kind = data.get("type")
        if kind == "system":
            if data.get("subtype") == "init" and data.get("model"):
                yield event(f"Using model: {data['model']}")
        elif kind == "assistant":
            yield from self._on_assistant(data, state, event)
        elif kind == "tool_call":
            yield from self._on_tool_call(data, state, event)
        elif kind == "result":
            duration = data.get("duration_ms") or 0
            total = int(time.monotonic() - started)
            yield event(f"Completed in {duration}ms ({total}s total)")
            yield event(
                f"Final stats: {state.tool_count} tools, "
                f"{len(state.accumulated_text)} chars generated"
            )

    def _on_assistant(self, data: dict, state: StreamState, event) -> Iterator[LogEvent]:
        message = data.get("message") or {}
        parts = []
        for content in message.get("content") or []:
            if not isinstance(content, dict):
                continue
            if content.get("text"):
                parts.append(content["text"])
            elif content.get("type") == "tool_use":
                # claude reports tool calls inline in assistant messages
                state.tool_count += 1
                tool_input = content.get("input") or {}
                path = tool_input.get("file_path") or tool_input.get("path")
                name = content.get("name", "")
                if path and name in ("Write", "Edit", "MultiEdit"):
                    body = tool_input.get("content") or tool_input.get("new_string") or ""
                    yield event(f"Tool {state.tool_count} writing {path}")
                    state.files.append(_file_action(path, "created", body))
                elif path and name == "Read":
                    yield event(f"Tool {state.tool_count} reading {path}")
                    state.files.append(FileAction(path=path, action="read"))
                else:
                    yield event(f"Tool {state.tool_count} started ({name or 'unknown'})")
        delta = message.get("delta") or {}
        if delta.get("text"):
            parts.append(delta["text"])

        chunk = "".join(parts)
        if chunk and chunk != state.last_chunk:
            if not state.accumulated_text.endswith(chunk):
                state.accumulated_text += chunk
            state.last_chunk = chunk

    def _on_tool_call(self, data: dict, state: StreamState, event) -> Iterator[LogEvent]:
        call = data.get("tool_call") or {}
        write = call.get("writeToolCall") or {}
        read = call.get("readToolCall") or {}
        subtype = data.get("subtype")

        if subtype == "started":
            state.tool_count += 1
            if (write.get("args") or {}).get("path"):
                yield event(f"Tool {state.tool_count} creating {write['args']['path']}")
            elif (read.get("args") or {}).get("path"):
                yield event(f"Tool {state.tool_count} reading {read['args']['path']}")
            else:
                yield event(f"Tool {state.tool_count} started")
            return

        if subtype != "completed":
            return

        write_ok = (write.get("result") or {}).get("success")
        read_ok = (read.get("result") or {}).get("success")
        if write_ok:
            args = write.get("args") or {}
            lines = write_ok.get("linesCreated") or 0
            size = write_ok.get("fileSize") or 0
            code = "\n\n".join(
                c for c in (
                    args.get("content"),
                    write_ok.get("content"),
                    *[(f or {}).get("content") for f in write_ok.get("files") or []],
                ) if c
            )
            if code and code not in state.accumulated_text:
                state.accumulated_text += code
            state.files.append(
                FileAction(
                    path=args.get("path") or "unknown",
                    action="created",
                    lines=lines,
                    size=size,
                    preview=code[:PREVIEW_CHARS] or None,
                )
            )
            yield event(f"Created {lines} lines ({size} bytes)")
        elif read_ok:
            args = read.get("args") or {}
            lines = read_ok.get("totalLines") or 0
            content = read_ok.get("content") or ""
            state.files.append(
                FileAction(
                    path=args.get("path") or "unknown",
                    action="read",
                    lines=lines,
                    size=len(content),
                    preview=content[:PREVIEW_CHARS] or None,
                )
            )
            yield event(f"Read {lines} lines")
        else:
            yield event("Tool completed")


def _file_action(path: str, action: str, content: str) -> FileAction:
    return FileAction(
        path=path,
        action=action,
        lines=len(content.splitlines()),
        size=len(content.encode()),
        preview=content[:PREVIEW_CHARS] or None,
    )
