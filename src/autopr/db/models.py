"""Data models for the job pipeline."""

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum

LOG_LEVELS = ("info", "warn", "error", "debug", "success")
JOB_STATUSES = ("draft", "queued", "in-progress", "in-review", "completed", "failed")
QUEUE_TYPES = ("rework", "backlog")
AGENT_STATUSES = ("active", "idle", "offline")

_GITHUB_URL = re.compile(r"github\.com[/:]([\w.-]+)/([\w.-]+?)(?:\.git)?/?$")


class Step(str, Enum):
    CHECKOUT = "checkout"
    SETUP = "setup"
    EXECUTE = "execute"
    BUILD = "build"
    VALIDATE = "validate"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LogEvent:
    level: str
    message: str
    job_id: str
    stage: str
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LogEvent":
        level = data.get("level", "info")
        if level not in LOG_LEVELS:
            level = "info"
        return cls(
            level=level,
            message=str(data.get("message", "")),
            job_id=str(data.get("job_id", "")),
            stage=str(data.get("stage", "")),
            timestamp=data.get("timestamp") or utcnow_iso(),
        )


@dataclass
class RepoRef:
    repo_id: str
    name: str = "repo"
    url: str | None = None
    branch: str = "main"
    setup_commands: list[str] = field(default_factory=list)
    build_commands: list[str] = field(default_factory=list)
    test_commands: list[str] = field(default_factory=list)
    is_confirmed: bool = False

    @property
    def identifier(self) -> str:
        """owner/repo parsed from a GitHub URL, else the repo id."""
        if self.url:
            match = _GITHUB_URL.search(self.url)
            if match:
                return f"{match.group(1)}/{match.group(2)}"
        return self.repo_id

    @property
    def folder_name(self) -> str:
        """Worktree folder name; numeric names are replaced by the name in the URL."""
        if self.url and self.name.isdigit():
            match = _GITHUB_URL.search(self.url)
            if match:
                return match.group(2)
        return self.name

    def commands_for(self, step: Step) -> list[str]:
        if step is Step.SETUP:
            raw = self.setup_commands
        elif step is Step.BUILD:
            raw = self.build_commands
        elif step is Step.VALIDATE:
            raw = self.test_commands
        else:
            return []
        return split_commands(raw)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RepoRef":
        return cls(
            repo_id=data["repo_id"],
            name=data.get("name") or "repo",
            url=data.get("url"),
            branch=data.get("branch") or "main",
            setup_commands=list(data.get("setup_commands") or []),
            build_commands=list(data.get("build_commands") or []),
            test_commands=list(data.get("test_commands") or []),
            is_confirmed=bool(data.get("is_confirmed", False)),
        )


def split_commands(raw: list[str] | str | None) -> list[str]:
    """Split semicolon-delimited command strings into a flat list."""
    if not raw:
        return []
    if isinstance(raw, str):
        raw = [raw]
    commands = []
    for entry in raw:
        commands.extend(c.strip() for c in entry.split(";") if c.strip())
    return commands


def branch_name(job_id: str, repo_name: str) -> str:
    return f"autopr-{job_id}-{repo_name}"


@dataclass
class GitCredentials:
    token: str | None = None
    username: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "GitCredentials":
        data = data or {}
        return cls(token=data.get("token"), username=data.get("username"))


@dataclass
class CoderCredentials:
    type: str = "cursor"
    executable_path: str | None = None
    api_key: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "CoderCredentials":
        data = data or {}
        return cls(
            type=data.get("type") or "cursor",
            executable_path=data.get("executable_path"),
            api_key=data.get("api_key"),
        )


@dataclass
class Job:
    id: str
    org_id: str
    prompt: str
    version: int = 1
    status: str = "queued"
    queue_type: str = "backlog"
    order_in_queue: int = 0
    repos: list[str] = field(default_factory=list)
    pr_links: list[str] = field(default_factory=list)
    error: str | None = None
    agent_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Agent:
    id: str
    org_id: str
    name: str = ""
    host: str = "localhost"
    port: int = 50051
    status: str = "active"
    last_active: float | None = None
    consecutive_failures: int = 0
    created_at: datetime | None = None


@dataclass
class StepExecution:
    step: Step
    status: str = "running"
    logs: list[LogEvent] = field(default_factory=list)
    error: str | None = None


@dataclass
class FileAction:
    path: str
    action: str
    lines: int = 0
    size: int = 0
    preview: str | None = None
    timestamp: str = field(default_factory=utcnow_iso)
