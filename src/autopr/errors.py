"""Exception types shared by the executor and the control plane."""


class PipelineError(Exception):
    """Base class for job pipeline failures."""


class GitError(PipelineError):
    """Raised when a git command fails."""


class StepFailed(PipelineError):
    """A step ran to completion but at least one repo failed.

    Not retryable: the step already did its work and reported why it failed.
    """

    def __init__(self, step: str, errors: list[str]):
        self.step = step
        self.errors = list(errors)
        summary = "; ".join(self.errors) if self.errors else "unknown error"
        super().__init__(f"{step} step failed: {summary}")


class CodeGenError(PipelineError):
    """Raised when the code generation process fails, times out or cannot authenticate."""


class RemoteError(PipelineError):
    """An error reported by the remote executor as a code and a message."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


class TransportError(RemoteError):
    """Connection, timeout or unresponsive-executor failure. Retryable."""


class FatalWorkflowError(PipelineError):
    """Aborts a job workflow (credentials or checkout)."""
