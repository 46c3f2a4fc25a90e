"""Custom exceptions for the minions pipeline."""

from typing import Optional


class MinionsError(Exception):
    """Base exception for all minions errors."""

    pass


class ConfigError(MinionsError):
    """Raised when configuration is missing or malformed."""

    pass


class InfrastructureError(MinionsError):
    """Environment problem the generator cannot fix by writing code (clone, push, install)."""

    pass


class InvalidRefError(MinionsError):
    """Raised when a git ref name contains characters outside the allow-list."""

    pass


class CommandFailed(InfrastructureError):
    """A subprocess exited non-zero, timed out, or could not be started.

    All text attributes are already redacted and tail-truncated.
    """

    def __init__(
        self,
        command: str,
        exit_code: Optional[int],
        stderr_tail: str = "",
        stdout_tail: str = "",
        timed_out: bool = False,
    ):
        self.command = command
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        self.stdout_tail = stdout_tail
        self.timed_out = timed_out
        if timed_out:
            status = "Timed out"
        else:
            status = f"Exit {exit_code}"
        super().__init__(
            f"Command failed: {command}\n{status}\nSTDERR: {stderr_tail}\nSTDOUT: {stdout_tail}"
        )


class AgentInvocationError(CommandFailed):
    """The coding agent exited non-zero or exceeded its budget."""

    pass


class ValidationFailure(MinionsError):
    """A validation stage failed where no remediation is available."""

    def __init__(self, stage: str, error_output: str):
        super().__init__(f"Validation failed at {stage}: {error_output}")
        self.stage = stage
        self.error_output = error_output


class PermissionDenied(MinionsError):
    """The configured credential cannot push to the target repository."""

    pass


class NotSelfImprovable(MinionsError):
    """The failure category does not call for a change to the orchestrator."""

    pass


class CredentialUnavailable(MinionsError):
    """No credential source produced a usable value."""

    pass


class GitHubAPIError(InfrastructureError):
    """Exception raised for repository host API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, response_body: str = ""):
        """
        Initialize GitHub API error.

        Args:
            message: Error message
            status_code: Optional HTTP status code
            response_body: Optional (redacted) response text
        """
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class IssueParseError(MinionsError):
    """An issue body does not contain a generated prompt."""

    pass
