"""Exception hierarchy for pipeline orchestration.

Configuration, lookup, approval and authentication errors are fatal and are
raised before any stage runs. StageExecutionError carries the failing stage
and the Terraform diagnostic output exactly as the tool produced it.
"""

from typing import Any, Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(PipelineError):
    """Invalid stage flag combination or malformed configuration."""

    pass


class NotFoundError(PipelineError):
    """Unknown environment or missing configuration source."""

    pass


class ApprovalNotSatisfiedError(PipelineError):
    """Apply or destroy requested without the environment's approval gate."""

    def __init__(self, environment: str, message: str, details: Optional[dict[str, Any]] = None):
        self.environment = environment
        super().__init__(f"[{environment}] {message}", details)


class AuthenticationError(PipelineError):
    """Cloud identity exchange failed or credentials are incomplete."""

    pass


class StageExecutionError(PipelineError):
    """The Terraform CLI returned a nonzero exit code for a stage."""

    def __init__(self, stage: str, returncode: Optional[int], output: str):
        self.stage = stage
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Stage '{stage}' failed with exit code {returncode}",
            {"stage": stage, "returncode": returncode},
        )
