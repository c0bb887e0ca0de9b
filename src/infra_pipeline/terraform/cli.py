"""Terraform CLI collaborator.

Each lifecycle stage maps to one terraform subcommand. Failures are returned
as invocations with a nonzero return code and the tool's own output; nothing
here raises for a failed command.
"""

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from infra_pipeline.config import Settings
from infra_pipeline.core.state import Environment, Stage

logger = logging.getLogger(__name__)

TIMEOUT_RETURNCODE = 124
NOT_FOUND_RETURNCODE = 127


class StageInvocation(BaseModel):
    """Result of running one stage through the CLI."""

    stage: Stage
    command: list[str] = Field(default_factory=list)
    returncode: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0

    @property
    def diagnostic(self) -> str:
        """Combined tool output, stderr last."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class StageExecutor(Protocol):
    """Anything that can run a lifecycle stage for an environment."""

    def run(
        self,
        stage: Stage,
        environment: Environment,
        env: Optional[dict[str, str]] = None,
    ) -> StageInvocation:
        ...


class TerraformCli:
    """Runs terraform subcommands in a root module directory."""

    def __init__(
        self,
        binary: str = "terraform",
        working_dir: Path = Path("."),
        plan_dir: Path = Path(".terraform-plans"),
        timeout: int = 1800,
    ):
        self.binary = binary
        self.working_dir = Path(working_dir)
        self.plan_dir = Path(plan_dir)
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "TerraformCli":
        return cls(
            binary=settings.terraform_binary,
            working_dir=settings.working_dir,
            plan_dir=settings.plan_dir,
            timeout=settings.stage_timeout_seconds,
        )

    def plan_file(self, environment: Environment) -> Path:
        """Plan artifact for an environment, relative to the working dir."""
        return self.plan_dir / f"{environment.name}.tfplan"

    def build_command(self, stage: Stage, environment: Environment) -> list[str]:
        """Build the argv for a stage."""
        if stage == Stage.INIT:
            args = ["init", "-input=false", "-reconfigure", *environment.backend.as_backend_args()]
        elif stage == Stage.FMT:
            args = ["fmt", "-check", "-recursive"]
        elif stage == Stage.VALIDATE:
            args = ["validate"]
        elif stage == Stage.PLAN:
            args = [
                "plan",
                "-input=false",
                f"-var-file={environment.tfvars_file}",
                f"-out={self.plan_file(environment)}",
            ]
        elif stage == Stage.APPLY:
            args = ["apply", "-input=false", "-auto-approve", str(self.plan_file(environment))]
        elif stage == Stage.DESTROY:
            args = [
                "destroy",
                "-input=false",
                "-auto-approve",
                f"-var-file={environment.tfvars_file}",
            ]
        else:
            raise ValueError(f"Unsupported stage: {stage}")

        return [self.binary, *args, "-no-color"]

    def run(
        self,
        stage: Stage,
        environment: Environment,
        env: Optional[dict[str, str]] = None,
    ) -> StageInvocation:
        """Execute a stage and capture its output."""
        cmd = self.build_command(stage, environment)
        if stage == Stage.PLAN:
            (self.working_dir / self.plan_dir).mkdir(parents=True, exist_ok=True)

        process_env = {**os.environ, "TF_IN_AUTOMATION": "1", **(env or {})}

        logger.info(f"terraform {stage.value} [{environment.name}]")
        started = time.monotonic()
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.working_dir),
                env=process_env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
            returncode, stdout, stderr = result.returncode, result.stdout, result.stderr
        except subprocess.TimeoutExpired:
            returncode, stdout = TIMEOUT_RETURNCODE, ""
            stderr = f"terraform {stage.value} timed out after {self.timeout}s"
        except FileNotFoundError:
            returncode, stdout = NOT_FOUND_RETURNCODE, ""
            stderr = f"Terraform executable not found: {self.binary}"

        duration = time.monotonic() - started
        if returncode != 0:
            logger.error(f"terraform {stage.value} [{environment.name}] - exit code {returncode}")

        return StageInvocation(
            stage=stage,
            command=cmd,
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=duration,
        )
