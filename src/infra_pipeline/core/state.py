"""State definitions for pipeline runs."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from infra_pipeline.core.errors import ConfigurationError, StageExecutionError


class Stage(str, Enum):
    """Terraform lifecycle stages, declared in execution order."""

    INIT = "init"
    FMT = "fmt"
    VALIDATE = "validate"
    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"

    @classmethod
    def ordered(cls) -> list["Stage"]:
        """Stages in fixed topological order."""
        return list(cls)

    @property
    def requires_approval(self) -> bool:
        """Mutating stages need the environment's approval gate."""
        return self in (Stage.APPLY, Stage.DESTROY)

    @property
    def requires_cloud(self) -> bool:
        """Stages that talk to the backend or the Azure Resource Manager API."""
        return self in (Stage.INIT, Stage.PLAN, Stage.APPLY, Stage.DESTROY)


class TriggerKind(str, Enum):
    """How a run was started."""

    PUSH = "push"
    MANUAL = "manual"


class StageStatus(str, Enum):
    """Per-stage sub-state while a run is executing."""

    PENDING = "pending"
    SKIPPED = "skipped"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed_stage"


class SkipReason(str, Enum):
    """Why a stage did not execute."""

    FLAG_DISABLED = "flag_disabled"
    PRIOR_FAILURE = "skipped_due_to_failure"
    ABORTED = "aborted"


class RunStatus(str, Enum):
    """Lifecycle of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off", ""}


def coerce_flag(name: str, value: Any) -> bool:
    """Coerce a dispatch input (bool or string) to a bool."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ConfigurationError(f"Invalid value for stage flag '{name}': {value!r}")


# =============================================================================
# Environment records
# =============================================================================


class BackendConfig(BaseModel):
    """Remote state coordinates in an Azure storage account."""

    model_config = ConfigDict(frozen=True)

    resource_group_name: str
    storage_account_name: str
    container_name: str = "tfstate"
    key: str

    def as_backend_args(self) -> list[str]:
        """Render as terraform init -backend-config arguments."""
        return [
            f"-backend-config=resource_group_name={self.resource_group_name}",
            f"-backend-config=storage_account_name={self.storage_account_name}",
            f"-backend-config=container_name={self.container_name}",
            f"-backend-config=key={self.key}",
        ]


class ApprovalPolicy(BaseModel):
    """Reviewer sign-off required before apply or destroy."""

    model_config = ConfigDict(frozen=True)

    required: bool = False
    reviewers: tuple[str, ...] = ()
    branches: tuple[str, ...] = ()

    @field_validator("reviewers")
    @classmethod
    def _dedupe_reviewers(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(dict.fromkeys(value))


class Environment(BaseModel):
    """A named deployment target with its own state file."""

    model_config = ConfigDict(frozen=True)

    name: str
    tfvars_file: str
    backend: BackendConfig
    approval: ApprovalPolicy = Field(default_factory=ApprovalPolicy)
    production: bool = False


# =============================================================================
# Stage flags and results
# =============================================================================


class StageFlags(BaseModel):
    """One boolean per lifecycle stage."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    init: bool = False
    fmt: bool = False
    validate_: bool = Field(default=False, alias="validate")
    plan: bool = False
    apply: bool = False
    destroy: bool = False

    def enabled(self, stage: Stage) -> bool:
        """Check whether a stage is switched on."""
        return self.as_dict()[stage.value]

    def enabled_stages(self) -> list[Stage]:
        """Enabled stages in execution order."""
        return [stage for stage in Stage.ordered() if self.enabled(stage)]

    def as_dict(self) -> dict[str, bool]:
        return {
            "init": self.init,
            "fmt": self.fmt,
            "validate": self.validate_,
            "plan": self.plan,
            "apply": self.apply,
            "destroy": self.destroy,
        }

    @classmethod
    def from_mapping(
        cls,
        values: Mapping[str, Any],
        defaults: Optional[Mapping[str, bool]] = None,
    ) -> "StageFlags":
        """Build flags from a partial mapping, filling gaps from defaults."""
        known = {stage.value for stage in Stage}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown stage flag(s): {', '.join(unknown)}",
                {"known": sorted(known)},
            )

        merged: dict[str, bool] = {name: False for name in known}
        if defaults:
            merged.update({k: coerce_flag(k, v) for k, v in defaults.items() if k in known})
        merged.update({k: coerce_flag(k, v) for k, v in values.items()})
        return cls(**merged)


class StageResult(BaseModel):
    """Outcome of one stage in a run."""

    stage: Stage
    status: StageStatus
    skip_reason: Optional[SkipReason] = None
    returncode: Optional[int] = None
    output: str = ""
    duration_seconds: float = 0.0


class PipelineRun(BaseModel):
    """One execution of the lifecycle against one environment."""

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    environment: Environment
    flags: StageFlags
    trigger: TriggerKind

    # Supplied by the CI system; the runner only asserts it
    approval_satisfied: bool = False
    branch: Optional[str] = None
    best_effort: frozenset[Stage] = Field(default_factory=frozenset)

    status: RunStatus = RunStatus.PENDING
    results: list[StageResult] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def start(self) -> None:
        """Move the run from pending to running."""
        self.status = RunStatus.RUNNING
        self.started_at = datetime.now(timezone.utc)
        self.results = []

    def record(self, result: StageResult) -> None:
        self.results.append(result)

    def finish(self) -> None:
        """Settle the terminal status from the recorded stage results."""
        aborted = any(r.skip_reason == SkipReason.ABORTED for r in self.results)
        self.status = RunStatus.FAILED if self.failure or aborted else RunStatus.SUCCEEDED
        self.finished_at = datetime.now(timezone.utc)

    @property
    def failure(self) -> Optional[StageResult]:
        """First failed stage that halted the run, if any."""
        for result in self.results:
            if result.status == StageStatus.FAILED and result.stage not in self.best_effort:
                return result
        return None

    def outcome(self, stage: Stage) -> StageStatus:
        """Status of a stage, PENDING if it has not been reached yet."""
        for result in self.results:
            if result.stage == stage:
                return result.status
        return StageStatus.PENDING

    def executed_stages(self) -> list[Stage]:
        """Stages that actually invoked the Terraform CLI, in order."""
        return [
            r.stage
            for r in self.results
            if r.status in (StageStatus.COMPLETED, StageStatus.FAILED)
        ]

    def raise_for_status(self) -> None:
        """Raise StageExecutionError if a blocking stage failed."""
        failure = self.failure
        if failure is not None:
            raise StageExecutionError(failure.stage.value, failure.returncode, failure.output)
