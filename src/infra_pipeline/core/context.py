"""GitHub Actions run context.

Translates the workflow event (push or workflow_dispatch) and its inputs into
the trigger kind, target environment and requested stage flags.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field

from infra_pipeline.core.errors import ConfigurationError, NotFoundError
from infra_pipeline.core.state import Stage, TriggerKind, coerce_flag

logger = logging.getLogger(__name__)

EVENT_TRIGGERS = {
    "push": TriggerKind.PUSH,
    "workflow_dispatch": TriggerKind.MANUAL,
}


def resolve_trigger(event_name: str) -> TriggerKind:
    """Map a GitHub event name to a trigger kind."""
    try:
        return EVENT_TRIGGERS[event_name]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported workflow event: {event_name}",
            {"supported": sorted(EVENT_TRIGGERS)},
        ) from None


def load_dispatch_inputs(event_path: Optional[Path]) -> dict[str, Any]:
    """Read the ``inputs`` of a workflow_dispatch payload. Push events have none."""
    if event_path is None:
        return {}

    path = Path(event_path)
    if not path.exists():
        raise NotFoundError(f"Event payload not found: {path}")

    try:
        payload = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid event payload: {path}", {"error": str(e)}) from e

    return dict(payload.get("inputs") or {})


class CiContext(BaseModel):
    """What the CI system tells us about the current run."""

    trigger: TriggerKind
    environment: str
    branch: Optional[str] = None
    approval_satisfied: bool = False
    inputs: dict[str, Any] = Field(default_factory=dict)

    @property
    def requested_flags(self) -> dict[str, bool]:
        """Stage flags present in the dispatch inputs."""
        names = {stage.value for stage in Stage}
        return {k: coerce_flag(k, v) for k, v in self.inputs.items() if k in names}

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> "CiContext":
        """Build the context from GitHub Actions environment variables."""
        environ = os.environ if environ is None else environ

        event_name = environ.get("GITHUB_EVENT_NAME")
        if not event_name:
            raise ConfigurationError("GITHUB_EVENT_NAME is not set")
        trigger = resolve_trigger(event_name)

        event_path = environ.get("GITHUB_EVENT_PATH")
        inputs = load_dispatch_inputs(Path(event_path) if event_path else None)

        environment = inputs.get("environment") or environ.get("TARGET_ENVIRONMENT")
        if not environment:
            raise ConfigurationError(
                "No target environment: set inputs.environment or TARGET_ENVIRONMENT"
            )

        approved = environ.get("DEPLOYMENT_APPROVED", "false")
        context = cls(
            trigger=trigger,
            environment=environment,
            branch=environ.get("GITHUB_REF_NAME") or None,
            approval_satisfied=coerce_flag("DEPLOYMENT_APPROVED", approved),
            inputs=inputs,
        )
        logger.debug(f"CI context: {context.trigger.value} -> {context.environment}")
        return context
