"""Stage gating: which lifecycle stages run for a trigger and environment."""

import logging
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from infra_pipeline.config import Settings
from infra_pipeline.core.errors import ConfigurationError
from infra_pipeline.core.state import Environment, StageFlags, TriggerKind

logger = logging.getLogger(__name__)

RequestedFlags = Union[StageFlags, Mapping[str, Any]]


class GatePolicy(BaseModel):
    """Policy choices behind gating decisions."""

    model_config = ConfigDict(frozen=True)

    manual_defaults: dict[str, bool] = Field(
        default_factory=lambda: {
            "init": True,
            "fmt": True,
            "validate": True,
            "plan": True,
            "apply": False,
            "destroy": False,
        }
    )
    apply_on_push_to_production: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatePolicy":
        return cls(
            manual_defaults=settings.manual_defaults,
            apply_on_push_to_production=settings.apply_on_push_to_production,
        )


def check_flag_rules(flags: Mapping[str, bool], source: str = "flags") -> None:
    """Reject apply without plan and apply together with destroy.

    A partial mapping only fails the plan rule when plan is present and false.
    """
    if flags.get("apply") and flags.get("plan", True) is False:
        raise ConfigurationError(
            f"Invalid {source}: apply requires plan",
            {"apply": True, "plan": bool(flags.get("plan"))},
        )
    if flags.get("apply") and flags.get("destroy"):
        raise ConfigurationError(
            f"Invalid {source}: apply and destroy are mutually exclusive",
            {"apply": True, "destroy": True},
        )


class StageGate:
    """Decides the effective StageFlags of a run."""

    def __init__(self, policy: Optional[GatePolicy] = None):
        self.policy = policy or GatePolicy()

    def evaluate(
        self,
        trigger: TriggerKind,
        environment: Environment,
        requested: Optional[RequestedFlags] = None,
    ) -> StageFlags:
        """Produce the effective flags for a run.

        Args:
            trigger: Push or manual dispatch
            environment: Target environment
            requested: Flags asked for by the caller; may be partial

        Returns:
            Effective StageFlags

        Raises:
            ConfigurationError: Unknown flag names or an invalid combination
        """
        requested_values = self._normalize(requested)
        check_flag_rules(requested_values, source="requested flags")

        if trigger == TriggerKind.PUSH:
            flags = self._push_flags(environment)
        else:
            flags = StageFlags.from_mapping(requested_values, defaults=self.policy.manual_defaults)
            check_flag_rules(flags.as_dict(), source="manual dispatch flags")

        logger.info(
            f"Gate {trigger.value}/{environment.name}: "
            f"{', '.join(s.value for s in flags.enabled_stages()) or 'no stages'}"
        )
        return flags

    def _push_flags(self, environment: Environment) -> StageFlags:
        apply = environment.production and self.policy.apply_on_push_to_production
        return StageFlags(init=True, fmt=True, validate=True, plan=True, apply=apply, destroy=False)

    @staticmethod
    def _normalize(requested: Optional[RequestedFlags]) -> dict[str, bool]:
        if requested is None:
            return {}
        if isinstance(requested, StageFlags):
            return requested.as_dict()
        # Validates names and coerces dispatch strings
        parsed = StageFlags.from_mapping(requested).as_dict()
        return {name: parsed[name] for name in requested}
