"""
Pytest Configuration and Shared Fixtures.

This module provides common fixtures for all tests:

- registry: Built-in dev/qa/test/uat/prod environment registry
- fake_executor: Factory for a StageExecutor that never spawns terraform
- make_run: Factory for pending PipelineRun objects
"""

from typing import Optional

import pytest

from infra_pipeline.core.registry import EnvironmentRegistry
from infra_pipeline.core.state import PipelineRun, Stage, StageFlags, TriggerKind
from infra_pipeline.terraform.cli import StageInvocation


class FakeExecutor:
    """Records stage invocations and fails the configured stages."""

    def __init__(self, fail_on=(), error_output: str = "Error: something broke"):
        self.fail_on = {Stage(s) for s in fail_on}
        self.error_output = error_output
        self.calls: list[tuple[str, Stage, Optional[dict]]] = []

    def run(self, stage, environment, env=None) -> StageInvocation:
        self.calls.append((environment.name, stage, env))
        failed = stage in self.fail_on
        return StageInvocation(
            stage=stage,
            command=["terraform", stage.value],
            returncode=1 if failed else 0,
            stdout=f"{stage.value} output",
            stderr=self.error_output if failed else "",
            duration_seconds=0.01,
        )

    @property
    def stages(self) -> list[Stage]:
        return [stage for _, stage, _ in self.calls]


class FakeIdentity:
    """Identity provider returning a fixed ARM environment."""

    def __init__(self):
        self.calls = 0

    def authenticate(self) -> dict[str, str]:
        self.calls += 1
        return {"ARM_CLIENT_ID": "client", "ARM_USE_OIDC": "true"}


@pytest.fixture
def registry() -> EnvironmentRegistry:
    """Return the built-in environment registry."""
    return EnvironmentRegistry.default()


@pytest.fixture
def fake_executor():
    """Return a FakeExecutor factory."""
    return FakeExecutor


@pytest.fixture
def fake_identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def make_run(registry):
    """Return a factory for pending runs."""

    def _make(
        environment: str = "dev",
        trigger: TriggerKind = TriggerKind.MANUAL,
        **kwargs,
    ) -> PipelineRun:
        flags = kwargs.pop("flags", None) or StageFlags(
            init=True, fmt=True, validate=True, plan=True
        )
        return PipelineRun(
            environment=registry.resolve(environment),
            flags=flags,
            trigger=trigger,
            **kwargs,
        )

    return _make


@pytest.fixture
def registry_file(tmp_path):
    """Write a small registry YAML and return its path."""
    path = tmp_path / "environments.yaml"
    path.write_text(
        """
production: prod
defaults:
  backend:
    resource_group_name: rg-state
    storage_account_name: ststate
environments:
  dev: {}
  qa:
    tfvars_file: vars/qa.tfvars
  prod:
    approval:
      required: true
      reviewers: [alice, bob, alice]
      branches: [main, release/*]
"""
    )
    return path
