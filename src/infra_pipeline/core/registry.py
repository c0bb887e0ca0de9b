"""Environment registry.

Maps an environment name to its backend coordinates and approval policy.
The registry document keeps shared settings under ``defaults`` so they are
declared once instead of once per environment:

    production: prod
    defaults:
      backend:
        resource_group_name: rg-tfstate
        storage_account_name: sttfstate
        container_name: tfstate
    environments:
      dev: {}
      prod:
        approval:
          required: true
          reviewers: [platform-leads]
          branches: [main]
"""

import copy
import logging
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

import yaml
from pydantic import ValidationError

from infra_pipeline.core.errors import ConfigurationError, NotFoundError
from infra_pipeline.core.state import Environment

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENTS = ["dev", "qa", "test", "uat", "prod"]


def _deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Merge override into a copy of base, recursing into nested mappings."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class EnvironmentRegistry:
    """Read-only mapping of environment name to Environment record."""

    def __init__(self, environments: list[Environment]):
        self._environments: dict[str, Environment] = {}
        for env in environments:
            if env.name in self._environments:
                raise ConfigurationError(f"Duplicate environment: {env.name}")
            self._environments[env.name] = env

    def resolve(self, name: str) -> Environment:
        """Return the Environment for name or raise NotFoundError."""
        try:
            return self._environments[name]
        except KeyError:
            raise NotFoundError(
                f"Unknown environment: {name}",
                {"known": self.names()},
            ) from None

    def names(self) -> list[str]:
        return list(self._environments)

    def __contains__(self, name: object) -> bool:
        return name in self._environments

    def __iter__(self) -> Iterator[Environment]:
        return iter(self._environments.values())

    def __len__(self) -> int:
        return len(self._environments)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EnvironmentRegistry":
        """Build a registry from a parsed registry document."""
        if not isinstance(data, Mapping):
            raise ConfigurationError("Registry document must be a mapping")

        entries = data.get("environments")
        if not isinstance(entries, Mapping) or not entries:
            raise ConfigurationError("Registry document has no 'environments' mapping")

        defaults = data.get("defaults") or {}
        if not isinstance(defaults, Mapping):
            raise ConfigurationError("Registry 'defaults' must be a mapping")
        production_name: Optional[str] = data.get("production")

        environments = []
        for name, entry in entries.items():
            entry = entry or {}
            if not isinstance(entry, Mapping):
                raise ConfigurationError(
                    f"Invalid configuration for environment '{name}'",
                    {"error": f"expected a mapping, got {type(entry).__name__}"},
                )
            entry = _deep_merge(dict(defaults), entry)
            entry.setdefault("tfvars_file", f"environments/{name}.tfvars")
            backend = entry.get("backend") or {}
            if not isinstance(backend, Mapping):
                raise ConfigurationError(
                    f"Invalid backend for environment '{name}'",
                    {"error": f"expected a mapping, got {type(backend).__name__}"},
                )
            backend = dict(backend)
            backend.setdefault("key", f"{name}.tfstate")
            entry["backend"] = backend
            if production_name is not None and "production" not in entry:
                entry["production"] = name == production_name

            try:
                environments.append(Environment(name=name, **entry))
            except (TypeError, ValidationError) as e:
                raise ConfigurationError(
                    f"Invalid configuration for environment '{name}'",
                    {"error": str(e)},
                ) from e

        logger.debug(f"Loaded {len(environments)} environments")
        return cls(environments)

    @classmethod
    def from_yaml(cls, path: Path) -> "EnvironmentRegistry":
        """Load a registry from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise NotFoundError(f"Environment registry not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse {path}", {"error": str(e)}) from e

        logger.info(f"Loading environment registry from {path}")
        return cls.from_mapping(data or {})

    @classmethod
    def default(
        cls,
        resource_group_name: str = "rg-terraform-state",
        storage_account_name: str = "stterraformstate",
        container_name: str = "tfstate",
    ) -> "EnvironmentRegistry":
        """Registry for dev, qa, test, uat and prod sharing one storage account."""
        return cls.from_mapping({
            "production": "prod",
            "defaults": {
                "backend": {
                    "resource_group_name": resource_group_name,
                    "storage_account_name": storage_account_name,
                    "container_name": container_name,
                },
            },
            "environments": {
                **{name: {} for name in DEFAULT_ENVIRONMENTS if name != "prod"},
                "prod": {"approval": {"required": True, "branches": ["main"]}},
            },
        })
