"""Configuration management for the Terraform pipeline."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AzureSettings(BaseSettings):
    """Azure OIDC federation settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Opaque identifiers supplied as CI secrets
    arm_client_id: Optional[str] = Field(default=None, description="App registration client ID")
    arm_tenant_id: Optional[str] = Field(default=None, description="Azure AD tenant ID")
    arm_subscription_id: Optional[str] = Field(default=None, description="Target subscription ID")
    arm_use_oidc: bool = Field(default=True, description="Let the azurerm provider use OIDC")
    arm_oidc_token: Optional[str] = Field(
        default=None, description="Federated token for az CLI login"
    )

    azure_cli_login: bool = Field(
        default=False, description="Also log the az CLI in before running Terraform"
    )
    az_binary: str = Field(default="az", description="Azure CLI executable")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment registry
    registry_file: Path = Field(
        default=Path("environments.yaml"), description="YAML file describing environments"
    )

    # Terraform execution
    terraform_binary: str = Field(default="terraform", description="Terraform executable")
    working_dir: Path = Field(default=Path("."), description="Terraform root module directory")
    plan_dir: Path = Field(default=Path(".terraform-plans"), description="Where plan files are written")
    stage_timeout_seconds: int = Field(default=1800, description="Timeout for a single stage")

    # Gating policy
    apply_on_push_to_production: bool = Field(
        default=True, description="Apply automatically when production receives a push"
    )
    default_init: bool = Field(default=True, description="Manual dispatch default for init")
    default_fmt: bool = Field(default=True, description="Manual dispatch default for fmt")
    default_validate: bool = Field(default=True, description="Manual dispatch default for validate")
    default_plan: bool = Field(default=True, description="Manual dispatch default for plan")
    default_apply: bool = Field(default=False, description="Manual dispatch default for apply")
    default_destroy: bool = Field(default=False, description="Manual dispatch default for destroy")
    best_effort_stages: str = Field(
        default="", description="Comma separated stages whose failure does not halt a run"
    )

    # Reports
    save_reports: bool = Field(default=True, description="Persist a YAML report per run")
    reports_dir: Path = Field(default=Path(".infra-pipeline"), description="Run report directory")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    @property
    def manual_defaults(self) -> dict[str, bool]:
        """Manual dispatch defaults keyed by stage name."""
        return {
            "init": self.default_init,
            "fmt": self.default_fmt,
            "validate": self.default_validate,
            "plan": self.default_plan,
            "apply": self.default_apply,
            "destroy": self.default_destroy,
        }

    @property
    def best_effort_list(self) -> list[str]:
        """Get best-effort stages as a list."""
        return [s.strip().lower() for s in self.best_effort_stages.split(",") if s.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


@lru_cache
def get_azure_settings() -> AzureSettings:
    """Get cached Azure settings instance."""
    return AzureSettings()
