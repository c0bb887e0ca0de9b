"""Terraform CLI integration."""

from infra_pipeline.terraform.cli import StageExecutor, StageInvocation, TerraformCli

__all__ = ["StageExecutor", "StageInvocation", "TerraformCli"]
