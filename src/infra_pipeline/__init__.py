"""Terraform lifecycle orchestration for multi-environment Azure deployments."""

__version__ = "0.1.0"
