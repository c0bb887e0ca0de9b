"""Cloud identity providers."""

from infra_pipeline.cloud.azure import AzureOidcIdentity, IdentityProvider

__all__ = ["AzureOidcIdentity", "IdentityProvider"]
