"""Azure AD OIDC federation for the Terraform azurerm provider."""

import logging
import subprocess
from typing import Optional, Protocol

from infra_pipeline.config import AzureSettings, get_azure_settings
from infra_pipeline.core.errors import AuthenticationError

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    """Exchanges CI identity for cloud credentials."""

    def authenticate(self) -> dict[str, str]:
        """Return environment variables granting the CLI cloud access."""
        ...


class AzureOidcIdentity:
    """
    Federated workload identity for Azure.

    Terraform's azurerm provider performs the token exchange itself when
    ARM_USE_OIDC is set, so the common path only assembles the ARM_*
    environment. With ``azure_cli_login`` the az CLI is logged in as well,
    for modules that shell out to az.
    """

    def __init__(self, settings: Optional[AzureSettings] = None):
        self.settings = settings or get_azure_settings()
        self._env: Optional[dict[str, str]] = None

    def authenticate(self) -> dict[str, str]:
        """Validate secrets, optionally log in, and return the ARM_* environment."""
        if self._env is not None:
            return self._env

        s = self.settings
        missing = [
            name
            for name, value in (
                ("ARM_CLIENT_ID", s.arm_client_id),
                ("ARM_TENANT_ID", s.arm_tenant_id),
                ("ARM_SUBSCRIPTION_ID", s.arm_subscription_id),
            )
            if not value
        ]
        if missing:
            raise AuthenticationError(
                "Azure OIDC credentials are incomplete",
                {"missing": missing},
            )

        if s.azure_cli_login:
            self._az_login()

        env = {
            "ARM_CLIENT_ID": s.arm_client_id,
            "ARM_TENANT_ID": s.arm_tenant_id,
            "ARM_SUBSCRIPTION_ID": s.arm_subscription_id,
            "ARM_USE_OIDC": "true" if s.arm_use_oidc else "false",
        }
        if s.arm_oidc_token:
            env["ARM_OIDC_TOKEN"] = s.arm_oidc_token

        logger.info(f"Azure identity ready for subscription {s.arm_subscription_id}")
        self._env = env
        return env

    def _az_login(self) -> None:
        s = self.settings
        if not s.arm_oidc_token:
            raise AuthenticationError("azure_cli_login requires ARM_OIDC_TOKEN")

        login = [
            s.az_binary, "login", "--service-principal",
            "--username", s.arm_client_id,
            "--tenant", s.arm_tenant_id,
            "--federated-token", s.arm_oidc_token,
            "--output", "none",
        ]
        account = [
            s.az_binary, "account", "set",
            "--subscription", s.arm_subscription_id,
        ]

        for cmd in (login, account):
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, timeout=120)
            except subprocess.TimeoutExpired:
                raise AuthenticationError(f"az {cmd[1]} timed out") from None
            except FileNotFoundError:
                raise AuthenticationError(f"Azure CLI not found: {s.az_binary}") from None

            if result.returncode != 0:
                logger.error(f"az {cmd[1]} - exit code {result.returncode}")
                raise AuthenticationError(
                    f"az {cmd[1]} failed",
                    {"returncode": result.returncode, "stderr": result.stderr.strip()},
                )
