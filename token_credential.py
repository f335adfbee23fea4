# token_credential.py
import time
from typing import Optional

from azure.core.credentials import AccessToken, TokenCredential
from azure.identity import (
    AzureCliCredential,
    ChainedTokenCredential,
    DefaultAzureCredential,
    ManagedIdentityCredential,
)

import config


class StaticTokenCredential(TokenCredential):
    """
    Wrap an ARM bearer token (string) so Azure SDK clients can use it like any other credential.
    Handy in pipelines that already hold a token (e.g. `az account get-access-token`).
    """
    def __init__(self, token: str, expires_in: int = 3300):
        self._token = token.strip()
        self._expires_on = int(time.time()) + expires_in

    def get_token(self, *scopes, **kwargs) -> AccessToken:
        return AccessToken(self._token, self._expires_on)


def get_credential(tenant_id: Optional[str] = None, use_managed_identity: bool = False) -> TokenCredential:
    """
    Pick the credential for this run:
    - AZURE_ACCESS_TOKEN set: wrap it as-is
    - use_managed_identity: the Automation account's identity (runbook mode)
    - otherwise: Azure CLI login first, then the default chain (env / workload identity)
    """
    tenant_id = tenant_id or config.TENANT_ID

    if config.ACCESS_TOKEN:
        print("[INFO] Using bearer token from AZURE_ACCESS_TOKEN.")
        return StaticTokenCredential(config.ACCESS_TOKEN)

    if use_managed_identity:
        print("[INFO] Using managed identity.")
        if config.CLIENT_ID:
            return ManagedIdentityCredential(client_id=config.CLIENT_ID)
        return ManagedIdentityCredential()

    cli = AzureCliCredential(tenant_id=tenant_id) if tenant_id else AzureCliCredential()
    dac = DefaultAzureCredential(exclude_managed_identity_credential=True)
    return ChainedTokenCredential(cli, dac)
