"""
Key Vault Collector
Enumerates the vaults of a subscription, then fans out over each vault's
data plane to list secret metadata (names, enabled state, expiry).
Access policy / RBAC / firewall denials are reported per vault.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..auth.tokens import Audience
from ..config import ARM_KEYVAULT_API_VERSION, KEYVAULT_API_VERSION
from ..graph.models import ListRequest
from ..results import Result
from .base import BaseCollector, CollectorResult

logger = logging.getLogger("blackcat.collectors.key_vaults")


def vault_label(vault: dict) -> str:
    return vault.get("name") or vault.get("id", "?")


class KeyVaultCollector(BaseCollector):
    name = "key_vaults"
    description = "Key Vault inventory and secret metadata per vault"

    def __init__(self, layer, subscription_id: str, vaults: Optional[list[dict]] = None, **kwargs):
        super().__init__(layer, **kwargs)
        self.subscription_id = subscription_id
        self.vaults = vaults

    async def list_vaults(self) -> list[dict]:
        """All vaults in the subscription (ARM, paginated, cached)."""
        arm = self.layer.client(Audience.ARM)
        request = ListRequest(
            url=f"/subscriptions/{self.subscription_id}/providers/Microsoft.KeyVault/vaults",
            params={"api-version": ARM_KEYVAULT_API_VERSION},
            cursor_field="nextLink",
        )
        vaults = await arm.fetch_all_pages(request, cache=self.cache_policy("arm"))
        logger.info(f"Found {len(vaults)} Key Vaults in subscription {self.subscription_id}")
        return [
            {
                "id": v.get("id"),
                "name": v.get("name"),
                "location": v.get("location"),
                "vaultUri": (v.get("properties") or {}).get("vaultUri")
                or f"https://{v.get('name')}.vault.azure.net/",
                "enableRbacAuthorization": (v.get("properties") or {}).get("enableRbacAuthorization"),
                "publicNetworkAccess": (v.get("properties") or {}).get("publicNetworkAccess"),
            }
            for v in vaults
        ]

    async def collect(self, result: CollectorResult):
        vaults = self.vaults if self.vaults is not None else await self.list_vaults()
        result.metadata["vault_count"] = len(vaults)
        if not vaults:
            result.add_warning(f"No Key Vaults found in subscription {self.subscription_id}")

        executor = self.layer.executor(label=vault_label)
        return await executor.run(
            vaults, self._list_secrets, throttle=self.throttle, deadline=self.deadline
        )

    async def _list_secrets(self, vault: dict) -> Result:
        """Worker: secret metadata for one vault."""
        client = self.layer.vault_client(vault["vaultUri"])
        request = ListRequest(
            url="/secrets",
            params={"api-version": KEYVAULT_API_VERSION},
            cursor_field="nextLink",
        )
        outcome = await self.as_result(
            vault_label(vault),
            client.fetch_all_pages(request, cache=self.cache_policy("keyvault", compress=True)),
        )
        if not outcome.ok:
            return outcome

        secrets = [
            {
                "id": s.get("id"),
                "name": (s.get("id") or "").rstrip("/").rsplit("/", 1)[-1],
                "enabled": (s.get("attributes") or {}).get("enabled"),
                "expires": (s.get("attributes") or {}).get("exp"),
                "contentType": s.get("contentType"),
                "managed": s.get("managed", False),
            }
            for s in outcome.value
        ]
        return Result.success({
            "vault": vault_label(vault),
            "vaultUri": vault["vaultUri"],
            "secret_count": len(secrets),
            "secrets": secrets,
        })
