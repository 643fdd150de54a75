"""Microsoft 365 connector over the Microsoft Graph API."""

import asyncio
import logging
import time
from typing import Any, Optional

import httpx

from sync_engine.config import settings
from sync_engine.errors import ConnectorConfigError, ConnectorError
from sync_engine.integrations.connector import Connector, FetchPage

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.microsoft.com/v1.0"
LOGIN_URL = "https://login.microsoftonline.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

# Stand-in policy record emitted when Security Defaults are on
SECURITY_DEFAULTS_ID = "security-defaults"

USER_SELECT = ",".join([
    "id",
    "displayName",
    "mail",
    "userPrincipalName",
    "accountEnabled",
    "userType",
    "assignedLicenses",
    "signInActivity",
    "createdDateTime",
])


class Microsoft365Connector(Connector):
    """Client-credential Graph client.

    Config keys: ``tenant_id`` (Azure AD tenant), ``client_id``,
    ``client_secret`` and optional ``domain_mappings``
    (``[{"domain": ..., "site_id": ...}]``) used to filter identities and
    attach a site.
    """

    integration_type = "microsoft-365"
    supported_entity_types = frozenset({"identities", "groups", "roles", "policies", "licenses"})

    def __init__(
        self,
        config: Optional[dict] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(config)
        self.graph_url = self.config.get("graph_url", GRAPH_URL)
        self.login_url = self.config.get("login_url", LOGIN_URL)
        self._client = httpx.AsyncClient(
            timeout=timeout or settings.connector_timeout_seconds,
            transport=transport,
        )
        self._token: Optional[str] = None
        self._token_expires = 0.0

    @property
    def domain_mappings(self) -> list[dict]:
        return self.config.get("domain_mappings") or []

    async def _get_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires - 60:
            return self._token

        for key in ("tenant_id", "client_id", "client_secret"):
            if not self.config.get(key):
                raise ConnectorConfigError(f"Microsoft 365 data source is missing '{key}'")

        url = f"{self.login_url}/{self.config['tenant_id']}/oauth2/v2.0/token"
        try:
            response = await self._client.post(
                url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.config["client_id"],
                    "client_secret": self.config["client_secret"],
                    "scope": GRAPH_SCOPE,
                },
            )
        except httpx.HTTPError as e:
            raise ConnectorError(f"Token request failed: {e}") from e
        self.api_calls += 1

        if response.status_code in (400, 401, 403):
            raise ConnectorConfigError(
                f"Microsoft 365 token request rejected ({response.status_code})"
            )
        self._raise_for_status(response)

        body = response.json()
        self._token = body["access_token"]
        self._token_expires = time.monotonic() + int(body.get("expires_in", 3600))
        return self._token

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        if status in (401, 403):
            raise ConnectorConfigError(f"Graph request not authorized ({status}): {response.url}")
        if status == 429 or status >= 500:
            raise ConnectorError(f"Graph request failed ({status}): {response.url}", retryable=True)
        raise ConnectorError(f"Graph request failed ({status}): {response.url}", retryable=False)

    async def _get(self, url: str, params: Optional[dict] = None) -> dict[str, Any]:
        token = await self._get_token()
        try:
            response = await self._client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}", "ConsistencyLevel": "eventual"},
            )
        except httpx.TimeoutException as e:
            raise ConnectorError(f"Graph request timed out: {url}") from e
        except httpx.HTTPError as e:
            raise ConnectorError(f"Graph request error: {e}") from e
        self.api_calls += 1
        self._raise_for_status(response)
        return response.json()

    async def _get_all(self, url: str, params: Optional[dict] = None) -> list[dict]:
        """Follow @odata.nextLink until exhausted."""
        items: list[dict] = []
        next_url: Optional[str] = url
        while next_url:
            body = await self._get(next_url, params)
            params = None  # nextLink already carries the query
            items.extend(body.get("value", []))
            next_url = body.get("@odata.nextLink")
        return items

    async def check_health(self) -> bool:
        await self._get_token()
        return True

    async def fetch(self, entity_type: str, cursor: Optional[str] = None) -> FetchPage:
        self.ensure_supported(entity_type)
        if entity_type == "identities":
            return await self._fetch_identities(cursor)
        if entity_type == "groups":
            return FetchPage(records=await self._fetch_with_members("groups"))
        if entity_type == "roles":
            return FetchPage(records=await self._fetch_with_members("directoryRoles"))
        if entity_type == "licenses":
            return FetchPage(records=await self._get_all(f"{self.graph_url}/subscribedSkus"))
        return FetchPage(records=await self._fetch_policies())

    async def _fetch_policies(self) -> list[dict]:
        """Conditional access policies, plus a Security Defaults record when enabled."""
        policies = await self._get_all(f"{self.graph_url}/identity/conditionalAccess/policies")
        try:
            defaults = await self._get(f"{self.graph_url}/policies/identitySecurityDefaultsEnforcementPolicy")
        except ConnectorError as e:
            if e.retryable:
                raise
            # Tenants without Policy.Read.All still sync their CA policies
            logger.warning(f"Security Defaults state unavailable: {e.message}")
            return policies
        if defaults.get("isEnabled"):
            policies.append({
                "id": SECURITY_DEFAULTS_ID,
                "displayName": defaults.get("displayName") or "Security Defaults",
                "state": "enabled",
                "isSecurityDefaults": True,
            })
        return policies

    async def _fetch_identities(self, cursor: Optional[str]) -> FetchPage:
        if cursor:
            body = await self._get(cursor)
        else:
            body = await self._get(
                f"{self.graph_url}/users",
                {"$select": USER_SELECT, "$expand": "memberOf($select=id)", "$top": "999"},
            )
        users = body.get("value", [])
        domains = [m["domain"].lower() for m in self.domain_mappings if m.get("domain")]
        if domains:
            users = [
                u for u in users
                if any((u.get("userPrincipalName") or "").lower().endswith(d) for d in domains)
            ]
        logger.debug(f"Fetched {len(users)} identities, hasMore: {bool(body.get('@odata.nextLink'))}")
        return FetchPage(records=users, next_cursor=body.get("@odata.nextLink"))

    async def _fetch_with_members(self, collection: str) -> list[dict]:
        parents = await self._get_all(f"{self.graph_url}/{collection}")

        async def with_members(parent: dict) -> dict:
            members = await self._get_all(
                f"{self.graph_url}/{collection}/{parent['id']}/members", {"$select": "id"}
            )
            return {**parent, "members": [m["id"] for m in members]}

        return list(await asyncio.gather(*(with_members(p) for p in parents)))

    def external_id(self, entity_type: str, record: dict[str, Any]) -> str:
        if entity_type == "licenses":
            return str(record["skuId"])
        return str(record["id"])

    def resolve_site(self, entity_type: str, record: dict[str, Any]) -> Optional[str]:
        if entity_type != "identities":
            return None
        upn = (record.get("userPrincipalName") or "").lower()
        for mapping in self.domain_mappings:
            if mapping.get("domain") and upn.endswith(mapping["domain"].lower()):
                return mapping.get("site_id")
        return None

    async def close(self) -> None:
        await self._client.aclose()
