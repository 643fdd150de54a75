"""HaloPSA connector (companies)."""

import logging
from typing import Optional

import httpx

from sync_engine.config import settings
from sync_engine.errors import ConnectorConfigError, ConnectorError
from sync_engine.integrations.connector import Connector, FetchPage

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class HaloPSAConnector(Connector):
    """Config keys: ``url``, ``client_id``, ``client_secret``."""

    integration_type = "halopsa"
    supported_entity_types = frozenset({"companies"})

    def __init__(
        self,
        config: Optional[dict] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(config)
        self._client = httpx.AsyncClient(
            base_url=(self.config.get("url") or "").rstrip("/"),
            timeout=timeout or settings.connector_timeout_seconds,
            transport=transport,
        )
        self._token: Optional[str] = None

    async def _get_token(self) -> str:
        if self._token:
            return self._token
        if not self.config.get("url") or not self.config.get("client_id"):
            raise ConnectorConfigError("HaloPSA data source is missing 'url' or 'client_id'")
        try:
            response = await self._client.post(
                "/auth/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.config["client_id"],
                    "client_secret": self.config.get("client_secret", ""),
                    "scope": "all",
                },
            )
        except httpx.HTTPError as e:
            raise ConnectorError(f"HaloPSA token request failed: {e}") from e
        self.api_calls += 1
        if response.status_code in (400, 401, 403):
            raise ConnectorConfigError(f"HaloPSA token request rejected ({response.status_code})")
        if response.status_code >= 400:
            raise ConnectorError(f"HaloPSA token request failed ({response.status_code})")
        self._token = response.json()["access_token"]
        return self._token

    async def check_health(self) -> bool:
        await self._get_token()
        return True

    async def fetch(self, entity_type: str, cursor: Optional[str] = None) -> FetchPage:
        self.ensure_supported(entity_type)
        page_no = int(cursor or 1)
        token = await self._get_token()
        try:
            response = await self._client.get(
                "/api/Client",
                params={"pageinate": "true", "page_size": PAGE_SIZE, "page_no": page_no},
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise ConnectorError(f"HaloPSA request error: {e}") from e
        self.api_calls += 1

        if response.status_code in (401, 403):
            raise ConnectorConfigError(f"HaloPSA request not authorized ({response.status_code})")
        if response.status_code >= 400:
            raise ConnectorError(
                f"HaloPSA request failed ({response.status_code})",
                retryable=response.status_code == 429 or response.status_code >= 500,
            )

        body = response.json()
        clients = body.get("clients", [])
        total = int(body.get("record_count", len(clients)))
        has_more = page_no * PAGE_SIZE < total
        return FetchPage(records=clients, next_cursor=str(page_no + 1) if has_more else None)

    async def close(self) -> None:
        await self._client.aclose()
