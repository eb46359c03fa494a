"""new-api REST client, used both for upstream gateways and for the target."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import httpx

from newapi_sync.services.constants import DEFAULT_PAGE_SIZE, QUOTA_PER_DOLLAR
from newapi_sync.services.exceptions import ApiResponseError
from newapi_sync.services.http_client import BaseApiClient
from newapi_sync.services.model_tester import ModelTester, ProbeCallback
from newapi_sync.services.pricing_parser import parse_pricing
from newapi_sync.services.types import (
    Channel,
    ModelMeta,
    TestModelsResult,
    UpstreamPricing,
    UpstreamToken,
    Vendor,
)

logger = logging.getLogger(__name__)


@dataclass
class HealthStatus:
    ok: bool
    balance: Optional[float] = None
    error: Optional[str] = None


def _page_items(data: Any) -> List[Dict[str, Any]]:
    """Extract the item list from the paginated shapes new-api returns."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return data.get("items") or data.get("data") or []
    return []


class NewApiClient(BaseApiClient):
    """Client for a new-api instance's management API.

    Authenticates with a system access token plus the ``New-Api-User``
    header, and unwraps the ``{success, message, data}`` envelope.
    """

    client_name = "target"

    def __init__(
        self,
        base_url: str,
        system_access_token: str,
        user_id: int,
        name: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize new-api client.

        Args:
            base_url: Instance base URL.
            system_access_token: System access token of an admin user.
            user_id: Id of the user owning the access token.
            name: Label used in log messages.
            timeout: Per-request timeout in seconds.
        """
        super().__init__(base_url, name=name, timeout=timeout)
        self.system_access_token = system_access_token
        self.user_id = user_id
        logger.debug(f"[{self.name}] new-api client for {self.base_url} with token {system_access_token[:8]}...")

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.system_access_token}",
            "New-Api-User": str(self.user_id),
        }

    def _unwrap(self, data: Any, method: str, endpoint: str) -> Any:
        if isinstance(data, dict) and "success" in data:
            if not data.get("success"):
                message = data.get("message") or "API returned success: false"
                raise ApiResponseError(f"{method} {endpoint}: {message}")
            return data.get("data")
        return data

    async def _paginate(self, endpoint: str, page_param: str, start_page: int) -> List[Dict[str, Any]]:
        """Collect every item of a paged listing.

        Stops on a short page, once a declared ``total`` is reached, or when a
        page only repeats ids already seen (instances that ignore paging).
        """
        items: List[Dict[str, Any]] = []
        seen_ids = set()
        page = start_page
        while True:
            data = await self._make_request(
                "GET",
                endpoint,
                params={page_param: page, "page_size": DEFAULT_PAGE_SIZE},
            )
            batch = _page_items(data)
            fresh = [item for item in batch if item.get("id") is None or item["id"] not in seen_ids]
            if batch and not fresh:
                logger.warning(f"[{self.name}] {endpoint} page {page} repeats earlier items, stopping")
                return items
            items.extend(fresh)
            seen_ids.update(item["id"] for item in fresh if item.get("id") is not None)

            total = data.get("total") if isinstance(data, dict) else None
            if len(batch) < DEFAULT_PAGE_SIZE:
                return items
            if isinstance(total, int) and len(items) >= total:
                return items
            page += 1

    # ------------------------------------------------------------------
    # Account

    async def health_check(self) -> HealthStatus:
        """Verify the instance is reachable and the credentials are valid.

        Returns:
            HealthStatus with the account balance in dollars when available.
        """
        try:
            data = await self._make_request("GET", "/api/user/self")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[{self.name}] Health check failed: {e}")
            return HealthStatus(ok=False, error=str(e) or type(e).__name__)
        quota = (data or {}).get("quota")
        balance = quota / QUOTA_PER_DOLLAR if quota is not None else None
        return HealthStatus(ok=True, balance=balance)

    async def fetch_balance(self) -> Optional[float]:
        """Return the account balance in dollars, or None if unavailable."""
        status = await self.health_check()
        return status.balance if status.ok else None

    async def fetch_pricing(self) -> UpstreamPricing:
        """Fetch and parse the pricing catalog.

        ``/api/pricing_new`` is tried first and only accepted when it returns
        the array shape, since some forks expose endpoint types there while
        ``/api/pricing`` returns the keyed shape without them.

        Raises:
            ApiResponseError: If neither endpoint returns usable pricing.
        """
        for endpoint in ("/api/pricing_new", "/api/pricing"):
            try:
                body = await self._make_request("GET", endpoint, raw=True)
            except (httpx.HTTPError, ValueError) as e:
                logger.debug(f"[{self.name}] {endpoint} unavailable: {e}")
                continue
            if not isinstance(body, dict) or not body.get("success") or not body.get("data"):
                continue
            if endpoint == "/api/pricing_new" and not isinstance(body["data"], list):
                continue
            pricing = parse_pricing(body)
            logger.info(
                f"[{self.name}] Pricing ({pricing.source_format}): "
                f"{len(pricing.groups)} groups, {len(pricing.models)} models"
            )
            return pricing
        raise ApiResponseError("Failed to fetch pricing from both /api/pricing_new and /api/pricing")

    # ------------------------------------------------------------------
    # Tokens

    async def list_tokens(self) -> List[UpstreamToken]:
        items = await self._paginate("/api/token/", "p", 0)
        return [UpstreamToken.from_api(item) for item in items]

    async def create_token(self, name: str, group: str) -> None:
        """Create an unlimited, non-expiring token bound to ``group``.

        The key is not returned on create; re-list tokens to read it.
        """
        await self._make_request("POST", "/api/token/", json_data={
            "name": name,
            "group": group,
            "expired_time": -1,
            "unlimited_quota": True,
            "model_limits_enabled": False,
        })

    async def delete_token(self, token_id: int) -> None:
        await self._make_request("DELETE", f"/api/token/{token_id}")

    async def test_models_with_key(
        self,
        api_key: str,
        models: List[str],
        channel_type: int,
        on_probe: Optional[ProbeCallback] = None,
        concurrency: Optional[int] = None,
    ) -> TestModelsResult:
        """Probe models through this instance's relay API with a group token."""
        async with ModelTester(self.base_url, api_key) as tester:
            return await tester.test_models(
                models,
                channel_type,
                concurrency=concurrency,
                on_probe=on_probe,
            )

    # ------------------------------------------------------------------
    # Target resources

    async def get_options(self, keys: Iterable[str]) -> Dict[str, str]:
        """Return the current values of the given option keys."""
        wanted = set(keys)
        data = await self._make_request("GET", "/api/option/")
        return {
            option["key"]: option.get("value", "")
            for option in data or []
            if option.get("key") in wanted
        }

    async def update_option(self, key: str, value: str) -> None:
        await self._make_request("PUT", "/api/option/", json_data={"key": key, "value": value})

    async def list_channels(self) -> List[Channel]:
        items = await self._paginate("/api/channel/", "p", 0)
        return [Channel.from_api(item) for item in items]

    async def create_channel(self, channel: Channel) -> Optional[int]:
        """Create a channel and return its id when the target reports one.

        The wrapped ``{mode: single, channel}`` body is tried first; older
        targets only accept the flat channel body.
        """
        payload = channel.to_payload(include_id=False)
        try:
            data = await self._make_request("POST", "/api/channel/", json_data={"mode": "single", "channel": payload})
        except (httpx.HTTPStatusError, ApiResponseError) as e:
            if isinstance(e, httpx.HTTPStatusError) and e.response.status_code not in (400, 404, 422):
                raise
            logger.debug(f"[{self.name}] Wrapped channel create rejected ({e}), retrying flat body")
            data = await self._make_request("POST", "/api/channel/", json_data=payload)
        if isinstance(data, dict):
            return data.get("id")
        return None

    async def update_channel(self, channel: Channel) -> None:
        if channel.id is None:
            raise ValueError(f"Channel {channel.name} has no id")
        await self._make_request("PUT", "/api/channel/", json_data=channel.to_payload())

    async def delete_channel(self, channel_id: int) -> None:
        await self._make_request("DELETE", f"/api/channel/{channel_id}")

    async def list_models(self) -> List[ModelMeta]:
        items = await self._paginate("/api/models/", "p", 0)
        return [ModelMeta.from_api(item) for item in items]

    async def create_model(self, model: ModelMeta) -> None:
        await self._make_request("POST", "/api/models/", json_data=model.to_payload(include_id=False))

    async def update_model(self, model: ModelMeta) -> None:
        if model.id is None:
            raise ValueError(f"Model {model.model_name} has no id")
        await self._make_request("PUT", "/api/models/", json_data=model.to_payload())

    async def delete_model(self, model_id: int) -> None:
        await self._make_request("DELETE", f"/api/models/{model_id}")

    async def list_vendors(self) -> List[Vendor]:
        items = await self._paginate("/api/vendors/", "page", 1)
        return [Vendor(id=item["id"], name=item.get("name", "")) for item in items if "id" in item]

    async def cleanup_orphaned_models(self) -> int:
        """Ask the target to delete models bound to no channel.

        Returns:
            Number of models deleted.
        """
        try:
            data = await self._make_request("DELETE", "/api/models/orphaned")
        except httpx.HTTPStatusError as e:
            if e.response.status_code not in (404, 405):
                raise
            logger.warning(f"[{self.name}] Orphan cleanup not supported by this instance")
            return 0
        deleted = (data or {}).get("deleted", 0) if isinstance(data, dict) else 0
        if deleted:
            logger.info(f"[{self.name}] Cleaned up {deleted} orphaned models")
        return deleted
