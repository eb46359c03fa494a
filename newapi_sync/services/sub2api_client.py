"""sub2api admin and gateway client."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from newapi_sync.services.constants import DEFAULT_PAGE_SIZE
from newapi_sync.services.exceptions import ApiResponseError
from newapi_sync.services.http_client import BaseApiClient

logger = logging.getLogger(__name__)


@dataclass
class Sub2ApiGroup:
    id: int
    name: str
    platform: str
    status: str


@dataclass
class Sub2ApiAccount:
    id: int
    name: str
    platform: str
    status: str


def strip_model_prefix(model_id: str) -> str:
    """Gemini-style listings prefix ids with ``models/``."""
    return model_id[len("models/"):] if model_id.startswith("models/") else model_id


class Sub2ApiClient(BaseApiClient):
    """Client for a sub2api instance.

    The admin API authenticates with ``x-api-key`` and wraps responses in
    ``{code, message, data}``; the gateway API takes a group key as a
    bearer token and answers in the OpenAI or Gemini model-list format.
    """

    client_name = "sub2api"

    def __init__(self, base_url: str, admin_api_key: Optional[str] = None, name: Optional[str] = None,
                 timeout: Optional[float] = None):
        super().__init__(base_url, name=name, timeout=timeout)
        self.admin_api_key = admin_api_key

    def _default_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.admin_api_key:
            headers["x-api-key"] = self.admin_api_key
        return headers

    def _unwrap(self, data: Any, method: str, endpoint: str) -> Any:
        if isinstance(data, dict) and "code" in data:
            if data["code"] != 0:
                message = data.get("message", "Unknown error")
                raise ApiResponseError(f"{method} {endpoint}: {message}")
            return data.get("data")
        return data

    async def _paginate(self, endpoint: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            data = await self._make_request("GET", endpoint, params={"page": page, "page_size": DEFAULT_PAGE_SIZE})
            data = data or {}
            items.extend(data.get("items") or [])
            if page >= (data.get("pages") or 1):
                return items
            page += 1

    async def list_groups(self) -> List[Sub2ApiGroup]:
        items = await self._paginate("/api/v1/admin/groups")
        return [
            Sub2ApiGroup(
                id=item["id"],
                name=item.get("name", str(item["id"])),
                platform=(item.get("platform") or "").lower(),
                status=item.get("status", ""),
            )
            for item in items
        ]

    async def get_group_api_key(self, group_id: int) -> Optional[str]:
        """Return the first active API key bound to a group."""
        data = await self._make_request(
            "GET",
            f"/api/v1/admin/groups/{group_id}/api-keys",
            params={"page": 1, "page_size": 1},
        )
        for key in (data or {}).get("items") or []:
            if key.get("status") == "active" and key.get("key"):
                return key["key"]
        return None

    async def list_accounts(self) -> List[Sub2ApiAccount]:
        items = await self._paginate("/api/v1/admin/accounts")
        logger.info(f"[{self.name}] {len(items)} accounts found")
        return [
            Sub2ApiAccount(
                id=item["id"],
                name=item.get("name", str(item["id"])),
                platform=(item.get("platform") or "").lower(),
                status=item.get("status", ""),
            )
            for item in items
        ]

    async def get_account_models(self, account_id: int) -> List[str]:
        data = await self._make_request("GET", f"/api/v1/admin/accounts/{account_id}/models")
        return [strip_model_prefix(m["id"]) for m in data or [] if m.get("id")]

    async def list_gateway_models(self, api_key: str, platform: str) -> List[str]:
        """List the models a group key can reach through the gateway."""
        if platform == "gemini":
            data = await self._make_request("GET", "/v1beta/models", headers={"Authorization": f"Bearer {api_key}"})
            return [strip_model_prefix(m["name"]) for m in (data or {}).get("models") or [] if m.get("name")]
        data = await self._make_request("GET", "/v1/models", headers={"Authorization": f"Bearer {api_key}"})
        return [m["id"] for m in (data or {}).get("data") or [] if m.get("id")]
