"""Model discovery against first-party vendor APIs."""

import logging
from typing import Dict, List, Optional

from newapi_sync.services.constants import VendorInfo
from newapi_sync.services.http_client import BaseApiClient
from newapi_sync.services.model_tester import ANTHROPIC_VERSION
from newapi_sync.services.sub2api_client import strip_model_prefix

logger = logging.getLogger(__name__)


class DirectApiClient(BaseApiClient):
    """Lists models from a vendor API in its own discovery dialect."""

    client_name = "direct"

    def __init__(self, base_url: str, api_key: str, vendor_info: VendorInfo, name: Optional[str] = None):
        super().__init__(base_url, name=name)
        self.api_key = api_key
        self.discovery = vendor_info.model_discovery

    def _default_headers(self) -> Dict[str, str]:
        if self.discovery == "anthropic":
            return {"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION}
        if self.discovery == "gemini":
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    async def discover_models(self) -> List[str]:
        """Return the model ids the API key can use."""
        if self.discovery == "gemini":
            data = await self._make_request("GET", "/v1beta/models", params={"key": self.api_key})
            return [strip_model_prefix(m["name"]) for m in (data or {}).get("models") or [] if m.get("name")]
        data = await self._make_request("GET", "/v1/models")
        return [m["id"] for m in (data or {}).get("data") or [] if m.get("id")]
