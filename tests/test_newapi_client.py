"""Tests for the new-api client."""

import json
from unittest.mock import patch

import httpx
import pytest
from tenacity import wait_none

from newapi_sync.services.constants import DEFAULT_PAGE_SIZE
from newapi_sync.services.exceptions import ApiResponseError
from newapi_sync.services.http_client import BaseApiClient, is_retriable_error
from newapi_sync.services.newapi_client import NewApiClient
from newapi_sync.services.types import Channel


class FakeNewApi:
    """Routes mock-transport requests to per-path handlers and records them."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def route(self, method, path, handler):
        self.routes[(method, path)] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"success": False, "message": "not found"})
        result = handler(request)
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=result)

    def calls(self, method, path):
        return [r for r in self.requests if r.method == method and r.url.path == path]


def ok(data=None):
    return {"success": True, "message": "", "data": data}


@pytest.fixture
def fake():
    return FakeNewApi()


@pytest.fixture
async def client(fake):
    """new-api client wired to the fake instance, without retry delays."""
    client = NewApiClient("https://target.example.com/", "access-token-123", 1)
    with patch.object(BaseApiClient._make_request.retry, "wait", wait_none()):
        async with client:
            await client._client.aclose()
            client._client = httpx.AsyncClient(
                base_url=client.base_url,
                headers=client._default_headers(),
                transport=httpx.MockTransport(fake),
            )
            yield client


class TestNewApiClientBasics:
    """Tests for auth headers, envelopes and retries."""

    @pytest.mark.asyncio
    async def test_client_context_manager(self):
        """Test client can be used as async context manager."""
        client = NewApiClient("https://target.example.com/", "token", 1)
        assert client.base_url == "https://target.example.com"

        async with client:
            assert client._client is not None

        assert client._client is None

    @pytest.mark.asyncio
    async def test_auth_headers(self, client, fake):
        """Test bearer token and New-Api-User headers."""
        fake.route("GET", "/api/user/self", lambda r: ok({"quota": 1000000}))

        health = await client.health_check()

        request = fake.requests[0]
        assert request.headers["Authorization"] == "Bearer access-token-123"
        assert request.headers["New-Api-User"] == "1"
        assert health.ok is True
        assert health.balance == 2.0

    @pytest.mark.asyncio
    async def test_envelope_failure(self, client, fake):
        """Test that success: false raises ApiResponseError."""
        fake.route("GET", "/api/option/", lambda r: {"success": False, "message": "permission denied"})

        with pytest.raises(ApiResponseError, match="permission denied"):
            await client.get_options(["GroupRatio"])

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, client, fake):
        """Test that 5xx responses are retried three times in total."""
        fake.route("GET", "/api/user/self", lambda r: httpx.Response(502, text="bad gateway"))

        health = await client.health_check()

        assert health.ok is False
        assert len(fake.calls("GET", "/api/user/self")) == 3

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, client, fake):
        """Test that 4xx responses fail immediately."""
        fake.route("DELETE", "/api/channel/9", lambda r: httpx.Response(403, text="forbidden"))

        with pytest.raises(httpx.HTTPStatusError):
            await client.delete_channel(9)
        assert len(fake.calls("DELETE", "/api/channel/9")) == 1

    def test_retry_predicate(self):
        """Test which errors count as retriable."""
        request = httpx.Request("GET", "https://x")
        assert is_retriable_error(httpx.ReadTimeout("slow", request=request))
        assert is_retriable_error(httpx.ConnectError("down", request=request))
        server = httpx.HTTPStatusError("boom", request=request, response=httpx.Response(503, request=request))
        client_error = httpx.HTTPStatusError("no", request=request, response=httpx.Response(400, request=request))
        assert is_retriable_error(server)
        assert not is_retriable_error(client_error)
        assert not is_retriable_error(ApiResponseError("x"))


class TestFetchPricing:
    """Tests for pricing endpoint selection."""

    @pytest.mark.asyncio
    async def test_pricing_new_array_shape_preferred(self, client, fake):
        """Test that /api/pricing_new is used when it returns the array shape."""
        fake.route("GET", "/api/pricing_new", lambda r: {
            "success": True,
            "data": [{"model_name": "gpt-4o", "model_ratio": 1, "enable_groups": ["default"]}],
            "usable_group": {"default": "Default"},
            "group_ratio": {"default": 1},
        })

        pricing = await client.fetch_pricing()

        assert pricing.source_format == "array"
        assert fake.calls("GET", "/api/pricing") == []

    @pytest.mark.asyncio
    async def test_keyed_pricing_new_falls_back(self, client, fake):
        """Test that a keyed /api/pricing_new response falls through to /api/pricing."""
        keyed = {"success": True, "data": {"model_group": {"default": {"GroupRatio": 1, "ModelPrice": {}}}}}
        fake.route("GET", "/api/pricing_new", lambda r: keyed)
        fake.route("GET", "/api/pricing", lambda r: keyed)

        pricing = await client.fetch_pricing()

        assert pricing.source_format == "keyed"
        assert len(fake.calls("GET", "/api/pricing")) == 1

    @pytest.mark.asyncio
    async def test_missing_pricing_new(self, client, fake):
        """Test fallback when /api/pricing_new does not exist."""
        fake.route("GET", "/api/pricing", lambda r: {
            "success": True,
            "data": [{"model_name": "gpt-4o", "model_ratio": 1, "enable_groups": ["default"]}],
            "usable_group": {"default": "Default"},
        })

        pricing = await client.fetch_pricing()

        assert [g.name for g in pricing.groups] == ["default"]

    @pytest.mark.asyncio
    async def test_no_pricing(self, client, fake):
        """Test that missing pricing on both endpoints raises."""
        with pytest.raises(ApiResponseError, match="Failed to fetch pricing"):
            await client.fetch_pricing()


class TestTargetResources:
    """Tests for channel, model, option and vendor endpoints."""

    @pytest.mark.asyncio
    async def test_channel_pagination(self, client, fake):
        """Test that listing follows pages until a short page."""
        def channels(request):
            page = int(request.url.params["p"])
            count = DEFAULT_PAGE_SIZE if page == 0 else 1
            items = [
                {"id": page * 1000 + i, "name": f"c{page}-{i}", "type": 1, "tag": "provA"}
                for i in range(count)
            ]
            return ok({"items": items, "total": DEFAULT_PAGE_SIZE + 1})

        fake.route("GET", "/api/channel/", channels)

        result = await client.list_channels()

        assert len(result) == DEFAULT_PAGE_SIZE + 1
        assert result[0].tag == "provA"
        assert len(fake.calls("GET", "/api/channel/")) == 2

    @pytest.mark.asyncio
    async def test_pagination_ignored_by_server(self, client, fake):
        """Test that listing stops when every page returns the same items."""
        full_page = [{"id": i, "name": f"c{i}", "type": 1} for i in range(DEFAULT_PAGE_SIZE)]
        fake.route("GET", "/api/channel/", lambda r: ok(full_page))

        result = await client.list_channels()

        assert len(result) == DEFAULT_PAGE_SIZE
        assert len(fake.calls("GET", "/api/channel/")) == 2

    @pytest.mark.asyncio
    async def test_pagination_stops_at_declared_total(self, client, fake):
        """Test that a full page reaching the declared total is the last one."""
        items = [{"id": i, "model_name": f"m{i}"} for i in range(DEFAULT_PAGE_SIZE)]
        fake.route("GET", "/api/models/", lambda r: ok({"items": items, "total": DEFAULT_PAGE_SIZE}))

        result = await client.list_models()

        assert len(result) == DEFAULT_PAGE_SIZE
        assert len(fake.calls("GET", "/api/models/")) == 1

    @pytest.mark.asyncio
    async def test_vendor_pages_start_at_one(self, client, fake):
        """Test that the vendor listing is paged from 1."""
        fake.route("GET", "/api/vendors/", lambda r: ok({"items": [{"id": 3, "name": "Anthropic"}]}))

        vendors = await client.list_vendors()

        assert vendors[0].id == 3
        assert fake.requests[0].url.params["page"] == "1"

    @pytest.mark.asyncio
    async def test_create_channel_wrapped_body(self, client, fake):
        """Test the wrapped single-channel create body."""
        fake.route("POST", "/api/channel/", lambda r: ok({"id": 42}))
        channel = Channel(name="vip-provA", type=1, key="sk-1", base_url="https://up", models="gpt-4o", group="vip-provA")

        channel_id = await client.create_channel(channel)

        body = json.loads(fake.requests[0].content)
        assert channel_id == 42
        assert body["mode"] == "single"
        assert body["channel"]["name"] == "vip-provA"
        assert "id" not in body["channel"]

    @pytest.mark.asyncio
    async def test_create_channel_flat_fallback(self, client, fake):
        """Test falling back to the flat body when the wrapped one is rejected."""
        def create(request):
            body = json.loads(request.content)
            if "mode" in body:
                return httpx.Response(400, json={"success": False, "message": "invalid body"})
            return ok()

        fake.route("POST", "/api/channel/", create)
        channel = Channel(name="vip-provA", type=1, key="sk-1", base_url="https://up", models="gpt-4o", group="vip-provA")

        assert await client.create_channel(channel) is None
        assert json.loads(fake.requests[1].content)["name"] == "vip-provA"

    @pytest.mark.asyncio
    async def test_create_channel_fallback_on_envelope_failure(self, client, fake):
        """Test falling back to the flat body when the wrapped one gets success: false."""
        def create(request):
            body = json.loads(request.content)
            if "mode" in body:
                return {"success": False, "message": "unknown field mode"}
            return ok({"id": 7})

        fake.route("POST", "/api/channel/", create)
        channel = Channel(name="vip-provA", type=1, key="sk-1", base_url="https://up", models="gpt-4o", group="vip-provA")

        assert await client.create_channel(channel) == 7
        assert len(fake.calls("POST", "/api/channel/")) == 2
        assert "mode" not in json.loads(fake.requests[1].content)

    @pytest.mark.asyncio
    async def test_create_channel_forbidden_not_retried_flat(self, client, fake):
        """Test that an authorization failure is raised instead of retried with the flat body."""
        fake.route("POST", "/api/channel/", lambda r: httpx.Response(403, json={"success": False, "message": "forbidden"}))
        channel = Channel(name="vip-provA", type=1, key="sk-1", base_url="https://up", models="gpt-4o", group="vip-provA")

        with pytest.raises(httpx.HTTPStatusError):
            await client.create_channel(channel)
        assert len(fake.calls("POST", "/api/channel/")) == 1

    @pytest.mark.asyncio
    async def test_update_requires_id(self, client):
        """Test that updates without an id are rejected before any request."""
        channel = Channel(name="x", type=1, key="", base_url="", models="", group="")
        with pytest.raises(ValueError, match="no id"):
            await client.update_channel(channel)

    @pytest.mark.asyncio
    async def test_get_options_filters_keys(self, client, fake):
        """Test that only requested option keys are returned."""
        fake.route("GET", "/api/option/", lambda r: ok([
            {"key": "GroupRatio", "value": '{"default":1}'},
            {"key": "SMTPServer", "value": "smtp.example.com"},
        ]))

        options = await client.get_options(["GroupRatio", "ModelRatio"])

        assert options == {"GroupRatio": '{"default":1}'}

    @pytest.mark.asyncio
    async def test_update_option(self, client, fake):
        """Test the option update body."""
        fake.route("PUT", "/api/option/", lambda r: ok())

        await client.update_option("AutoGroups", '["vip"]')

        assert json.loads(fake.requests[0].content) == {"key": "AutoGroups", "value": '["vip"]'}

    @pytest.mark.asyncio
    async def test_orphan_cleanup(self, client, fake):
        """Test the orphan purge count."""
        fake.route("DELETE", "/api/models/orphaned", lambda r: ok({"deleted": 3}))
        assert await client.cleanup_orphaned_models() == 3

    @pytest.mark.asyncio
    async def test_orphan_cleanup_unsupported(self, client, fake):
        """Test that instances without the orphan endpoint report zero."""
        assert await client.cleanup_orphaned_models() == 0


class TestTokens:
    """Tests for token endpoints."""

    @pytest.mark.asyncio
    async def test_create_token_body(self, client, fake):
        """Test that tokens are created unlimited and non-expiring."""
        fake.route("POST", "/api/token/", lambda r: ok())

        await client.create_token("vip-provA", "vip")

        body = json.loads(fake.requests[0].content)
        assert body["name"] == "vip-provA"
        assert body["group"] == "vip"
        assert body["expired_time"] == -1
        assert body["unlimited_quota"] is True

    @pytest.mark.asyncio
    async def test_list_tokens(self, client, fake):
        """Test token parsing."""
        fake.route("GET", "/api/token/", lambda r: ok({"items": [{"id": 1, "name": "vip-provA", "key": "abc", "group": "vip"}]}))

        tokens = await client.list_tokens()

        assert tokens[0].name == "vip-provA"
        assert tokens[0].group == "vip"
