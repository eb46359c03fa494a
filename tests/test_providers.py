"""Tests for the provider adapters."""

from unittest.mock import AsyncMock, patch

import pytest

from newapi_sync.services.config_loader import parse_config
from newapi_sync.services.constants import ChannelType
from newapi_sync.services.exceptions import ApiResponseError
from newapi_sync.services.providers import (
    CostTracker,
    DirectAdapter,
    NewApiAdapter,
    Sub2ApiAdapter,
    create_adapter,
    create_adapters,
)
from newapi_sync.services.sub2api_client import Sub2ApiAccount, Sub2ApiGroup
from newapi_sync.services.types import (
    AggregationState,
    GroupInfo,
    ModelInfo,
    ProbeResult,
    TestModelsResult,
    UpstreamPricing,
    UpstreamToken,
)

TARGET = {"baseUrl": "https://target.example.com", "systemAccessToken": "tok", "userId": 1}


def make_config(providers, **extra):
    return parse_config({"target": TARGET, "providers": providers, **extra})


def newapi_provider(**overrides):
    provider = {
        "type": "newapi",
        "name": "provA",
        "baseUrl": "https://a.example.com",
        "systemAccessToken": "tok-a",
        "userId": 2,
        "probeCostSampling": "off",
    }
    provider.update(overrides)
    return provider


class FakeUpstream:
    """In-memory new-api upstream: pricing, tokens, probes and balance."""

    name = "provA"

    def __init__(self, pricing, working, balances=None):
        self.pricing = pricing
        self.working = set(working)
        self.balances = list(balances or [])
        self.tokens = []
        self.deleted = []
        self.probed = {}
        self._next_id = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def fetch_pricing(self):
        return self.pricing

    async def fetch_balance(self):
        return self.balances.pop(0) if self.balances else None

    async def list_tokens(self):
        return list(self.tokens)

    async def create_token(self, name, group):
        self._next_id += 1
        self.tokens.append(UpstreamToken(self._next_id, name, f"key-{group}", group))

    async def delete_token(self, token_id):
        self.deleted.append(token_id)
        self.tokens = [t for t in self.tokens if t.id != token_id]

    async def test_models_with_key(self, api_key, models, channel_type, on_probe=None, concurrency=None):
        self.probed[api_key] = list(models)
        working = [m for m in models if m in self.working]
        return TestModelsResult(working_models=working, avg_response_time=100.0 if working else None)


def make_tester(working):
    """ModelTester replacement answering from a fixed set of working models."""

    class FakeTester:
        calls = []

        def __init__(self, base_url, api_key, timeout=None):
            self.base_url = base_url
            self.api_key = api_key

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            return None

        async def test_models(self, models, channel_type, use_responses_api=False, concurrency=None, on_probe=None):
            FakeTester.calls.append({
                "api_key": self.api_key,
                "models": list(models),
                "channel_type": channel_type,
                "use_responses_api": use_responses_api,
            })
            ok = [m for m in models if m in working]
            return TestModelsResult(working_models=ok, avg_response_time=200.0 if ok else None)

    return FakeTester


@pytest.fixture
def gateway_pricing():
    """Upstream catalog with a cheap group, a blacklisted group and an expensive group."""
    return UpstreamPricing(
        groups=[
            GroupInfo("default", "Default", 1.0, ["gpt-4o", "claude-3-opus", "dall-e-3"]),
            GroupInfo("vip", "VIP", 0.4, ["gpt-4o-2024-08-06", "deepseek-chat"]),
            GroupInfo("free", "Free tier", 0.1, ["gpt-4o"]),
            GroupInfo("premium", "Premium", 2.0, ["gpt-4o"]),
            GroupInfo("claude-only", "Claude", 0.5, ["claude-3-opus"], ChannelType.ANTHROPIC),
        ],
        models=[
            ModelInfo("gpt-4o", 1.25, 4, supported_endpoints=["openai"]),
            ModelInfo("gpt-4o-2024-08-06", 1.0, 4),
            ModelInfo("claude-3-opus", 7.5, 5),
            ModelInfo("deepseek-chat", 0.5, 2),
            ModelInfo("dall-e-3", 0, 0, model_price=0.04),
        ],
        endpoint_paths={"openai": "/v1/chat/completions"},
    )


async def run_newapi(config, upstream, state=None):
    adapter = create_adapter(config.providers[0], config)
    adapter.client = upstream
    state = state or AggregationState()
    report = await adapter.run(state)
    return adapter, state, report


class TestNewApiAdapter:
    """Tests for upstream new-api gateways."""

    @pytest.mark.asyncio
    async def test_publishes_working_groups(self, gateway_pricing):
        """Test channels, group ratios and folded model prices."""
        config = make_config(
            [newapi_provider()],
            blacklist=["free"],
            modelMapping={"gpt-4o-2024-08-06": "gpt-4o"},
        )
        upstream = FakeUpstream(gateway_pricing, working={"gpt-4o", "deepseek-chat"})

        adapter, state, report = await run_newapi(config, upstream)

        assert report.success is True, report.error
        channels = {c.name: c for c in state.channels}
        assert set(channels) == {"default-provA", "vip-provA"}
        assert channels["vip-provA"].models == ["gpt-4o", "deepseek-chat"]
        assert channels["vip-provA"].key == "sk-key-vip"
        assert channels["vip-provA"].base_url == "https://a.example.com"
        assert channels["vip-provA"].remark == "vip-provA"
        assert channels["vip-provA"].priority == 50
        assert channels["default-provA"].models == ["gpt-4o"]
        assert {g.name: g.ratio for g in state.merged_groups} == {"default-provA": 1.0, "vip-provA": 0.4}

        # Mapped model keeps the cheaper of its two upstream prices
        assert state.merged_models["gpt-4o"].ratio == 1.0
        assert state.merged_models["deepseek-chat"].ratio == 0.5
        assert "claude-3-opus" not in state.merged_models
        assert "dall-e-3" not in state.merged_models
        assert report.groups == 2
        assert report.models == 2

    @pytest.mark.asyncio
    async def test_group_filters(self, gateway_pricing):
        """Test that blacklisted and overpriced groups never get tokens or probes."""
        config = make_config([newapi_provider()], blacklist=["provA/free"])
        upstream = FakeUpstream(gateway_pricing, working={"gpt-4o"})

        adapter, state, report = await run_newapi(config, upstream)

        group_names = [g.name for g in adapter.groups]
        assert "free" not in group_names
        assert "premium" not in group_names
        assert {t.group for t in upstream.tokens} == {"default", "vip"}

    @pytest.mark.asyncio
    async def test_scoped_blacklist_ignores_other_providers(self, gateway_pricing):
        """Test that a blacklist scoped to another provider does not apply."""
        config = make_config([newapi_provider()], blacklist=["provB/free"])
        upstream = FakeUpstream(gateway_pricing, working={"gpt-4o"})

        adapter, _state, _report = await run_newapi(config, upstream)

        assert "free" in [g.name for g in adapter.groups]

    @pytest.mark.asyncio
    async def test_failed_group_token_deleted(self, gateway_pricing):
        """Test that a group with no working models loses its token."""
        config = make_config([newapi_provider()], blacklist=["free"])
        upstream = FakeUpstream(gateway_pricing, working={"gpt-4o"})

        _adapter, state, report = await run_newapi(config, upstream)

        assert not any(c.name.startswith("claude-only") for c in state.channels)
        assert "claude-only-provA" not in {t.name for t in upstream.tokens}
        assert report.tokens.deleted == 1

    @pytest.mark.asyncio
    async def test_enabled_groups_and_models(self, gateway_pricing):
        """Test group and model allow-lists."""
        config = make_config([newapi_provider(enabledGroups=["vip"], enabledModels=["deepseek*"])])
        upstream = FakeUpstream(gateway_pricing, working={"gpt-4o", "deepseek-chat"})

        _adapter, state, _report = await run_newapi(config, upstream)

        assert [c.name for c in state.channels] == ["vip-provA"]
        assert state.channels[0].models == ["deepseek-chat"]

    @pytest.mark.asyncio
    async def test_adjustment_splits_tiers(self, gateway_pricing):
        """Test that a per-model surcharge splits a group into price tiers."""
        config = make_config([newapi_provider(enabledGroups=["vip"], priceAdjustment={"default": 0, "deepseek": 0.5})])
        upstream = FakeUpstream(gateway_pricing, working={"gpt-4o-2024-08-06", "deepseek-chat"})

        _adapter, state, _report = await run_newapi(config, upstream)

        ratios = {g.name: g.ratio for g in state.merged_groups}
        assert ratios == {"vip-provA-t0": 0.4, "vip-provA-t1": pytest.approx(0.6)}

    @pytest.mark.asyncio
    async def test_upstream_failure_is_reported(self, gateway_pricing):
        """Test that adapter errors end up on the report instead of raising."""
        config = make_config([newapi_provider()])
        upstream = FakeUpstream(gateway_pricing, working=set())
        upstream.fetch_pricing = AsyncMock(side_effect=ApiResponseError("Failed to fetch pricing"))

        _adapter, state, report = await run_newapi(config, upstream)

        assert report.success is False
        assert "Failed to fetch pricing" in report.error
        assert state.channels == []

    @pytest.mark.asyncio
    async def test_probe_cost_sampling(self, gateway_pricing):
        """Test that balance drops across group probes add up to the test cost."""
        config = make_config([newapi_provider(probeCostSampling="group", enabledGroups=["default", "vip"])])
        upstream = FakeUpstream(gateway_pricing, working={"gpt-4o"}, balances=[10.0, 9.5, 9.25])

        _adapter, _state, report = await run_newapi(config, upstream)

        assert report.test_cost == pytest.approx(0.75)


class TestCostTracker:
    """Tests for balance sampling modes."""

    @pytest.mark.asyncio
    async def test_off_never_reads_balance(self):
        """Test that the off mode does no balance calls."""
        client = FakeUpstream(None, working=set(), balances=[5.0])
        tracker = CostTracker(client, "off")

        await tracker.start()

        assert tracker.enabled is False
        assert tracker.probe_callback() is None
        assert client.balances == [5.0]

    @pytest.mark.asyncio
    async def test_model_mode_samples_every_probe(self):
        """Test per-probe sampling."""
        client = FakeUpstream(None, working=set(), balances=[5.0, 4.9, 4.7])
        tracker = CostTracker(client, "model")
        await tracker.start()
        tracker.begin_group()

        callback = tracker.probe_callback()
        await callback(ProbeResult("gpt-4o", True, 120.0))
        await callback(ProbeResult("gpt-4o-mini", False))

        assert await tracker.end_group() == pytest.approx(0.3)
        assert tracker.total == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_balance_increase_is_ignored(self):
        """Test that top-ups between samples do not count as negative cost."""
        client = FakeUpstream(None, working=set(), balances=[5.0, 6.0])
        tracker = CostTracker(client, "group")
        await tracker.start()
        tracker.begin_group()

        assert await tracker.end_group() == 0.0
        assert tracker.total == 0.0


class TestDirectAdapter:
    """Tests for first-party vendor keys."""

    def _adapter(self, **overrides):
        provider = {"type": "direct", "name": "oai", "vendor": "openai", "apiKey": "sk-openai"}
        provider.update(overrides)
        config = make_config([provider])
        adapter = create_adapter(config.providers[0], config)
        adapter.client = FakeUpstream(None, working=set())
        return adapter

    @pytest.mark.asyncio
    async def test_single_channel(self):
        """Test the vendor channel, its ratio and default model prices."""
        adapter = self._adapter(groupRatio=0.8)
        adapter.client.discover_models = AsyncMock(
            return_value=["gpt-4o", "gpt-image-1", "o3-mini", "text-embedding-3-small"]
        )
        tester = make_tester({"gpt-4o", "o3-mini"})
        state = AggregationState()
        state.fold_model("gpt-4o", 0.5, 3)

        with patch("newapi_sync.services.providers.direct.ModelTester", tester):
            report = await adapter.run(state)

        assert report.success is True, report.error
        assert [c.name for c in state.channels] == ["openai-oai"]
        channel = state.channels[0]
        assert channel.models == ["gpt-4o", "o3-mini"]
        assert channel.type == ChannelType.OPENAI
        assert channel.base_url == "https://api.openai.com"
        assert channel.key == "sk-openai"
        assert state.merged_groups[0].ratio == 0.8
        assert tester.calls[0]["use_responses_api"] is True
        # Prices from earlier providers win over the vendor default
        assert state.merged_models["gpt-4o"].ratio == 0.5
        assert state.merged_models["o3-mini"].ratio == 1.0

    @pytest.mark.asyncio
    async def test_no_models_after_filters(self):
        """Test the failure when discovery yields only non-text models."""
        adapter = self._adapter()
        adapter.client.discover_models = AsyncMock(return_value=["dall-e-3", "whisper-1"])

        report = await adapter.run(AggregationState())

        assert report.success is False
        assert report.error == "No models passed filters"

    @pytest.mark.asyncio
    async def test_nothing_works(self):
        """Test the failure when every probe fails."""
        adapter = self._adapter()
        adapter.client.discover_models = AsyncMock(return_value=["gpt-4o"])

        with patch("newapi_sync.services.providers.direct.ModelTester", make_tester(set())):
            report = await adapter.run(AggregationState())

        assert report.success is False
        assert "No working models" in report.error

    @pytest.mark.asyncio
    async def test_ratio_above_ceiling(self):
        """Test that a vendor key priced above 1 publishes nothing."""
        adapter = self._adapter(groupRatio=1.2)
        adapter.client.discover_models = AsyncMock(return_value=["gpt-4o"])
        state = AggregationState()

        with patch("newapi_sync.services.providers.direct.ModelTester", make_tester({"gpt-4o"})):
            report = await adapter.run(state)

        assert report.success is False
        assert "above 1" in report.error
        assert state.channels == []


class TestSub2ApiAdapter:
    """Tests for sub2api account pools."""

    def _seeded_state(self):
        """State where an earlier provider already sells claude-sonnet-4 at 0.4."""
        state = AggregationState()
        state.add_tiers(
            {0.4: ["claude-sonnet-4"]},
            "vip-provA",
            channel_type=lambda _models: ChannelType.ANTHROPIC,
            key="sk-a",
            base_url="https://a.example.com",
            provider="provA",
            description="vip via provA",
            priority=10,
            weight=10,
            remark="vip-provA",
        )
        state.fold_model("claude-sonnet-4", 1.5, 5)
        return state

    @pytest.mark.asyncio
    async def test_configured_groups_priced_below_reference(self):
        """Test reference pricing, the discount and tier naming."""
        config = make_config([{
            "type": "sub2api",
            "name": "pool",
            "baseUrl": "https://s2a.example.com",
            "groups": [
                {"key": "sk-g1", "platform": "anthropic", "name": "claude-max"},
                {"key": "sk-g2", "platform": "gemini"},
            ],
        }])
        adapter = create_adapter(config.providers[0], config)
        models = {
            "anthropic": ["claude-sonnet-4", "claude-opus-4"],
            "gemini": ["gemini-2.5-pro", "imagen-3"],
        }
        adapter.client = FakeUpstream(None, working=set())
        adapter.client.list_gateway_models = AsyncMock(side_effect=lambda key, platform: models[platform])
        tester = make_tester({"claude-sonnet-4", "claude-opus-4", "gemini-2.5-pro"})
        state = self._seeded_state()

        with patch("newapi_sync.services.providers.sub2api.ModelTester", tester):
            report = await adapter.run(state)

        assert report.success is True, report.error
        ratios = {g.name: g.ratio for g in state.merged_groups if g.provider == "pool"}
        assert ratios == {
            "pool-claude-max-t0": pytest.approx(0.36),
            "pool-claude-max-t1": pytest.approx(0.9),
            "pool-gemini": pytest.approx(0.9),
        }
        channels = {c.name: c for c in state.channels if c.provider == "pool"}
        assert channels["pool-claude-max-t0"].models == ["claude-sonnet-4"]
        assert channels["pool-claude-max-t0"].type == ChannelType.ANTHROPIC
        assert channels["pool-gemini"].type == ChannelType.GEMINI
        assert channels["pool-gemini"].key == "sk-g2"
        # Earlier price kept, new models get the default
        assert state.merged_models["claude-sonnet-4"].ratio == 1.5
        assert state.merged_models["claude-opus-4"].ratio == 1.0
        assert report.groups == 2

    @pytest.mark.asyncio
    async def test_admin_discovery(self):
        """Test groups, keys and account models discovered through the admin API."""
        config = make_config([{
            "type": "sub2api",
            "name": "pool",
            "baseUrl": "https://s2a.example.com",
            "adminApiKey": "admin",
            "priceDiscount": 0.2,
        }])
        adapter = create_adapter(config.providers[0], config)
        client = FakeUpstream(None, working=set())
        client.list_groups = AsyncMock(return_value=[
            Sub2ApiGroup(1, "Claude Pro", "anthropic", "active"),
            Sub2ApiGroup(2, "Claude Max", "anthropic", "active"),
            Sub2ApiGroup(3, "Codex", "openai", "active"),
            Sub2ApiGroup(4, "Old", "anthropic", "disabled"),
            Sub2ApiGroup(5, "Keyless", "gemini", "active"),
        ])
        client.get_group_api_key = AsyncMock(side_effect=lambda gid: None if gid == 5 else f"sk-{gid}")
        client.list_accounts = AsyncMock(return_value=[
            Sub2ApiAccount(10, "a1", "anthropic", "active"),
            Sub2ApiAccount(11, "a2", "openai", "active"),
            Sub2ApiAccount(12, "a3", "anthropic", "error"),
        ])
        account_models = {10: ["claude-sonnet-4"], 11: ["gpt-5", "gpt-image-1"], 12: ["claude-opus-4"]}
        client.get_account_models = AsyncMock(side_effect=lambda aid: account_models[aid])
        adapter.client = client
        tester = make_tester({"claude-sonnet-4", "gpt-5"})
        state = AggregationState()

        with patch("newapi_sync.services.providers.sub2api.ModelTester", tester):
            report = await adapter.run(state)

        assert report.success is True, report.error
        names = sorted(c.name for c in state.channels)
        assert names == ["pool-Claude Max", "pool-Claude Pro", "pool-openai"]
        assert all(g.ratio == pytest.approx(0.8) for g in state.merged_groups)
        openai_call = next(c for c in tester.calls if c["api_key"] == "sk-3")
        assert openai_call["use_responses_api"] is True
        assert openai_call["models"] == ["gpt-5"]

    @pytest.mark.asyncio
    async def test_no_working_groups(self):
        """Test the failure when no group has a working model."""
        config = make_config([{
            "type": "sub2api",
            "name": "pool",
            "baseUrl": "https://s2a.example.com",
            "groups": [{"key": "sk-g1", "platform": "anthropic"}],
        }])
        adapter = create_adapter(config.providers[0], config)
        adapter.client = FakeUpstream(None, working=set())
        adapter.client.list_gateway_models = AsyncMock(return_value=["claude-sonnet-4"])

        with patch("newapi_sync.services.providers.sub2api.ModelTester", make_tester(set())):
            report = await adapter.run(AggregationState())

        assert report.success is False
        assert report.error == "No groups produced working channels"


class TestAdapterFactory:
    """Tests for adapter creation and ordering."""

    def test_adapters_sorted_by_kind(self):
        """Test that gateways run first and account pools last."""
        config = make_config([
            {"type": "sub2api", "name": "pool", "baseUrl": "https://s", "adminApiKey": "a"},
            {"type": "direct", "name": "dsk", "vendor": "deepseek", "apiKey": "k"},
            newapi_provider(name="provB"),
            newapi_provider(name="provA"),
        ])

        adapters = create_adapters(config)

        assert [a.name for a in adapters] == ["provB", "provA", "dsk", "pool"]
        assert [type(a) for a in adapters] == [NewApiAdapter, NewApiAdapter, DirectAdapter, Sub2ApiAdapter]

    def test_shared_model_filters(self):
        """Test the text, blacklist, vendor and allow-list filters."""
        config = make_config([newapi_provider(enabledModels=["gpt*", "claude*"])], blacklist=["provA/mini"])
        adapter = create_adapter(config.providers[0], config)

        kept = adapter.filter_models(
            ["gpt-4o", "gpt-4o-mini", "claude-3-opus", "deepseek-chat", "dall-e-3"],
            enabled_vendors=["openai"],
        )

        assert kept == ["gpt-4o"]
