"""Minimal-cost health probes for chat models."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from newapi_sync.config import settings
from newapi_sync.services.constants import ChannelType
from newapi_sync.services.types import ProbeResult, TestModelsResult

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
PROBE_PROMPT = "hi"

ProbeCallback = Callable[[ProbeResult], Awaitable[None]]


@dataclass
class ProbeRequest:
    dialect: str
    url: str
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, str] = field(default_factory=dict)


def build_probe_request(
    base_url: str,
    api_key: str,
    model: str,
    channel_type: int,
    use_responses_api: bool = False,
) -> ProbeRequest:
    """Build the cheapest request that proves ``model`` answers.

    Every dialect is capped at one output token.
    """
    base_url = base_url.rstrip('/')
    if channel_type == ChannelType.ANTHROPIC:
        return ProbeRequest(
            dialect="anthropic",
            url=f"{base_url}/v1/messages",
            headers={"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION},
            body={
                "model": model,
                "messages": [{"role": "user", "content": PROBE_PROMPT}],
                "max_tokens": 1,
            },
        )
    if channel_type == ChannelType.GEMINI:
        return ProbeRequest(
            dialect="gemini",
            url=f"{base_url}/v1beta/models/{model}:generateContent",
            params={"key": api_key},
            body={
                "contents": [{"parts": [{"text": PROBE_PROMPT}]}],
                "generationConfig": {"maxOutputTokens": 1},
            },
        )
    if use_responses_api:
        return ProbeRequest(
            dialect="responses",
            url=f"{base_url}/v1/responses",
            headers={"Authorization": f"Bearer {api_key}"},
            body={
                "model": model,
                "input": [{"role": "user", "content": [{"type": "input_text", "text": PROBE_PROMPT}]}],
                "max_output_tokens": 1,
                "store": False,
            },
        )
    return ProbeRequest(
        dialect="openai",
        url=f"{base_url}/v1/chat/completions",
        headers={"Authorization": f"Bearer {api_key}"},
        body={
            "model": model,
            "messages": [{"role": "user", "content": PROBE_PROMPT}],
            "max_tokens": 1,
        },
    )


def is_probe_success(dialect: str, data: Any) -> bool:
    """Check a decoded probe body for the dialect's error indicator."""
    if not isinstance(data, dict):
        return False
    if dialect == "anthropic":
        return data.get("type") != "error" and not data.get("error")
    return not data.get("error")


class ModelTester:
    """Runs probe requests against one base URL with one API key."""

    def __init__(self, base_url: str, api_key: str, timeout: Optional[float] = None):
        """Initialize the tester.

        Args:
            base_url: Relay base URL (without the /v1 suffix).
            api_key: Key sent with every probe.
            timeout: Per-probe timeout in seconds (defaults to settings.model_test_timeout).
        """
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout if timeout is not None else settings.model_test_timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(timeout=self.timeout, headers={"Content-Type": "application/json"})
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("ModelTester must be used as async context manager")
        return self._client

    async def probe(self, model: str, channel_type: int, use_responses_api: bool = False) -> ProbeResult:
        """Send one probe. Never raises: any failure means "not working"."""
        request = build_probe_request(self.base_url, self.api_key, model, channel_type, use_responses_api)
        client = self._get_client()
        started = time.monotonic()
        try:
            response = await client.post(
                request.url,
                json=request.body,
                headers=request.headers,
                params=request.params or None,
            )
            elapsed_ms = (time.monotonic() - started) * 1000
            if response.status_code >= 400:
                return ProbeResult(model, False, elapsed_ms, f"HTTP {response.status_code}")
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            return ProbeResult(model, False, None, str(e) or type(e).__name__)

        if not is_probe_success(request.dialect, data):
            return ProbeResult(model, False, elapsed_ms, "error in response body")
        return ProbeResult(model, True, elapsed_ms)

    async def test_models(
        self,
        models: List[str],
        channel_type: int,
        use_responses_api: bool = False,
        concurrency: Optional[int] = None,
        on_probe: Optional[ProbeCallback] = None,
    ) -> TestModelsResult:
        """Probe models in sequential batches of ``concurrency`` parallel requests.

        Args:
            models: Model names to probe.
            channel_type: Channel type deciding the request dialect.
            use_responses_api: Use the Responses API for OpenAI-style channels.
            concurrency: Batch width (defaults to settings.model_test_concurrency).
            on_probe: Awaited after each probe, e.g. to sample account balance.

        Returns:
            Working models (in input order) and the mean latency of successful probes.
        """
        width = max(1, concurrency or settings.model_test_concurrency)

        async def run_one(model: str) -> ProbeResult:
            result = await self.probe(model, channel_type, use_responses_api)
            logger.debug(
                f"Probe {model}: {'ok' if result.success else 'failed'}"
                + (f" ({result.error})" if result.error else "")
            )
            if on_probe is not None:
                await on_probe(result)
            return result

        details: List[ProbeResult] = []
        for start in range(0, len(models), width):
            batch = models[start:start + width]
            details.extend(await asyncio.gather(*(run_one(m) for m in batch)))

        working = [r for r in details if r.success]
        timings = [r.response_time_ms for r in working if r.response_time_ms is not None]
        return TestModelsResult(
            working_models=[r.model for r in working],
            avg_response_time=sum(timings) / len(timings) if timings else None,
            details=details,
        )
