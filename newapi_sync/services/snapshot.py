"""Target snapshot reader."""

import asyncio
import logging

from newapi_sync.services.constants import MANAGED_OPTION_KEYS
from newapi_sync.services.newapi_client import NewApiClient
from newapi_sync.services.types import TargetSnapshot

logger = logging.getLogger(__name__)


async def fetch_target_snapshot(target: NewApiClient) -> TargetSnapshot:
    """Read channels, models, vendors and managed options concurrently."""
    channels, models, vendors, options = await asyncio.gather(
        target.list_channels(),
        target.list_models(),
        target.list_vendors(),
        target.get_options(MANAGED_OPTION_KEYS),
    )
    logger.info(
        f"Target snapshot: {len(channels)} channels, {len(models)} models, "
        f"{len(vendors)} vendors, {len(options)} managed options"
    )
    return TargetSnapshot(channels=channels, models=models, vendors=vendors, options=options)
