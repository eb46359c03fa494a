"""Provisioning of per-group upstream API tokens.

Token names are the identity of a token across runs, so they are built
deterministically: ``{sanitized group name, truncated}-{provider}``,
bounded to a fixed total length. Sanitizing and truncating can make two
groups collide; the later group (in sorted group-name order) gets a
numeric ``-2``, ``-3``... tail inside the truncated part.
"""

import logging
from typing import Dict, Iterable, List, Optional

import httpx

from newapi_sync.config import settings
from newapi_sync.services.constants import normalize_api_key, sanitize_group_name
from newapi_sync.services.types import GroupInfo, TokenResult, UpstreamToken

logger = logging.getLogger(__name__)

FALLBACK_GROUP_NAME = "group"


def token_suffix(provider: str) -> str:
    return f"-{provider}"


def build_token_names(group_names: Iterable[str], provider: str, max_length: int = 30) -> Dict[str, str]:
    """Compute the token name for every group.

    Args:
        group_names: Upstream group names.
        provider: Provider name, appended as the ownership suffix.
        max_length: Maximum total token name length.

    Returns:
        Map of group name to token name. Names are unique.

    Raises:
        ValueError: If the provider suffix leaves no room for a group name.
    """
    suffix = token_suffix(provider)
    room = max_length - len(suffix)
    if room < 1:
        raise ValueError(f"Provider name '{provider}' is too long for {max_length}-character token names")

    names: Dict[str, str] = {}
    used = set()
    for group in sorted(set(group_names)):
        base = sanitize_group_name(group) or FALLBACK_GROUP_NAME
        candidate = f"{base[:room]}{suffix}"
        counter = 2
        while candidate in used:
            tail = f"-{counter}"
            candidate = f"{base[:max(room - len(tail), 0)]}{tail}{suffix}"
            counter += 1
        used.add(candidate)
        names[group] = candidate
    return names


async def _find_token(client, name: str) -> Optional[UpstreamToken]:
    for token in await client.list_tokens():
        if token.name == name:
            return token
    return None


async def ensure_tokens(
    client,
    groups: List[GroupInfo],
    provider: str,
    max_length: Optional[int] = None,
) -> TokenResult:
    """Make sure exactly one token exists per group on the upstream.

    Tokens carrying this provider's suffix that no group needs any more are
    deleted. A group whose token cannot be created is skipped and logged;
    the other groups are still processed.

    Args:
        client: Upstream NewApiClient (already opened).
        groups: Groups that need a token.
        provider: Provider name.
        max_length: Maximum token name length (defaults to settings.token_name_max_length).

    Returns:
        TokenResult with the key per group and the created/existing/deleted counts.
    """
    max_length = max_length or settings.token_name_max_length
    result = TokenResult()
    result.names = build_token_names((g.name for g in groups), provider, max_length)
    desired = set(result.names.values())
    suffix = token_suffix(provider)

    existing_tokens = await client.list_tokens()
    by_name = {token.name: token for token in existing_tokens}

    for token in existing_tokens:
        if not token.name.endswith(suffix) or token.name in desired:
            continue
        try:
            await client.delete_token(token.id)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[{provider}] Failed to delete stale token {token.name}: {e}")
            continue
        logger.info(f"[{provider}] Deleted stale token: {token.name}")
        result.deleted += 1

    for group in groups:
        token_name = result.names[group.name]
        token = by_name.get(token_name)
        if token is not None:
            result.tokens[group.name] = normalize_api_key(token.key)
            result.existing += 1
            continue

        try:
            await client.create_token(token_name, group.name)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[{provider}] Token create failed for group '{group.name}': {e}")
            continue
        result.created += 1

        # The create call does not return the key
        try:
            created = await _find_token(client, token_name)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[{provider}] Token lookup failed for group '{group.name}': {e}")
            continue
        if created is None or not created.key:
            logger.warning(f"[{provider}] Token '{token_name}' created but not found")
            continue
        result.tokens[group.name] = normalize_api_key(created.key)

    logger.info(
        f"[{provider}] Tokens: {result.existing} existing, {result.created} created, {result.deleted} deleted"
    )
    return result


async def delete_token_by_name(client, name: str) -> bool:
    """Delete the token called ``name`` if it exists.

    Returns:
        True if a token was deleted.
    """
    token = await _find_token(client, name)
    if token is None:
        return False
    await client.delete_token(token.id)
    return True


async def delete_provider_tokens(client, provider: str) -> int:
    """Delete every token carrying ``provider``'s suffix.

    Returns:
        Number of tokens deleted.
    """
    suffix = token_suffix(provider)
    deleted = 0
    for token in await client.list_tokens():
        if token.name.endswith(suffix):
            await client.delete_token(token.id)
            deleted += 1
    return deleted
