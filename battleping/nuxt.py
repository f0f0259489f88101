"""Decoding of Nuxt ``__NUXT_DATA__`` payloads.

Nuxt serialises page state as one flat JSON array where shared values are
stored once and referenced by index. Any integer inside a value position can
be such a reference, so resolution is generic and does not rely on a fixed
schema. Only the battle root signature (``players``, ``guilds`` and
``totalPlayers``) is treated as stable.
"""

from __future__ import annotations

import logging
from typing import Any, List, Sequence

from .matching import dedupe_names

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 6
BATTLE_ROOT_KEYS = ("players", "guilds", "totalPlayers")


class NuxtFormatError(ValueError):
    pass


class BattleRootNotFound(NuxtFormatError):
    pass


def is_reference(arr: Sequence[Any], value: Any) -> bool:
    # bool is an int subclass but JSON true/false are never references
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and 0 <= value < len(arr)
    )


def resolve_shallow(arr: Sequence[Any], value: Any) -> Any:
    if is_reference(arr, value):
        return arr[value]
    return value


def resolve_deep(
    arr: Sequence[Any],
    value: Any,
    depth: int = 0,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Any:
    """Follow references recursively, building new lists and dicts.

    Past ``max_depth`` the value is returned as-is, which bounds both long
    reference chains and cycles.
    """
    if depth > max_depth:
        return value
    resolved = resolve_shallow(arr, value)
    if isinstance(resolved, list):
        return [resolve_deep(arr, item, depth + 1, max_depth) for item in resolved]
    if isinstance(resolved, dict):
        return {
            key: resolve_deep(arr, item, depth + 1, max_depth)
            for key, item in resolved.items()
        }
    return resolved


def find_battle_root(arr: Sequence[Any]) -> dict:
    for item in arr:
        if isinstance(item, dict) and all(key in item for key in BATTLE_ROOT_KEYS):
            return item
    raise BattleRootNotFound("Could not locate battle root object in Nuxt data")


def _norm(value: Any) -> str:
    return str(value or "").strip().lower()


def extract_guild_players(
    arr: Sequence[Any], guild_name: str, max_depth: int = DEFAULT_MAX_DEPTH
) -> List[str]:
    root = find_battle_root(arr)
    players = resolve_deep(arr, root["players"], max_depth=max_depth)
    if not isinstance(players, list):
        raise NuxtFormatError("battleRoot.players did not resolve to an array")

    target = _norm(guild_name)
    names: List[str] = []
    skipped = 0
    for entry in players:
        player = resolve_deep(arr, entry, max_depth=max_depth)
        if not isinstance(player, dict):
            skipped += 1
            continue
        if _norm(player.get("guildName")) != target:
            continue
        name = str(player.get("name") or "").strip()
        if name:
            names.append(name)

    if skipped:
        LOGGER.debug("Skipped %s non-object player entries", skipped)
    return dedupe_names(names)
