from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Protocol

LOGGER = logging.getLogger(__name__)

DEFAULT_ROLE_DELAY = 0.8


class SupportsRole(Protocol):
    id: int
    name: str
    position: int


class SupportsMember(Protocol):
    id: int
    roles: Iterable[Any]
    display_name: str

    async def add_roles(self, *roles: Any, **kwargs: Any) -> Any: ...

    async def remove_roles(self, *roles: Any, **kwargs: Any) -> Any: ...


class RoleHierarchyError(Exception):
    pass


def assert_role_editable(role: SupportsRole, me: Any) -> None:
    if role.position >= me.top_role.position:
        raise RoleHierarchyError(
            f"Role {role.name} is above (or equal to) my highest role."
        )


def member_has_role(member: SupportsMember, role: SupportsRole) -> bool:
    return any(r.id == role.id for r in member.roles)


async def add_role_to_members(
    role: SupportsRole,
    members: Iterable[SupportsMember],
    delay: float = DEFAULT_ROLE_DELAY,
    reason: str | None = None,
) -> tuple[int, int]:
    added = 0
    already_had = 0
    for member in members:
        if member_has_role(member, role):
            already_had += 1
            continue
        await member.add_roles(role, reason=reason)
        added += 1
        LOGGER.debug("Added role %s (%s) to %s", role.name, role.id, member.id)
        await asyncio.sleep(delay)
    return added, already_had


async def clear_role_from_members(
    role: SupportsRole,
    members: Iterable[SupportsMember],
    delay: float = DEFAULT_ROLE_DELAY,
    reason: str | None = None,
) -> int:
    removed = 0
    for member in members:
        if not member_has_role(member, role):
            continue
        await member.remove_roles(role, reason=reason)
        removed += 1
        LOGGER.debug("Removed role %s (%s) from %s", role.name, role.id, member.id)
        await asyncio.sleep(delay)
    return removed
