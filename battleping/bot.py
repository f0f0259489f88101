from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Iterable, List, Optional

import discord
from discord import app_commands
from discord.ext import commands

from .albionbb import AlbionBBClient, AlbionBBError, battle_label, extract_battle_ids
from .config import BotConfig, load_config
from .matching import Candidate, MatchResult, clean_variants, match_all
from .models import (
    bot_database,
    get_guild_name,
    init_db,
    recent_audit,
    record_audit,
    set_guild_name,
)
from .nuxt import NuxtFormatError
from .roles import (
    RoleHierarchyError,
    add_role_to_members,
    assert_role_editable,
    clear_role_from_members,
    member_has_role,
)

# Default to INFO until the configured level is applied at startup
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s"
)
LOGGER = logging.getLogger(__name__)

MESSAGE_LIMIT = 1900
TRUNCATION_SUFFIX = "\n…(truncated)"
_MENTION_RE = re.compile(r"<@!?(\d+)>|\b(\d{15,20})\b")


def user_label(user_id: int, member: Any = None) -> str:
    name = getattr(member, "display_name", None) if member else None
    return f"{name} ({user_id})" if name else str(user_id)


def truncate_message(text: str, limit: int = MESSAGE_LIMIT) -> str:
    if len(text) > limit:
        return text[:limit] + TRUNCATION_SUFFIX
    return text


def parse_member_ids(text: str) -> List[int]:
    ids: List[int] = []
    for mention, raw in _MENTION_RE.findall(text or ""):
        member_id = int(mention or raw)
        if member_id not in ids:
            ids.append(member_id)
    return ids


def candidate_from_member(member: Any) -> Candidate:
    return Candidate(
        id=member.id,
        names=clean_variants(
            [
                getattr(member, "nick", None),
                getattr(member, "global_name", None),
                getattr(member, "name", None),
            ]
        ),
        member=member,
    )


async def snapshot_members(guild: Any) -> List[Any]:
    if not getattr(guild, "chunked", True):
        await guild.chunk()
    return list(guild.members)


def can_manage_roles(member: Any) -> bool:
    perms = getattr(member, "guild_permissions", None)
    if perms is None:
        return False
    return bool(perms.administrator or perms.manage_roles)


def format_mapping_failure(
    result: MatchResult, label: str, guild_name: str, role: Any = None
) -> str:
    if role is not None:
        headline = "❌ **Strict mode: no roles were added.**"
        context = f"Battle: **{label}** | Guild: **{guild_name}** | Role: **{role.name}**"
    else:
        headline = "❌ **Strict mode: no mapped list produced.**"
        context = f"Battle: **{label}** | Guild: **{guild_name}**"
    problems = result.problems
    text = (
        f"{headline}\n"
        f"{context}\n"
        f"Extracted: **{len(result.names)}** | Matched: **{len(result.matched)}** "
        f"| Missing: **{result.missing}**\n\n"
        f"**Problems ({len(problems)}):**\n- " + "\n- ".join(problems)
    )
    return truncate_message(text)


def format_mapping_success(result: MatchResult, label: str, guild_name: str) -> str:
    lines = [
        f"{candidate.label} (Albion: {name})"
        for name, candidate in result.matched.items()
    ]
    text = (
        "✅ All matched (names only).\n"
        f"Battle: **{label}** | Guild: **{guild_name}** | Count: **{len(lines)}**\n\n"
        + "\n".join(lines)
    )
    return truncate_message(text)


class BattlePingBot(commands.Bot):
    def __init__(self, config: BotConfig):
        intents = discord.Intents.default()
        intents.members = True
        intents.guilds = True
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        self.client = AlbionBBClient(base_url=config.albionbb_base_url)
        init_db(config.database_path)

    async def close(self) -> None:
        await super().close()
        await self.client.close()
        if not bot_database.is_closed():
            bot_database.close()

    async def setup_hook(self) -> None:
        await self.tree.sync()

    async def on_ready(self):
        LOGGER.info("Bot ready as %s in %s guilds", self.user, len(self.guilds))

    async def on_guild_join(self, guild: discord.Guild):
        LOGGER.info("New guild joined: %s (%s)", guild.name, guild.id)

    def guild_name_for(self, guild_id: int, explicit: Optional[str] = None) -> str:
        if explicit and explicit.strip():
            return explicit.strip()
        return get_guild_name(guild_id) or self.config.default_guild_name

    async def map_battle_members(
        self, guild: Any, battle_ids: List[str], guild_name: str
    ) -> MatchResult:
        """Extract guild players from the battles and match them to members.

        Fetch and format errors propagate; an empty extraction returns an
        empty result without touching the member list.
        """
        names = await self.client.fetch_guild_players(battle_ids, guild_name)
        if not names:
            return MatchResult(names=[])
        members = await snapshot_members(guild)
        candidates = [candidate_from_member(m) for m in members]
        result = match_all(
            names,
            candidates,
            threshold=self.config.match_threshold,
            ambiguous_gap=self.config.ambiguous_gap,
        )
        LOGGER.info(
            "Mapping guild=%s battles=%s albion_guild=%s extracted=%s matched=%s missing=%s",
            getattr(guild, "id", None),
            ",".join(battle_ids),
            guild_name,
            len(result.names),
            len(result.matched),
            result.missing,
        )
        return result

    async def resolve_members(
        self, guild: Any, member_ids: Iterable[int]
    ) -> tuple[List[Any], List[int]]:
        """Look members up by id; ids that cannot be fetched are returned separately."""
        members: List[Any] = []
        missing: List[int] = []
        for member_id in member_ids:
            member = guild.get_member(member_id)
            if member is None:
                try:
                    member = await guild.fetch_member(member_id)
                except discord.HTTPException as exc:
                    LOGGER.warning(
                        "Could not fetch member %s in guild %s: %s",
                        member_id,
                        guild.id,
                        exc,
                    )
                    member = None
            if member is None:
                missing.append(member_id)
            else:
                members.append(member)
        return members, missing


# Command registrations
async def setup_commands(bot: BattlePingBot):
    tree = bot.tree

    async def resolve_guild(interaction: discord.Interaction) -> Optional[Any]:
        guild = interaction.guild
        if guild is None:
            await interaction.response.send_message(
                "Commands must be used inside a guild.", ephemeral=True
            )
            return None
        return guild

    async def require_role_manager(
        interaction: discord.Interaction,
    ) -> Optional[tuple[Any, Any]]:
        guild = await resolve_guild(interaction)
        if guild is None:
            return None
        if not can_manage_roles(interaction.user):
            await interaction.response.send_message(
                "❌ You need **Manage Roles**.", ephemeral=True
            )
            return None
        me = guild.me
        if not can_manage_roles(me):
            await interaction.response.send_message(
                "❌ I need **Manage Roles**.", ephemeral=True
            )
            return None
        return guild, me

    async def check_role(interaction: discord.Interaction, role: Any, me: Any) -> bool:
        try:
            assert_role_editable(role, me)
        except RoleHierarchyError as exc:
            await interaction.response.send_message(f"❌ {exc}", ephemeral=True)
            return False
        return True

    @bot.listen("on_interaction")
    async def log_app_command(interaction: discord.Interaction):
        if interaction.type != discord.InteractionType.application_command:
            return
        cmd = interaction.command
        data = getattr(interaction, "namespace", None)
        try:
            payload = vars(data) if data else {}
        except TypeError:
            payload = str(data)
        guild = interaction.guild
        guild_label = f"{guild.name} ({guild.id})" if guild else "unknown-guild"
        uid = int(getattr(interaction.user, "id", 0) or 0)
        LOGGER.info(
            "Slash command %s by %s in %s with options %s",
            cmd.qualified_name if cmd else "unknown",
            user_label(uid, interaction.user),
            guild_label,
            payload,
        )

    @tree.error
    async def on_app_command_error(
        interaction: discord.Interaction, error: app_commands.AppCommandError
    ):
        if isinstance(error, app_commands.CheckFailure):
            if not interaction.response.is_done():
                await interaction.response.send_message(
                    "You do not have permission to use this command.",
                    ephemeral=True,
                )
            return
        LOGGER.exception("App command error: %s", error)
        message = f"Command failed: {error}"
        try:
            if interaction.response.is_done():
                await interaction.followup.send(message, ephemeral=True)
            else:
                await interaction.response.send_message(message, ephemeral=True)
        except discord.HTTPException as exc:
            LOGGER.warning("Failed sending error response for command: %s", exc)

    @app_commands.default_permissions(manage_roles=True)
    @tree.command(name="add_role", description="Add a role to the mentioned members")
    @app_commands.describe(role="Role to add", users="Member mentions or IDs")
    async def add_role(interaction: discord.Interaction, role: discord.Role, users: str):
        checked = await require_role_manager(interaction)
        if not checked:
            return
        guild, me = checked
        member_ids = parse_member_ids(users)
        if not member_ids:
            await interaction.response.send_message(
                "Usage: `/add_role role:@Role users:@User1 @User2 ...`", ephemeral=True
            )
            return
        if not await check_role(interaction, role, me):
            return
        await interaction.response.defer(thinking=True)
        members, missing = await bot.resolve_members(guild, member_ids)
        added, already_had = await add_role_to_members(
            role,
            members,
            delay=bot.config.role_delay_seconds,
            reason=f"add_role by {interaction.user.id}",
        )
        LOGGER.info(
            "Add role guild=%s actor=%s role=%s added=%s already_had=%s skipped=%s",
            guild.id,
            user_label(interaction.user.id, interaction.user),
            role.id,
            added,
            already_had,
            len(missing),
        )
        record_audit(
            guild.id,
            interaction.user.id,
            "add_role",
            {
                "role_id": role.id,
                "added": added,
                "already_had": already_had,
                "skipped": missing,
            },
        )
        message = f"✅ Added role to {added} users."
        if missing:
            message += f" Skipped {len(missing)} unknown ID(s): " + ", ".join(
                str(member_id) for member_id in missing
            )
        await interaction.followup.send(message)

    @app_commands.default_permissions(manage_roles=True)
    @tree.command(
        name="clear_role", description="Remove a role from every member who has it"
    )
    async def clear_role(interaction: discord.Interaction, role: discord.Role):
        checked = await require_role_manager(interaction)
        if not checked:
            return
        guild, me = checked
        if not await check_role(interaction, role, me):
            return
        await interaction.response.defer(thinking=True)
        members = await snapshot_members(guild)
        targets = [m for m in members if member_has_role(m, role)]
        removed = await clear_role_from_members(
            role,
            targets,
            delay=bot.config.role_delay_seconds,
            reason=f"clear_role by {interaction.user.id}",
        )
        LOGGER.info(
            "Clear role guild=%s actor=%s role=%s removed=%s",
            guild.id,
            user_label(interaction.user.id, interaction.user),
            role.id,
            removed,
        )
        record_audit(
            guild.id,
            interaction.user.id,
            "clear_role",
            {"role_id": role.id, "removed": removed},
        )
        await interaction.followup.send(
            f"🧹 Removed **{role.name}** from {removed} members."
        )

    async def fetch_mapping(
        interaction: discord.Interaction,
        guild: Any,
        battle_ids: List[str],
        guild_name: str,
    ) -> Optional[MatchResult]:
        try:
            result = await bot.map_battle_members(guild, battle_ids, guild_name)
        except (AlbionBBError, NuxtFormatError) as exc:
            LOGGER.warning(
                "Battle extraction failed guild=%s battles=%s: %s",
                guild.id,
                ",".join(battle_ids),
                exc,
            )
            await interaction.followup.send(f"❌ Nuxt parse error: {exc}")
            return None
        if not result.names:
            await interaction.followup.send(
                f"❌ No players found for **{guild_name}** in Nuxt data."
            )
            return None
        return result

    @app_commands.default_permissions(manage_roles=True)
    @tree.command(
        name="map_bb",
        description="Map AlbionBB battle players of a guild to Discord members",
    )
    @app_commands.describe(
        battle="Battle link, multi link, ID or comma-separated IDs",
        guild_name="Albion guild name (defaults to this server's setting)",
    )
    async def map_bb(
        interaction: discord.Interaction,
        battle: str,
        guild_name: Optional[str] = None,
    ):
        checked = await require_role_manager(interaction)
        if not checked:
            return
        guild, _me = checked
        battle_ids = extract_battle_ids(battle)
        if not battle_ids:
            await interaction.response.send_message(
                "❌ Invalid battle link or ID.", ephemeral=True
            )
            return
        albion_guild = bot.guild_name_for(guild.id, guild_name)
        label = battle_label(battle_ids)
        await interaction.response.send_message(
            f"Fetching Nuxt data for **{label}** (guild: **{albion_guild}**)…"
        )
        result = await fetch_mapping(interaction, guild, battle_ids, albion_guild)
        if result is None:
            return
        if not result.ok:
            await interaction.followup.send(
                format_mapping_failure(result, label, albion_guild)
            )
            return
        await interaction.followup.send(
            format_mapping_success(result, label, albion_guild)
        )

    @app_commands.default_permissions(manage_roles=True)
    @tree.command(
        name="map_bb_add_role",
        description="Map AlbionBB battle players and add a role to all of them",
    )
    @app_commands.describe(
        battle="Battle link, multi link, ID or comma-separated IDs",
        role="Role to add when every player is matched",
        guild_name="Albion guild name (defaults to this server's setting)",
    )
    async def map_bb_add_role(
        interaction: discord.Interaction,
        battle: str,
        role: discord.Role,
        guild_name: Optional[str] = None,
    ):
        checked = await require_role_manager(interaction)
        if not checked:
            return
        guild, me = checked
        battle_ids = extract_battle_ids(battle)
        if not battle_ids:
            await interaction.response.send_message(
                "❌ Invalid battle link or ID.", ephemeral=True
            )
            return
        if not await check_role(interaction, role, me):
            return
        albion_guild = bot.guild_name_for(guild.id, guild_name)
        label = battle_label(battle_ids)
        await interaction.response.send_message(
            f"Mapping **{label}** for guild **{albion_guild}**, "
            f"then adding role **{role.name}**…"
        )
        result = await fetch_mapping(interaction, guild, battle_ids, albion_guild)
        if result is None:
            return
        if not result.ok:
            LOGGER.info(
                "Strict mapping refused role guild=%s role=%s problems=%s",
                guild.id,
                role.id,
                len(result.problems),
            )
            await interaction.followup.send(
                format_mapping_failure(result, label, albion_guild, role=role)
            )
            return
        added, already_had = await add_role_to_members(
            role,
            [candidate.member for candidate in result.matched.values()],
            delay=bot.config.role_delay_seconds,
            reason=f"map_bb_add_role {label} by {interaction.user.id}",
        )
        record_audit(
            guild.id,
            interaction.user.id,
            "map_bb_add_role",
            {
                "battles": battle_ids,
                "guild_name": albion_guild,
                "role_id": role.id,
                "added": added,
                "already_had": already_had,
            },
        )
        await interaction.followup.send(
            f"✅ Added **{role.name}** to **{added}** member(s). "
            f"({already_had} already had it.)"
        )

    @app_commands.default_permissions(manage_roles=True)
    @tree.command(
        name="guild_name_set",
        description="Set the default Albion guild name for this server",
    )
    async def guild_name_set(interaction: discord.Interaction, name: str):
        checked = await require_role_manager(interaction)
        if not checked:
            return
        guild, _me = checked
        name = name.strip()
        if not name:
            await interaction.response.send_message(
                "Guild name must not be empty.", ephemeral=True
            )
            return
        set_guild_name(guild.id, name)
        LOGGER.info(
            "Guild name updated guild=%s actor=%s name=%s",
            guild.id,
            user_label(interaction.user.id, interaction.user),
            name,
        )
        record_audit(guild.id, interaction.user.id, "guild_name_set", {"name": name})
        await interaction.response.send_message(
            f"Default Albion guild set to **{name}**.", ephemeral=True
        )

    @tree.command(
        name="guild_name", description="Show the default Albion guild name"
    )
    async def guild_name_show(interaction: discord.Interaction):
        guild = await resolve_guild(interaction)
        if guild is None:
            return
        await interaction.response.send_message(
            f"Default Albion guild: **{bot.guild_name_for(guild.id)}**",
            ephemeral=True,
        )

    @app_commands.default_permissions(manage_roles=True)
    @tree.command(name="audit", description="Show recent audit events")
    async def audit(interaction: discord.Interaction, page: int = 1):
        checked = await require_role_manager(interaction)
        if not checked:
            return
        guild, _me = checked
        lines = [
            f"{row.id}: actor={user_label(row.actor_discord_id, guild.get_member(row.actor_discord_id))} "
            f"action={row.action} payload={row.payload}"
            for row in recent_audit(guild.id, page=page)
        ]
        await interaction.response.send_message(
            truncate_message("\n".join(lines) or "No audit entries"), ephemeral=True
        )


async def main():
    bot_config = load_config()
    logging.getLogger().setLevel(bot_config.log_level)
    LOGGER.setLevel(bot_config.log_level)
    bot = BattlePingBot(bot_config)
    await setup_commands(bot)
    await bot.start(bot_config.token)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
