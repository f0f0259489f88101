import asyncio
import json

from battleping.albionbb import AlbionBBError
from battleping.bot import (
    BattlePingBot,
    format_mapping_failure,
    parse_member_ids,
    setup_commands,
    truncate_message,
)
from battleping.config import BotConfig
from battleping.matching import MatchResult
from battleping.models import get_guild_name, recent_audit
from battleping.nuxt import BattleRootNotFound
from tests.fakes import (
    CommandInteraction,
    FakeAlbionBB,
    FakeMember,
    FakePermissions,
    FakeRole,
    capture_commands,
    make_guild,
)


def make_bot(tmp_path, names=None, error=None):
    config = BotConfig(
        token="dummy",
        log_level="INFO",
        database_path=str(tmp_path / "bot.db"),
        role_delay_seconds=0,
    )
    bot = BattlePingBot(config)
    bot.client = FakeAlbionBB(names=names, error=error)
    commands = capture_commands(bot.tree)
    asyncio.run(setup_commands(bot))
    return bot, commands


def guild_members():
    return [
        FakeMember(id=100, name="alice_handle", nick="Alice"),
        FakeMember(id=101, name="bob", global_name="Bobby B"),
        FakeMember(id=102, name="carol"),
    ]


def admin(guild):
    return FakeMember(id=7, name="officer", guild_permissions=FakePermissions())


def test_map_bb_lists_mapping_when_all_names_match(tmp_path):
    bot, commands = make_bot(tmp_path, names=["Alice", "Bob"])
    guild = make_guild(guild_members())
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["map_bb"](interaction, "https://europe.albionbb.com/battles/42"))

    assert interaction.response.message == (
        "Fetching Nuxt data for **42** (guild: **Romania Mare**)…"
    )
    assert bot.client.calls == [(["42"], "Romania Mare")]
    output = interaction.followup.message
    assert output.startswith("✅ All matched (names only).")
    assert "Count: **2**" in output
    assert "Alice (Albion: Alice)" in output
    assert "Bobby B (Albion: Bob)" in output


def test_map_bb_reports_strict_failure(tmp_path):
    bot, commands = make_bot(tmp_path, names=["Alice", "Zed"])
    guild = make_guild(guild_members())
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["map_bb"](interaction, "1,2", "Other Guild"))

    assert "multi (2 battles)" in interaction.response.message
    output = interaction.followup.message
    assert "Strict mode: no mapped list produced." in output
    assert "Guild: **Other Guild**" in output
    assert "Extracted: **2** | Matched: **1** | Missing: **1**" in output
    assert "- Unmatched: Zed" in output


def test_map_bb_rejects_invalid_battle(tmp_path):
    bot, commands = make_bot(tmp_path, names=["Alice"])
    guild = make_guild(guild_members())
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["map_bb"](interaction, "not a battle"))

    assert interaction.response.message == "❌ Invalid battle link or ID."
    assert bot.client.calls == []


def test_map_bb_surfaces_fetch_errors(tmp_path):
    bot, commands = make_bot(tmp_path, error=AlbionBBError("AlbionBB HTTP 503", 503))
    guild = make_guild(guild_members())
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["map_bb"](interaction, "42"))

    assert interaction.followup.message == "❌ Nuxt parse error: AlbionBB HTTP 503"


def test_map_bb_surfaces_format_errors(tmp_path):
    bot, commands = make_bot(
        tmp_path, error=BattleRootNotFound("Could not locate battle root object")
    )
    guild = make_guild(guild_members())
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["map_bb"](interaction, "42"))

    assert "Could not locate battle root object" in interaction.followup.message


def test_map_bb_reports_empty_extraction(tmp_path):
    bot, commands = make_bot(tmp_path, names=[])
    guild = make_guild(guild_members())
    guild.chunked = False
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["map_bb"](interaction, "42"))

    assert interaction.followup.message == (
        "❌ No players found for **Romania Mare** in Nuxt data."
    )
    assert guild.chunk_calls == 0


def test_map_bb_chunks_guild_before_matching(tmp_path):
    bot, commands = make_bot(tmp_path, names=["carol"])
    guild = make_guild(guild_members())
    guild.chunked = False
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["map_bb"](interaction, "42"))

    assert guild.chunk_calls == 1
    assert "carol (Albion: carol)" in interaction.followup.message


def test_map_bb_uses_stored_guild_name(tmp_path):
    bot, commands = make_bot(tmp_path, names=["Alice"])
    guild = make_guild(guild_members())
    setter = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["guild_name_set"](setter, "  Les Gaulois "))
    interaction = CommandInteraction(guild, admin(guild))
    asyncio.run(commands["map_bb"](interaction, "42"))

    assert get_guild_name(guild.id) == "Les Gaulois"
    assert bot.client.calls == [(["42"], "Les Gaulois")]
    shown = CommandInteraction(guild, admin(guild))
    asyncio.run(commands["guild_name"](shown))
    assert shown.response.message == "Default Albion guild: **Les Gaulois**"


def test_map_bb_add_role_adds_role_when_all_match(tmp_path):
    bot, commands = make_bot(tmp_path, names=["Alice", "Bob"])
    members = guild_members()
    members[1].roles.append(FakeRole(5, "pay1"))
    guild = make_guild(members)
    role = FakeRole(5, "pay1")
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["map_bb_add_role"](interaction, "42", role))

    assert members[0].added_roles == [5]
    assert members[1].added_roles == []
    assert members[2].added_roles == []
    assert interaction.followup.message == (
        "✅ Added **pay1** to **1** member(s). (1 already had it.)"
    )
    rows = recent_audit(guild.id)
    assert rows[0].action == "map_bb_add_role"
    assert json.loads(rows[0].payload)["battles"] == ["42"]


def test_map_bb_add_role_adds_nothing_on_any_problem(tmp_path):
    bot, commands = make_bot(tmp_path, names=["Alice", "Bob", "Zed"])
    members = guild_members()
    guild = make_guild(members)
    role = FakeRole(5, "pay1")
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["map_bb_add_role"](interaction, "42", role))

    assert all(member.added_roles == [] for member in members)
    output = interaction.followup.message
    assert "Strict mode: no roles were added." in output
    assert "Role: **pay1**" in output
    assert "Unmatched: Zed" in output
    assert recent_audit(guild.id) == []


def test_map_bb_add_role_refuses_role_above_bot(tmp_path):
    bot, commands = make_bot(tmp_path, names=["Alice"])
    guild = make_guild(guild_members(), bot_position=3)
    role = FakeRole(5, "Officers", position=3)
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["map_bb_add_role"](interaction, "42", role))

    assert interaction.response.message == (
        "❌ Role Officers is above (or equal to) my highest role."
    )
    assert bot.client.calls == []


def test_commands_require_manage_roles(tmp_path):
    bot, commands = make_bot(tmp_path, names=["Alice"])
    guild = make_guild(guild_members())
    user = FakeMember(id=8, name="rookie", guild_permissions=FakePermissions(False, False))
    interaction = CommandInteraction(guild, user)

    asyncio.run(commands["map_bb"](interaction, "42"))

    assert interaction.response.message == "❌ You need **Manage Roles**."
    assert interaction.response.ephemeral is True
    assert bot.client.calls == []


def test_commands_require_bot_manage_roles(tmp_path):
    bot, commands = make_bot(tmp_path)
    guild = make_guild(guild_members())
    guild.me.guild_permissions = FakePermissions(False, False)
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["clear_role"](interaction, FakeRole(5, "pay1")))

    assert interaction.response.message == "❌ I need **Manage Roles**."


def test_commands_require_guild(tmp_path):
    bot, commands = make_bot(tmp_path)
    interaction = CommandInteraction(None, FakeMember(id=8, name="dm"))

    asyncio.run(commands["guild_name"](interaction))

    assert interaction.response.message == "Commands must be used inside a guild."


def test_add_role_targets_mentioned_members(tmp_path):
    bot, commands = make_bot(tmp_path)
    members = guild_members()
    guild = make_guild(members)
    role = FakeRole(5, "pay1")
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["add_role"](interaction, role, "<@100> <@!102> <@100>"))

    assert members[0].added_roles == [5]
    assert members[1].added_roles == []
    assert members[2].added_roles == [5]
    assert interaction.followup.message == "✅ Added role to 2 users."
    assert recent_audit(guild.id)[0].action == "add_role"


def test_add_role_reports_unknown_member_ids(tmp_path):
    bot, commands = make_bot(tmp_path)
    members = guild_members()
    guild = make_guild(members)
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(
        commands["add_role"](interaction, FakeRole(5, "pay1"), "<@100> <@555>")
    )

    assert members[0].added_roles == [5]
    assert interaction.followup.message == (
        "✅ Added role to 1 users. Skipped 1 unknown ID(s): 555"
    )
    assert json.loads(recent_audit(guild.id)[0].payload)["skipped"] == [555]


def test_add_role_requires_mentions(tmp_path):
    bot, commands = make_bot(tmp_path)
    guild = make_guild(guild_members())
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["add_role"](interaction, FakeRole(5, "pay1"), "nobody"))

    assert interaction.response.message.startswith("Usage:")


def test_clear_role_removes_from_every_holder(tmp_path):
    bot, commands = make_bot(tmp_path)
    role = FakeRole(5, "pay1")
    members = guild_members()
    members[0].roles.append(role)
    members[2].roles.append(role)
    guild = make_guild(members)
    interaction = CommandInteraction(guild, admin(guild))

    asyncio.run(commands["clear_role"](interaction, role))

    assert [m.removed_roles for m in members] == [[5], [], [5]]
    assert interaction.followup.message == "🧹 Removed **pay1** from 2 members."


def test_audit_lists_recent_actions(tmp_path):
    bot, commands = make_bot(tmp_path)
    guild = make_guild(guild_members())
    setter = CommandInteraction(guild, admin(guild))
    asyncio.run(commands["guild_name_set"](setter, "Les Gaulois"))

    interaction = CommandInteraction(guild, admin(guild))
    asyncio.run(commands["audit"](interaction))

    assert "action=guild_name_set" in interaction.response.message
    assert "actor=7" in interaction.response.message


def test_parse_member_ids():
    assert parse_member_ids("<@1> <@!2> 123456789012345678 <@1>") == [
        1,
        2,
        123456789012345678,
    ]
    assert parse_member_ids("") == []


def test_failure_report_is_truncated():
    names = [f"Player{i:03d}" for i in range(300)]
    result = MatchResult(names=names, unmatched=list(names))

    text = format_mapping_failure(result, "42", "Romania Mare")

    assert text.endswith("\n…(truncated)")
    assert len(text) == 1900 + len("\n…(truncated)")
    assert truncate_message("short") == "short"
