from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from peewee import (
    AutoField,
    CharField,
    DateTimeField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

bot_database = SqliteDatabase(None)


def utcnow_naive() -> datetime:
    """Return current UTC time without tzinfo for SQLite storage."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BaseModel(Model):
    created_at = DateTimeField(default=utcnow_naive)
    updated_at = DateTimeField(default=utcnow_naive)

    def save(self, *args, **kwargs):  # type: ignore[override]
        self.updated_at = utcnow_naive()
        return super().save(*args, **kwargs)

    class Meta:
        database = bot_database


class GuildSettings(BaseModel):
    guild_id = IntegerField(primary_key=True)
    albion_guild_name = CharField(null=True)


class Audit(BaseModel):
    id = AutoField()
    guild_id = IntegerField(index=True)
    actor_discord_id = IntegerField()
    action = CharField()
    payload = TextField(null=True)


def init_db(path: str) -> SqliteDatabase:
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    if not bot_database.is_closed():
        bot_database.close()
    bot_database.init(path)
    bot_database.connect(reuse_if_open=True)
    bot_database.create_tables([GuildSettings, Audit])
    return bot_database


def get_guild_name(guild_id: int) -> Optional[str]:
    row = GuildSettings.get_or_none(GuildSettings.guild_id == guild_id)
    if row and row.albion_guild_name:
        return row.albion_guild_name
    return None


def set_guild_name(guild_id: int, name: str) -> None:
    GuildSettings.insert(guild_id=guild_id, albion_guild_name=name).on_conflict(
        conflict_target=[GuildSettings.guild_id],
        update={
            GuildSettings.albion_guild_name: name,
            GuildSettings.updated_at: utcnow_naive(),
        },
    ).execute()


def record_audit(
    guild_id: int, actor_discord_id: int, action: str, payload: dict | None = None
):
    Audit.create(
        guild_id=guild_id,
        actor_discord_id=actor_discord_id,
        action=action,
        payload=json.dumps(payload) if payload else None,
    )


def recent_audit(guild_id: int, page: int = 1, limit: int = 20) -> List[Audit]:
    query = (
        Audit.select()
        .where(Audit.guild_id == guild_id)
        .order_by(Audit.id.desc())
        .paginate(max(1, page), limit)
    )
    return list(query)
