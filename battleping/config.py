import os
from dataclasses import dataclass

import yaml

from .albionbb import ALBIONBB_BASE
from .matching import DEFAULT_AMBIGUOUS_GAP, DEFAULT_THRESHOLD
from .roles import DEFAULT_ROLE_DELAY

CONFIG_ENV_KEY = "CONFIG_PATH"
TOKEN_ENV_KEY = "DISCORD_TOKEN"
DEFAULT_CONFIG_PATH = "config.yml"
DEFAULT_GUILD_NAME = "Romania Mare"


@dataclass
class BotConfig:
    token: str
    log_level: str
    database_path: str
    default_guild_name: str = DEFAULT_GUILD_NAME
    albionbb_base_url: str = ALBIONBB_BASE
    role_delay_seconds: float = DEFAULT_ROLE_DELAY
    match_threshold: float = DEFAULT_THRESHOLD
    ambiguous_gap: float = DEFAULT_AMBIGUOUS_GAP


def _float_setting(data: dict, key: str, default: float) -> float:
    raw = data.get(key)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Config '{key}' must be a number, got {raw!r}") from None


def load_config(path: str | None = None) -> BotConfig:
    config_path = path or os.environ.get(CONFIG_ENV_KEY, DEFAULT_CONFIG_PATH)
    with open(config_path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    token = (os.environ.get(TOKEN_ENV_KEY) or str(data.get("token") or "")).strip()
    if not token:
        raise ValueError("Config missing 'token'")

    log_level = str(data.get("log_level") or "INFO").upper()
    valid_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
    if log_level not in valid_levels:
        raise ValueError(
            f"Invalid log_level '{log_level}'. Must be one of {sorted(valid_levels)}"
        )

    database_path = str(data.get("database_path") or "battleping.db")

    default_guild_name = str(data.get("default_guild_name") or DEFAULT_GUILD_NAME)
    default_guild_name = default_guild_name.strip()
    if not default_guild_name:
        raise ValueError("Config 'default_guild_name' must not be blank")

    albionbb_base_url = str(data.get("albionbb_base_url") or ALBIONBB_BASE)

    role_delay_seconds = _float_setting(data, "role_delay_seconds", DEFAULT_ROLE_DELAY)
    if role_delay_seconds < 0:
        raise ValueError("Config 'role_delay_seconds' must be >= 0")

    match_threshold = _float_setting(data, "match_threshold", DEFAULT_THRESHOLD)
    if not 0 < match_threshold <= 1:
        raise ValueError("Config 'match_threshold' must be in (0, 1]")

    ambiguous_gap = _float_setting(data, "ambiguous_gap", DEFAULT_AMBIGUOUS_GAP)
    if not 0 <= ambiguous_gap < 1:
        raise ValueError("Config 'ambiguous_gap' must be in [0, 1)")

    return BotConfig(
        token=token,
        log_level=log_level,
        database_path=database_path,
        default_guild_name=default_guild_name,
        albionbb_base_url=albionbb_base_url,
        role_delay_seconds=role_delay_seconds,
        match_threshold=match_threshold,
        ambiguous_gap=ambiguous_gap,
    )
