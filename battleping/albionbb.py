import asyncio
import json
import logging
import re
from typing import Any, Iterable, List, Optional

import aiohttp
from bs4 import BeautifulSoup

from .matching import dedupe_names
from .nuxt import NuxtFormatError, extract_guild_players

ALBIONBB_BASE = "https://europe.albionbb.com"
NUXT_DATA_ID = "__NUXT_DATA__"
REQUEST_HEADERS = {"User-Agent": "Mozilla/5.0", "Accept": "text/html"}

LOGGER = logging.getLogger(__name__)

_MULTI_RE = re.compile(r"/battles/multi\?[^#]*\bids=([0-9,]+)", re.IGNORECASE)
_SINGLE_RE = re.compile(r"/battles/(\d+)", re.IGNORECASE)
_RAW_RE = re.compile(r"^\d+(,\d+)*$")


class AlbionBBError(Exception):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


def extract_battle_ids(text: str | None) -> Optional[List[str]]:
    value = str(text or "").strip()

    multi = _MULTI_RE.search(value)
    if multi:
        parts = [part.strip() for part in multi.group(1).split(",")]
        return [part for part in parts if part.isdigit()]

    single = _SINGLE_RE.search(value)
    if single:
        return [single.group(1)]

    if _RAW_RE.match(value):
        return value.split(",")

    return None


def battle_label(battle_ids: List[str]) -> str:
    if len(battle_ids) == 1:
        return battle_ids[0]
    return f"multi ({len(battle_ids)} battles)"


def extract_nuxt_data(html: str) -> List[Any]:
    soup = BeautifulSoup(html, "html.parser")
    tag = soup.find("script", id=NUXT_DATA_ID)
    if tag is None:
        raise NuxtFormatError(f"Could not find {NUXT_DATA_ID} in HTML")
    try:
        parsed = json.loads((tag.string or "").strip())
    except json.JSONDecodeError as exc:
        raise NuxtFormatError(f"{NUXT_DATA_ID} is not valid JSON: {exc}") from exc
    if not isinstance(parsed, list):
        raise NuxtFormatError(f"{NUXT_DATA_ID} did not parse into an array")
    return parsed


class AlbionBBClient:
    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        base_url: str = ALBIONBB_BASE,
    ):
        self._session = session
        self._owns_session = session is None
        self.base_url = base_url.rstrip("/")

    async def close(self):
        if self._owns_session and self._session:
            await self._session.close()

    async def _get_text(self, path: str) -> str:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        url = f"{self.base_url}{path}"
        try:
            async with self._session.get(url, headers=REQUEST_HEADERS) as resp:
                if resp.status >= 400:
                    raise AlbionBBError(f"AlbionBB HTTP {resp.status}", resp.status)
                try:
                    return await resp.text()
                except UnicodeDecodeError as exc:
                    raise NuxtFormatError(
                        f"Battle page {url} is not valid text: {exc}"
                    ) from exc
        except asyncio.TimeoutError as exc:
            raise AlbionBBError(f"Failed request {url}: timed out") from exc
        except aiohttp.ClientError as exc:
            status = getattr(exc, "status", None)
            raise AlbionBBError(f"Failed request {url}: {exc}", status=status) from exc

    async def fetch_battle_html(self, battle_id: str) -> str:
        return await self._get_text(f"/battles/{battle_id}")

    async def fetch_battle_data(self, battle_id: str) -> List[Any]:
        html = await self.fetch_battle_html(battle_id)
        return extract_nuxt_data(html)

    async def fetch_guild_players(
        self, battle_ids: Iterable[str], guild_name: str
    ) -> List[str]:
        """Union of guild player names across battles, fetched one by one.

        The first failing battle aborts the whole call.
        """
        names: List[str] = []
        for battle_id in battle_ids:
            data = await self.fetch_battle_data(battle_id)
            players = extract_guild_players(data, guild_name)
            LOGGER.info(
                "Battle %s guild=%s players=%s", battle_id, guild_name, len(players)
            )
            names.extend(players)
        return dedupe_names(names)
