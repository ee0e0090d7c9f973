"""
Series catalog: master title list, name search and per-series episode manifest.
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote

from bs4 import BeautifulSoup

from animepahe_dl import http_client
from animepahe_dl.errors import CatalogError, NetworkError


logger = logging.getLogger(__name__)

PAGE_DELAY = 0.3
LIST_LINE = re.compile(r'^\[([^\]]+)\]\s+(.*?)\s*$')


@dataclass(frozen=True)
class SeriesEntry:
    locator: str
    title: str

    def as_line(self) -> str:
        return f"[{self.locator}] {self.title}"


@dataclass(frozen=True)
class EpisodeRecord:
    episode: int
    session: str
    created_at: str = ""

    def to_dict(self) -> dict:
        return {"episode": self.episode, "session": self.session, "created_at": self.created_at}


@dataclass(frozen=True)
class EpisodeLocator:
    series_locator: str
    episode: int
    session: str

    def play_url(self, host_url: str) -> str:
        return f"{host_url}/play/{self.series_locator}/{self.session}"


def _episode_number(value) -> Optional[int]:
    """
    Episode numbers come back as ints, floats or strings; keep whole numbers only.
    """
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not number.is_integer():
        return None
    return int(number)


def parse_anime_list(html: str) -> List[SeriesEntry]:
    """
    Extract [locator] Title pairs from the /anime index page.
    """
    soup = BeautifulSoup(html, 'html.parser')
    entries = []
    seen = set()

    for link in soup.find_all('a', href=True):
        match = re.search(r'/anime/([^/?#"]+)', link['href'])
        if not match:
            continue
        title = (link.get('title') or link.get_text()).strip()
        locator = match.group(1)
        if not title or locator in seen:
            continue
        seen.add(locator)
        entries.append(SeriesEntry(locator, title))

    return entries


def read_anime_list(path) -> List[SeriesEntry]:
    path = Path(path)
    if not path.exists():
        return []

    entries = []
    for line in path.read_text(encoding='utf-8').splitlines():
        match = LIST_LINE.match(line)
        if match:
            entries.append(SeriesEntry(match.group(1), match.group(2)))
    return entries


def write_anime_list(path, entries: List[SeriesEntry]) -> None:
    """
    Write entries sorted and de-duplicated, one [locator] Title per line.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = sorted({entry.as_line() for entry in entries})
    path.write_text(''.join(f"{line}\n" for line in lines), encoding='utf-8')


def find_title_for_locator(path, locator: str) -> Optional[str]:
    """
    Return the last listed title for a locator, if any.
    """
    title = None
    for entry in read_anime_list(path):
        if entry.locator == locator:
            title = entry.title
    return title


def download_anime_list(anime_url: str, list_file, context: http_client.SessionContext) -> List[SeriesEntry]:
    """
    Refresh the master list file from the provider's anime index.
    """
    logger.info("⟳ Retrieving master anime list...")
    try:
        html = http_client.fetch_text(anime_url, context)
    except NetworkError as e:
        raise CatalogError(f"Failed getting master list from {anime_url}: {e}")

    entries = parse_anime_list(html)
    if not entries:
        raise CatalogError("Failed to parse or save master anime list.")

    write_anime_list(list_file, entries)
    logger.info(f"✓ Successfully saved {len(entries)} titles to {list_file}")
    return entries


def search_by_name(name: str, api_url: str, list_file, context: http_client.SessionContext) -> List[SeriesEntry]:
    """
    Query the search API; matches are merged into the master list file.
    """
    logger.info(f"⟳ Searching API for anime matching '{name}'...")
    try:
        data = http_client.fetch_json(f"{api_url}?m=search&q={quote(name)}", context)
    except NetworkError as e:
        raise CatalogError(f"Search for '{name}' failed: {e}")

    results = [
        SeriesEntry(str(item['session']), str(item.get('title', '')).strip())
        for item in (data.get('data') or [])
        if item.get('session')
    ]
    if not results:
        logger.warning(f"No results found via API for '{name}'.")
        return []

    logger.info(f"✓ Found {len(results)} potential matches.")
    write_anime_list(list_file, read_anime_list(list_file) + results)
    return results


def list_episodes(series_locator: str, api_url: str, context: http_client.SessionContext,
                  page_delay: float = PAGE_DELAY) -> List[EpisodeRecord]:
    """
    Walk every release page for a series.
    The first page is mandatory; a later failure keeps what was fetched.
    """
    records = []
    page = 1

    while True:
        logger.info(f"  Fetching episode page {page}...")
        url = f"{api_url}?m=release&id={series_locator}&sort=episode_asc&page={page}"
        try:
            data = http_client.fetch_json(url, context)
        except NetworkError as e:
            if page == 1:
                raise CatalogError(f"Failed to get first page of episode list: {e}")
            logger.warning(f"Failed to get page {page}. Proceeding with previously downloaded data.")
            break

        if not isinstance(data, dict) or 'data' not in data or 'last_page' not in data:
            if page == 1:
                raise CatalogError("Invalid data structure received on first page of episode list.")
            logger.warning(f"Invalid data structure on page {page}. Proceeding with data so far.")
            break

        for item in data.get('data') or []:
            number = _episode_number(item.get('episode'))
            if number is None or not item.get('session'):
                continue
            records.append(EpisodeRecord(number, str(item['session']), str(item.get('created_at') or '')))

        last_page = data.get('last_page') or 1
        if page >= last_page:
            break
        page += 1
        time.sleep(page_delay)

    if not records:
        raise CatalogError("No episode data could be fetched.")
    return records


def save_source_manifest(path, records: List[EpisodeRecord]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump({"data": [record.to_dict() for record in records]}, f, indent=2, ensure_ascii=False)
    logger.info(f"✓ Successfully downloaded source info for {len(records)} episodes to {path}")


def load_source_manifest(path) -> List[EpisodeRecord]:
    """
    Read the per-series .source.json written by save_source_manifest.
    """
    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            payload = json.load(f)
    except (OSError, ValueError) as e:
        raise CatalogError(f"Source file is not readable: {path} ({e})")

    records = []
    for item in payload.get('data') or []:
        number = _episode_number(item.get('episode'))
        if number is not None and item.get('session'):
            records.append(EpisodeRecord(number, str(item['session']), str(item.get('created_at') or '')))
    return records


def available_episodes(records: List[EpisodeRecord]) -> List[int]:
    return sorted({record.episode for record in records})


def find_session(records: List[EpisodeRecord], episode: int) -> Optional[str]:
    for record in records:
        if record.episode == episode:
            return record.session
    return None


def format_episode_menu(records: List[EpisodeRecord]) -> str:
    return '\n'.join(f"[{r.episode}] E{r.episode} {r.created_at}" for r in records)
