"""
TMDB client and the tiered title matcher.

Matching walks a fallback ladder from precise to permissive:

1. /search/movie scoped to the release year (when the year is known)
2. /search/movie without a year
3. /search/multi restricted to movies and TV, most popular first

The first tier that returns anything wins. Titles are normalized before
every search so typographic differences between Letterboxd and TMDB
(curly quotes, dash variants) don't hide an otherwise correct match.
"""
import logging
import re

import httpx

from .config import HTTP_TIMEOUT, PROVIDER_MAX_CAST, TMDB_API_BASE, USER_AGENT
from .errors import ConfigurationError, FetchError
from .models import ProviderCountry, ProviderGenre, ProviderMatch, ProviderPerson
from .utils import async_get_with_retries

logger = logging.getLogger(__name__)

SUPPORTED_MEDIA_TYPES = ("movie", "tv")
DIRECTOR_JOBS = {"Director", "Series Director"}

_TITLE_TRANSLATION = str.maketrans({
    "\u2010": "-",  # hyphen
    "\u2011": "-",  # non-breaking hyphen
    "\u2012": "-",  # figure dash
    "\u2013": "-",  # en dash
    "\u2014": "-",  # em dash
    "\u2015": "-",  # horizontal bar
    "\u2212": "-",  # minus sign
    "\u2018": "'",
    "\u2019": "'",
    "\u201a": "'",
    "\u201b": "'",
    "\u2032": "'",
    "\u201c": '"',
    "\u201d": '"',
    "\u201e": '"',
    "\u201f": '"',
    "\u2033": '"',
    "\u2026": "...",
    "\u00a0": " ",
})
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_title_for_search(title: str | None) -> str:
    """Unify punctuation variants and whitespace. Idempotent."""
    if not title:
        return ""
    return _WHITESPACE_RE.sub(" ", title.translate(_TITLE_TRANSLATION)).strip()


class TMDBClient:
    """Thin async wrapper over the TMDB v3 search and detail endpoints."""

    def __init__(self, api_key: str | None, client: httpx.AsyncClient | None = None,
                 base_url: str = TMDB_API_BASE):
        if not api_key:
            raise ConfigurationError("Server configuration error: TMDB_API_KEY missing")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = client
        self._owns_client = client is None

    async def __aenter__(self):
        if self.client is None:
            self.client = httpx.AsyncClient(
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                timeout=HTTP_TIMEOUT,
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client and self._owns_client:
            await self.client.aclose()
            self.client = None
        return False

    async def _get_json(self, path: str, params: dict | None = None) -> dict | None:
        if not self.client:
            raise RuntimeError("TMDBClient must be used as an async context manager")

        query = {"api_key": self.api_key, "include_adult": "false"}
        for key, value in (params or {}).items():
            if value not in (None, ""):
                query[key] = str(value)

        url = f"{self.base_url}{path}"
        resp = await async_get_with_retries(self.client, url, params=query)
        if resp is None:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise FetchError(url, f"Invalid JSON from TMDB: {exc}") from exc

    async def _search(self, path: str, query: str, **params) -> list[dict]:
        data = await self._get_json(path, {"query": query, **params})
        results = (data or {}).get("results")
        return results if isinstance(results, list) else []

    async def search_movie(self, query: str, year: str | None = None) -> list[dict]:
        return await self._search("/search/movie", query, year=year)

    async def search_multi(self, query: str) -> list[dict]:
        return await self._search("/search/multi", query)

    async def details(self, media_type: str, tmdb_id: int) -> dict:
        type_path = "tv" if media_type == "tv" else "movie"
        path = f"/{type_path}/{tmdb_id}"
        data = await self._get_json(path, {"append_to_response": "credits"})
        if data is None:
            raise FetchError(f"{self.base_url}{path}", "Details not found", 404)
        return data


async def match_title(client: TMDBClient, title: str, year: str | None) -> tuple[dict | None, str | None]:
    """Return (candidate, media_type) from the first tier with results, else (None, None)."""
    query = normalize_title_for_search(title)
    if not query:
        return None, None

    if year:
        results = await client.search_movie(query, year=year)
        if results:
            return results[0], "movie"

    results = await client.search_movie(query)
    if results:
        return results[0], "movie"

    results = await client.search_multi(query)
    candidates = [r for r in results if r.get("media_type") in SUPPORTED_MEDIA_TYPES]
    if candidates:
        best = sorted(candidates, key=lambda r: r.get("popularity") or 0, reverse=True)[0]
        return best, best["media_type"]

    return None, None


def _is_director(person: dict) -> bool:
    return person.get("job") in DIRECTOR_JOBS or person.get("department") == "Directing"


def build_provider_match(candidate: dict, media_type: str, details: dict,
                         max_cast: int = PROVIDER_MAX_CAST) -> ProviderMatch:
    credits = details.get("credits") or {}

    directors = []
    seen_directors = set()
    for person in credits.get("crew") or []:
        if not _is_director(person) or person.get("id") in seen_directors:
            continue
        seen_directors.add(person.get("id"))
        directors.append(ProviderPerson(person.get("id"), person.get("name", "")))

    cast = [ProviderPerson(c.get("id"), c.get("name", "")) for c in (credits.get("cast") or [])[:max_cast]]

    runtime = details.get("runtime")
    if not isinstance(runtime, int):
        episode_run_time = details.get("episode_run_time")
        runtime = episode_run_time[0] if isinstance(episode_run_time, list) and episode_run_time else 0

    return ProviderMatch(
        tmdb_id=candidate["id"],
        media_type=media_type,
        poster_path=candidate.get("poster_path"),
        backdrop_path=candidate.get("backdrop_path"),
        genres=[ProviderGenre(g.get("id"), g.get("name", "")) for g in details.get("genres") or []],
        production_countries=[
            ProviderCountry(c.get("iso_3166_1", ""), c.get("name", ""))
            for c in details.get("production_countries") or []
        ],
        original_language=candidate.get("original_language"),
        runtime=runtime or 0,
        directors=directors,
        cast=cast,
    )
