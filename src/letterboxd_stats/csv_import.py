"""
Letterboxd export CSV -> CanonicalRecord.

An alternate entry point that skips scraping entirely: the user uploads
``diary.csv`` / ``ratings.csv`` / ``watched.csv`` from their account export
and the rows are reconciled into the same record shape the scraper path
produces.

Exports link every row through a ``https://boxd.it/<code>`` short link, and
diary rows get one short link per viewing. Offline, those links are the
merge key as-is, so rewatches stay separate records. ``resolve_short_links``
follows the redirects to the film pages so that every viewing of a film
collapses onto one record.
"""
import asyncio
import csv
import io
import logging
from dataclasses import replace
from pathlib import Path
from urllib.parse import urlparse

import httpx

from .config import HTTP_TIMEOUT, NATIVE_CHUNK_DELAY, NATIVE_CHUNK_SIZE, USER_AGENT
from .models import CanonicalRecord, ListingKind, RawEntry
from .reconcile import merge
from .scraper import normalize_film_uri
from .utils import async_get_with_retries, chunked

logger = logging.getLogger(__name__)

URI_COLUMNS = ("Letterboxd URI", "LetterboxdURI", "URI", "URL")
DATE_COLUMNS = ("Watched Date", "Date")
SHORT_LINK_HOSTS = {"boxd.it", "www.boxd.it"}


def _first(row: dict, columns) -> str:
    for column in columns:
        value = (row.get(column) or "").strip()
        if value:
            return value
    return ""


def is_short_link(uri: str) -> bool:
    return urlparse(uri.strip()).netloc.lower() in SHORT_LINK_HOSTS


def _film_key(uri: str) -> str:
    # Short-link codes are case-sensitive; keep them intact until resolved
    return uri.strip() if is_short_link(uri) else normalize_film_uri(uri)


def parse_export_rows(text: str) -> list[RawEntry]:
    """Turn CSV text into RawEntry rows; rows without a film URI are skipped."""
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    if reader.fieldnames:
        reader.fieldnames = [name.strip() for name in reader.fieldnames]

    entries = []
    skipped = 0
    for row in reader:
        uri = _first(row, URI_COLUMNS)
        title = (row.get("Name") or "").strip()
        if not uri or not title:
            skipped += 1
            continue

        entries.append(RawEntry(
            title=title,
            year=(row.get("Year") or "").strip(),
            watch_date=_first(row, DATE_COLUMNS),
            rating=(row.get("Rating") or "").strip(),
            film_key=_film_key(uri),
            listing=ListingKind.LOG,
        ))

    if skipped:
        logger.warning(f"Skipped {skipped} CSV rows without a name or Letterboxd URI")
    return entries


async def resolve_short_links(
    entries: list[RawEntry],
    client: httpx.AsyncClient | None = None,
    chunk_size: int = NATIVE_CHUNK_SIZE,
    inter_chunk_delay: float = NATIVE_CHUNK_DELAY,
) -> list[RawEntry]:
    """
    Replace boxd.it film keys with the Letterboxd page they redirect to.

    Each distinct link is fetched once, chunk by chunk. Links that fail to
    resolve keep their short form and are logged.
    """
    links = list(dict.fromkeys(e.film_key for e in entries if is_short_link(e.film_key)))
    if not links:
        return list(entries)

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            timeout=HTTP_TIMEOUT,
        )

    resolved: dict[str, str] = {}
    try:
        chunks = chunked(links, chunk_size)
        for index, chunk in enumerate(chunks):
            results = await asyncio.gather(
                *(async_get_with_retries(client, link) for link in chunk), return_exceptions=True
            )
            for link, result in zip(chunk, results):
                if isinstance(result, Exception):
                    logger.warning(f"Could not resolve {link}: {type(result).__name__}: {result}")
                elif result is None:
                    logger.warning(f"Short link not found: {link}")
                else:
                    resolved[link] = normalize_film_uri(str(result.url))

            if index < len(chunks) - 1 and inter_chunk_delay > 0:
                await asyncio.sleep(inter_chunk_delay)
    finally:
        if owns_client:
            await client.aclose()

    logger.info(f"Resolved {len(resolved)}/{len(links)} boxd.it links")
    return [replace(e, film_key=resolved.get(e.film_key, e.film_key)) for e in entries]


def _reconcile(entries: list[RawEntry]) -> list[CanonicalRecord]:
    return merge([], [replace(e, film_key=normalize_film_uri(e.film_key)) for e in entries])


def load_csv_records(text: str) -> list[CanonicalRecord]:
    """One CanonicalRecord per film key, reconciled like a diary-only history."""
    return _reconcile(parse_export_rows(text))


async def load_csv_records_resolved(text: str, client: httpx.AsyncClient | None = None) -> list[CanonicalRecord]:
    """Like ``load_csv_records``, but keyed by the film page each short link points at."""
    return _reconcile(await resolve_short_links(parse_export_rows(text), client))


def load_csv_file(path: str | Path) -> list[CanonicalRecord]:
    return load_csv_records(Path(path).read_text(encoding="utf-8"))
