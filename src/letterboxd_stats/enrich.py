"""
Chunked concurrent enrichment.

Records are processed in fixed-size chunks: every record in a chunk is
enriched concurrently, the chunk is awaited as a whole, then the loop
pauses before the next chunk. This bounds in-flight calls to the chunk
size and paces the overall request rate for the upstream services.

Failures are isolated per record. Each enricher catches its own errors and
encodes them on the record; anything that still escapes is caught by
``enrich_all`` and handed to ``on_failure`` without disturbing its
siblings. The default handler marks the record as ``error``, which is the
provider stage's failure marker.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable

from tqdm import tqdm

from .cache import CacheLayer, CacheScope, film_detail_cache_key, provider_cache_key
from .config import PROVIDER_CACHE_TTL, PROVIDER_MAX_CAST, PROVIDER_NOT_FOUND_TTL
from .errors import FetchError
from .models import CanonicalRecord, NativeDetail, ProviderMatch
from .scraper import LetterboxdScraper
from .tmdb import TMDBClient, build_provider_match, match_title
from .utils import chunked

logger = logging.getLogger(__name__)

EnrichOne = Callable[[CanonicalRecord], Awaitable[None]]
OnFailure = Callable[[CanonicalRecord, Exception], None]


def mark_error(record: CanonicalRecord, exc: Exception) -> None:
    record.error = True


def clear_native(record: CanonicalRecord, exc: Exception) -> None:
    record.native = NativeDetail()


async def enrich_all(
    records: list[CanonicalRecord],
    enrich_one: EnrichOne,
    chunk_size: int,
    inter_chunk_delay: float,
    *,
    desc: str | None = None,
    progress: bool = False,
    on_failure: OnFailure = mark_error,
) -> list[CanonicalRecord]:
    """Run ``enrich_one`` over ``records`` chunk by chunk; mutates and returns ``records``."""
    chunks = chunked(records, chunk_size)
    error_summary: dict[str, int] = defaultdict(int)

    with tqdm(total=len(records), desc=desc, disable=not progress) as bar:
        for index, chunk in enumerate(chunks):
            results = await asyncio.gather(*(enrich_one(r) for r in chunk), return_exceptions=True)

            for record, result in zip(chunk, results):
                if isinstance(result, Exception):
                    error_type = type(result).__name__
                    logger.error(f"Enrichment failed for {record.film_key}: {error_type}: {result}")
                    error_summary[error_type] += 1
                    on_failure(record, result)

            bar.update(len(chunk))

            if index < len(chunks) - 1 and inter_chunk_delay > 0:
                await asyncio.sleep(inter_chunk_delay)

    if error_summary:
        logger.info(f"{desc or 'Enrichment'} error breakdown: {dict(error_summary)}")

    return records


class NativeDetailEnricher:
    """Adds Letterboxd film-page details (cast, crew, studios, ...) to records."""

    def __init__(self, scraper: LetterboxdScraper, cache: CacheLayer, force_refresh: bool = False):
        self.scraper = scraper
        self.cache = cache
        self.force_refresh = force_refresh

    async def __call__(self, record: CanonicalRecord) -> None:
        key = film_detail_cache_key(record.film_key)

        if not self.force_refresh:
            cached = self.cache.get(CacheScope.FILM_DETAIL, key)
            if cached is not None:
                record.native = NativeDetail.from_dict(cached)
                return

        try:
            detail = await self.scraper.scrape_film_detail(record.film_key)
        except FetchError as exc:
            logger.warning(f"Film page unavailable for {record.film_key}: {exc}")
            record.native = NativeDetail()
            return

        if detail is None:
            logger.debug(f"Film page not found: {record.film_key}")
            record.native = NativeDetail()
            return

        record.native = detail
        self.cache.set(CacheScope.FILM_DETAIL, key, detail.to_dict())


class ProviderEnricher:
    """Matches records against TMDB and attaches the provider metadata."""

    NOT_FOUND = {"notFound": True}

    def __init__(self, client: TMDBClient, cache: CacheLayer, force_refresh: bool = False,
                 max_cast: int = PROVIDER_MAX_CAST):
        self.client = client
        self.cache = cache
        self.force_refresh = force_refresh
        self.max_cast = max_cast

    async def __call__(self, record: CanonicalRecord) -> None:
        key = provider_cache_key(record.title, record.year)

        if not self.force_refresh:
            cached = self.cache.get(CacheScope.PROVIDER_MATCH, key)
            if cached is not None:
                if cached.get("notFound"):
                    record.not_found = True
                else:
                    record.provider = ProviderMatch.from_dict(cached)
                return

        try:
            candidate, media_type = await match_title(self.client, record.title, record.year)
            if candidate is None:
                record.not_found = True
                self.cache.set(CacheScope.PROVIDER_MATCH, key, self.NOT_FOUND, ttl=PROVIDER_NOT_FOUND_TTL)
                return

            details = await self.client.details(media_type, candidate["id"])
            match = build_provider_match(candidate, media_type, details, self.max_cast)
        except (FetchError, KeyError, TypeError, ValueError) as exc:
            logger.error(f"TMDB enrichment failed for {record.title!r}: {type(exc).__name__}: {exc}")
            record.error = True
            return

        record.provider = match
        self.cache.set(CacheScope.PROVIDER_MATCH, key, match.to_dict(), ttl=PROVIDER_CACHE_TTL)
