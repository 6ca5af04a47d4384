"""
End-to-end acquisition pipeline for one username.

    idle -> paginating (grid & diary in parallel) -> reconciling
         -> enriching_native -> enriching_provider -> done

The only failure transition is out of pagination, when neither listing
produced a single entry. Per-record enrichment problems never fail the
run; they are recorded on the records themselves.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Callable

from . import config
from .cache import CacheLayer, CacheScope, build_cache_backend, user_cache_key
from .enrich import NativeDetailEnricher, ProviderEnricher, clear_native, enrich_all
from .errors import FetchError, ScrapeError, UserNotFoundError
from .models import CanonicalRecord, ListingKind, RawEntry
from .reconcile import merge
from .scraper import LetterboxdScraper
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    PAGINATING = "paginating"
    RECONCILING = "reconciling"
    ENRICHING_NATIVE = "enriching_native"
    ENRICHING_PROVIDER = "enriching_provider"
    DONE = "done"
    FAILED = "failed"


@dataclass
class UserData:
    username: str
    movies: list[CanonicalRecord] = field(default_factory=list)
    cached: bool = False

    @property
    def count(self) -> int:
        return len(self.movies)

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "movies": [m.to_dict() for m in self.movies],
            "count": self.count,
        }


def _default_provider_factory() -> TMDBClient:
    return TMDBClient(config.require_tmdb_api_key())


class UserDataPipeline:
    """
    Sequences pagination, reconciliation, both enrichment stages and the
    whole-user cache. One instance per request; the cache layer is shared.
    """

    def __init__(
        self,
        cache: CacheLayer,
        *,
        scraper_factory: Callable[[], LetterboxdScraper] = LetterboxdScraper,
        provider_factory: Callable[[], TMDBClient] = _default_provider_factory,
        max_pages: int = config.DEFAULT_MAX_PAGES,
        native_chunk_size: int = config.NATIVE_CHUNK_SIZE,
        native_chunk_delay: float = config.NATIVE_CHUNK_DELAY,
        provider_chunk_size: int = config.PROVIDER_CHUNK_SIZE,
        provider_chunk_delay: float = config.PROVIDER_CHUNK_DELAY,
        progress: bool = False,
    ):
        self.cache = cache
        self.scraper_factory = scraper_factory
        self.provider_factory = provider_factory
        self.max_pages = max_pages
        self.native_chunk_size = native_chunk_size
        self.native_chunk_delay = native_chunk_delay
        self.provider_chunk_size = provider_chunk_size
        self.provider_chunk_delay = provider_chunk_delay
        self.progress = progress
        self.state = PipelineState.IDLE

    async def _paginate_safely(self, scraper: LetterboxdScraper, username: str,
                               kind: ListingKind) -> tuple[list[RawEntry], bool]:
        """Paginate one listing; returns (entries, failed_on_first_page)."""
        try:
            return await scraper.paginate(username, kind, self.max_pages), False
        except FetchError as exc:
            logger.error(f"Failed to scrape {kind.value} for {username}: {exc}")
            return [], True

    async def _enrich(self, records: list[CanonicalRecord], scraper: LetterboxdScraper,
                      provider: TMDBClient, force_refresh: bool) -> list[CanonicalRecord]:
        self.state = PipelineState.ENRICHING_NATIVE
        await enrich_all(
            records,
            NativeDetailEnricher(scraper, self.cache, force_refresh),
            self.native_chunk_size,
            self.native_chunk_delay,
            desc="Letterboxd details",
            progress=self.progress,
            on_failure=clear_native,
        )

        self.state = PipelineState.ENRICHING_PROVIDER
        await enrich_all(
            records,
            ProviderEnricher(provider, self.cache, force_refresh),
            self.provider_chunk_size,
            self.provider_chunk_delay,
            desc="TMDB matches",
            progress=self.progress,
        )
        return records

    async def enrich(self, records: list[CanonicalRecord], force_refresh: bool = False) -> list[CanonicalRecord]:
        """Run only the enrichment stages (used by the CSV import path)."""
        provider = self.provider_factory()
        async with self.scraper_factory() as scraper, provider:
            await self._enrich(records, scraper, provider, force_refresh)
        self.state = PipelineState.DONE
        return records

    async def run(self, username: str, force_refresh: bool = False) -> UserData:
        user_key = user_cache_key(username)

        # Credential problems surface here, before any cache or network work
        provider = self.provider_factory()

        if not force_refresh:
            cached = self.cache.get(CacheScope.USER, user_key)
            if cached is not None:
                logger.info(f"User cache hit for {username} ({len(cached)} films)")
                self.state = PipelineState.DONE
                return UserData(username, [CanonicalRecord.from_dict(m) for m in cached], cached=True)

        async with self.scraper_factory() as scraper, provider:
            self.state = PipelineState.PAGINATING
            (grid, grid_failed), (log, log_failed) = await asyncio.gather(
                self._paginate_safely(scraper, username, ListingKind.GRID),
                self._paginate_safely(scraper, username, ListingKind.LOG),
            )

            if not grid and not log:
                self.state = PipelineState.FAILED
                if grid_failed and log_failed:
                    raise ScrapeError(f"Failed to fetch Letterboxd profile for '{username}'")
                raise UserNotFoundError(username)

            self.state = PipelineState.RECONCILING
            records = merge(grid, log)
            logger.info(
                f"Merged {len(grid)} grid and {len(log)} diary entries into {len(records)} films for {username}"
            )

            await self._enrich(records, scraper, provider, force_refresh)

        n_not_found = sum(1 for r in records if r.not_found)
        n_errors = sum(1 for r in records if r.error)
        logger.info(f"Enriched {len(records)} films for {username} ({n_not_found} not found, {n_errors} errors)")

        self.cache.set(CacheScope.USER, user_key, [r.to_dict() for r in records])
        self.state = PipelineState.DONE
        return UserData(username, records)


@lru_cache(maxsize=1)
def get_default_cache() -> CacheLayer:
    """Process-wide cache layer, built once from config and shared by the API and CLI."""
    return CacheLayer(build_cache_backend())


async def fetch_user_data(username: str, force_refresh: bool = False,
                          cache: CacheLayer | None = None, **pipeline_kwargs) -> UserData:
    pipeline = UserDataPipeline(cache or get_default_cache(), **pipeline_kwargs)
    return await pipeline.run(username, force_refresh=force_refresh)
