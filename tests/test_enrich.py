import asyncio

import pytest

from letterboxd_stats import enrich
from letterboxd_stats.cache import CacheScope, film_detail_cache_key, provider_cache_key
from letterboxd_stats.enrich import NativeDetailEnricher, ProviderEnricher, enrich_all
from letterboxd_stats.errors import FetchError
from letterboxd_stats.models import CanonicalRecord, CastCredit, NativeDetail


def make_records(n):
    return [
        CanonicalRecord(film_key=f"https://letterboxd.com/film/film-{i}/", title=f"Film {i}", year="2000")
        for i in range(n)
    ]


@pytest.mark.asyncio
async def test_in_flight_calls_never_exceed_chunk_size():
    state = {"in_flight": 0, "max": 0, "done": 0}

    async def enrich_one(record):
        state["in_flight"] += 1
        state["max"] = max(state["max"], state["in_flight"])
        await asyncio.sleep(0.01)
        state["in_flight"] -= 1
        state["done"] += 1

    await enrich_all(make_records(10), enrich_one, chunk_size=3, inter_chunk_delay=0)

    assert state["done"] == 10
    assert state["max"] == 3


@pytest.mark.asyncio
async def test_pause_between_chunks_but_not_after_last(monkeypatch):
    pauses = []

    async def fake_sleep(seconds):
        pauses.append(seconds)

    async def enrich_one(record):
        record.rating = "3"

    monkeypatch.setattr(enrich.asyncio, "sleep", fake_sleep)
    records = await enrich_all(make_records(7), enrich_one, chunk_size=3, inter_chunk_delay=0.5)

    assert pauses == [0.5, 0.5]
    assert all(r.rating == "3" for r in records)


@pytest.mark.asyncio
async def test_one_failure_does_not_affect_siblings():
    async def enrich_one(record):
        if record.title == "Film 2":
            raise RuntimeError("boom")
        record.native = NativeDetail(genres=["Drama"])

    records = await enrich_all(make_records(5), enrich_one, chunk_size=5, inter_chunk_delay=0)

    assert [r.error for r in records] == [False, False, True, False, False]
    assert all(r.native is not None for r in records if r.title != "Film 2")
    assert records[2].native is None


@pytest.mark.asyncio
async def test_failure_handler_replaces_error_marker():
    seen = []

    async def enrich_one(record):
        if record.title == "Film 1":
            raise RuntimeError("bad markup")
        record.native = NativeDetail(genres=["Drama"])

    def on_failure(record, exc):
        seen.append((record.title, str(exc)))
        enrich.clear_native(record, exc)

    records = await enrich_all(make_records(3), enrich_one, chunk_size=3, inter_chunk_delay=0,
                               on_failure=on_failure)

    assert seen == [("Film 1", "bad markup")]
    assert not any(r.error for r in records)
    assert records[1].native == NativeDetail()


class FakeScraper:
    def __init__(self, detail=None, error=None):
        self.detail = detail
        self.error = error
        self.calls = []

    async def scrape_film_detail(self, film_uri):
        self.calls.append(film_uri)
        if self.error:
            raise self.error
        return self.detail


@pytest.mark.asyncio
async def test_native_cache_hit_skips_network(memory_cache):
    record = make_records(1)[0]
    memory_cache.set(CacheScope.FILM_DETAIL, film_detail_cache_key(record.film_key),
                     NativeDetail(genres=["Horror"]).to_dict())
    fake = FakeScraper(detail=NativeDetail(genres=["Comedy"]))

    await NativeDetailEnricher(fake, memory_cache)(record)

    assert fake.calls == []
    assert record.native.genres == ["Horror"]


@pytest.mark.asyncio
async def test_native_force_refresh_bypasses_cache_and_rewrites(memory_cache):
    record = make_records(1)[0]
    key = film_detail_cache_key(record.film_key)
    memory_cache.set(CacheScope.FILM_DETAIL, key, NativeDetail(genres=["Horror"]).to_dict())
    fake = FakeScraper(detail=NativeDetail(cast=[CastCredit("Toni Collette", "Annie")], genres=["Drama"]))

    await NativeDetailEnricher(fake, memory_cache, force_refresh=True)(record)

    assert fake.calls == [record.film_key]
    assert record.native.genres == ["Drama"]
    assert memory_cache.get(CacheScope.FILM_DETAIL, key)["lbCast"] == [{"name": "Toni Collette", "character": "Annie"}]


@pytest.mark.asyncio
async def test_native_failure_leaves_empty_detail_and_is_not_cached(memory_cache):
    record = make_records(1)[0]
    fake = FakeScraper(error=FetchError(record.film_key, "HTTP 500", 500))

    await NativeDetailEnricher(fake, memory_cache)(record)

    assert record.native == NativeDetail()
    assert record.error is False
    assert memory_cache.get(CacheScope.FILM_DETAIL, film_detail_cache_key(record.film_key)) is None


class FakeProvider:
    """Duck-typed TMDBClient with canned search results keyed by query."""

    def __init__(self, known, detail_error=None):
        self.known = known
        self.detail_error = detail_error
        self.searches = []
        self.detail_calls = []

    async def search_movie(self, query, year=None):
        self.searches.append(("movie", query, year))
        return [self.known[query]] if query in self.known else []

    async def search_multi(self, query):
        self.searches.append(("multi", query, None))
        return []

    async def details(self, media_type, tmdb_id):
        self.detail_calls.append((media_type, tmdb_id))
        if self.detail_error:
            raise self.detail_error
        return {"runtime": 100, "genres": [{"id": 18, "name": "Drama"}], "credits": {"crew": [], "cast": []}}


@pytest.mark.asyncio
async def test_exactly_one_not_found_among_five(memory_cache):
    records = make_records(5)
    known = {r.title: {"id": i + 1} for i, r in enumerate(records) if r.title != "Film 3"}
    provider = FakeProvider(known)

    await enrich_all(records, ProviderEnricher(provider, memory_cache), chunk_size=3, inter_chunk_delay=0)

    assert [r.not_found for r in records] == [False, False, False, True, False]
    assert [r.provider.tmdb_id for r in records if r.provider] == [1, 2, 3, 5]
    assert not any(r.error for r in records)
    assert records[3].to_dict()["notFound"] is True
    assert "tmdb_id" not in records[3].to_dict()


@pytest.mark.asyncio
async def test_provider_results_and_misses_are_cached(memory_cache):
    provider = FakeProvider({"Film 0": {"id": 10}})

    await enrich_all(make_records(2), ProviderEnricher(provider, memory_cache), chunk_size=2, inter_chunk_delay=0)
    first_searches = len(provider.searches)

    again = make_records(2)
    await enrich_all(again, ProviderEnricher(provider, memory_cache), chunk_size=2, inter_chunk_delay=0)

    assert len(provider.searches) == first_searches
    assert again[0].provider.tmdb_id == 10
    assert again[0].provider.genres[0].name == "Drama"
    assert again[1].not_found is True
    assert memory_cache.get(CacheScope.PROVIDER_MATCH, provider_cache_key("Film 1", "2000")) == {"notFound": True}


@pytest.mark.asyncio
async def test_provider_not_found_marker_expires_sooner(memory_cache, clock):
    from letterboxd_stats import config

    provider = FakeProvider({"Film 0": {"id": 10}})
    await enrich_all(make_records(2), ProviderEnricher(provider, memory_cache), chunk_size=2, inter_chunk_delay=0)

    clock.advance(config.PROVIDER_NOT_FOUND_TTL + 1)
    assert memory_cache.get(CacheScope.PROVIDER_MATCH, provider_cache_key("Film 1", "2000")) is None
    assert memory_cache.get(CacheScope.PROVIDER_MATCH, provider_cache_key("Film 0", "2000"))["tmdb_id"] == 10


@pytest.mark.asyncio
async def test_provider_error_is_recorded_but_not_cached(memory_cache):
    record = make_records(1)[0]
    provider = FakeProvider({"Film 0": {"id": 10}}, detail_error=FetchError("https://api.test", "HTTP 500", 500))

    await ProviderEnricher(provider, memory_cache)(record)

    assert record.error is True
    assert record.not_found is False
    assert record.provider is None
    assert memory_cache.get(CacheScope.PROVIDER_MATCH, provider_cache_key(record.title, record.year)) is None
