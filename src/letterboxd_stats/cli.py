import argparse
import asyncio
import json
import logging
import re
import sys
from pathlib import Path

from .cache import CacheLayer, CacheScope, SQLiteCacheBackend, build_cache_backend
from .config import API_HOST, API_PORT, CACHE_DB_PATH, DEFAULT_MAX_PAGES
from .csv_import import load_csv_file, load_csv_records_resolved
from .errors import ConfigurationError, ScrapeError, UserNotFoundError
from .models import CanonicalRecord
from .pipeline import UserData, UserDataPipeline, get_default_cache
from .stats import summarize

logger = logging.getLogger(__name__)


def _validate_username(username: str) -> str:
    """
    Sanitize a Letterboxd username.
    Returns lowercased alphanumeric + underscores/hyphens only.
    """
    sanitized = re.sub(r'[^a-z0-9_-]', '', username.lower())
    if sanitized != username.lower():
        logger.warning(f"Username '{username}' sanitized to '{sanitized}'")
    return sanitized


def _write_json(payload, output: str | None) -> None:
    text = json.dumps(payload, indent=2, ensure_ascii=False)
    if output:
        Path(output).parent.mkdir(parents=True, exist_ok=True)
        Path(output).write_text(text + "\n", encoding="utf-8")
        logger.info(f"Wrote {output}")
    else:
        sys.stdout.write(text + "\n")


def _load_movies(path: str) -> list[dict]:
    """Accept either a {"movies": [...]} payload or a bare list of records."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("movies", [])
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a list of movies")
    return data


def _build_pipeline(args: argparse.Namespace) -> UserDataPipeline:
    return UserDataPipeline(
        get_default_cache(),
        max_pages=getattr(args, "max_pages", DEFAULT_MAX_PAGES),
        progress=True,
    )


def cmd_fetch(args: argparse.Namespace) -> int:
    """Scrape, merge and enrich a user's history."""
    username = _validate_username(args.username)
    if not username:
        logger.error("A Letterboxd username is required")
        return 2

    pipeline = _build_pipeline(args)
    try:
        result = asyncio.run(pipeline.run(username, force_refresh=args.force_refresh))
    except UserNotFoundError as e:
        logger.error(str(e))
        return 1
    except (ConfigurationError, ScrapeError) as e:
        logger.error(str(e))
        return 1

    logger.info(f"{result.count} films for {username}{' (cached)' if result.cached else ''}")
    _write_json(result.to_dict(), args.output)
    return 0


def cmd_import_csv(args: argparse.Namespace) -> int:
    """Load a Letterboxd export CSV, optionally enriching it."""
    if args.enrich or getattr(args, "resolve_links", False):
        text = Path(args.file).read_text(encoding="utf-8")
        records = asyncio.run(load_csv_records_resolved(text))
    else:
        records = load_csv_file(args.file)
    logger.info(f"Loaded {len(records)} films from {args.file}")

    if args.enrich and records:
        pipeline = _build_pipeline(args)
        try:
            asyncio.run(pipeline.enrich(records, force_refresh=args.force_refresh))
        except ConfigurationError as e:
            logger.error(str(e))
            return 1

    name = Path(args.file).stem
    _write_json(UserData(name, records).to_dict(), args.output)
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Summarize a saved history."""
    try:
        movies = _load_movies(args.file)
    except (OSError, ValueError) as e:
        logger.error(f"Unable to read {args.file}: {e}")
        return 1

    # Round-trip through the record type so hand-edited files get normalized
    movies = [CanonicalRecord.from_dict(m).to_dict() for m in movies]
    _write_json(summarize(movies, top_n=args.top), None)
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("letterboxd_stats.api:app", host=args.host, port=args.port, log_level="info")
    return 0


def _sqlite_backend() -> SQLiteCacheBackend | None:
    backend = build_cache_backend()
    if not isinstance(backend, SQLiteCacheBackend):
        logger.error(f"Cache maintenance needs the sqlite backend (LETTERBOXD_STATS_CACHE_DB={CACHE_DB_PATH})")
        return None
    return backend


def cmd_cache_clear(args: argparse.Namespace) -> int:
    """Delete cached entries, optionally for a single scope."""
    backend = _sqlite_backend()
    if backend is None:
        return 1
    prefix = CacheLayer(backend).scope_prefix(CacheScope(args.scope)) if args.scope else ""
    try:
        removed = backend.clear(prefix)
    finally:
        backend.close()
    logger.info(f"Removed {removed} cache entries{f' from {args.scope}' if args.scope else ''}")
    return 0


def cmd_cache_purge(args: argparse.Namespace) -> int:
    """Delete expired cache entries."""
    backend = _sqlite_backend()
    if backend is None:
        return 1
    try:
        removed = backend.purge_expired()
    finally:
        backend.close()
    logger.info(f"Purged {removed} expired cache entries")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Letterboxd Stats")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Fetch command
    fetch_parser = subparsers.add_parser("fetch", help="Scrape and enrich a user's watch history")
    fetch_parser.add_argument("username", help="Letterboxd username")
    fetch_parser.add_argument("--force-refresh", action="store_true",
                              help="Ignore cached results (fresh results are still cached)")
    fetch_parser.add_argument("--max-pages", type=int, default=DEFAULT_MAX_PAGES,
                              help=f"Page cap per listing (default: {DEFAULT_MAX_PAGES})")
    fetch_parser.add_argument("--output", "-o", help="Write JSON here instead of stdout")
    fetch_parser.set_defaults(func=cmd_fetch)

    # CSV import command
    import_parser = subparsers.add_parser("import-csv", help="Load a Letterboxd export CSV")
    import_parser.add_argument("file", help="diary.csv, ratings.csv or watched.csv")
    import_parser.add_argument("--enrich", action="store_true", help="Add Letterboxd and TMDB metadata")
    import_parser.add_argument("--resolve-links", action="store_true",
                               help="Follow boxd.it links so rewatches merge (implied by --enrich)")
    import_parser.add_argument("--force-refresh", action="store_true", help="Ignore cached film metadata")
    import_parser.add_argument("--output", "-o", help="Write JSON here instead of stdout")
    import_parser.set_defaults(func=cmd_import_csv)

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Summarize a saved history JSON file")
    stats_parser.add_argument("file", help="Output of 'fetch' or 'import-csv'")
    stats_parser.add_argument("--top", type=int, default=10, help="Entries per top-N table")
    stats_parser.set_defaults(func=cmd_stats)

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=API_HOST)
    serve_parser.add_argument("--port", type=int, default=API_PORT)
    serve_parser.set_defaults(func=cmd_serve)

    # Cache maintenance
    clear_parser = subparsers.add_parser("cache-clear", help="Delete cached entries (sqlite backend)")
    clear_parser.add_argument("--scope", choices=[s.value for s in CacheScope],
                              help="Only clear this scope")
    clear_parser.set_defaults(func=cmd_cache_clear)

    purge_parser = subparsers.add_parser("cache-purge", help="Delete expired cache entries (sqlite backend)")
    purge_parser.set_defaults(func=cmd_cache_purge)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
