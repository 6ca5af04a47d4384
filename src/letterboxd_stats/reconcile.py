"""Merge the films grid and the diary into one record per film."""
import logging
from typing import Iterable

from .models import CanonicalRecord, RawEntry

logger = logging.getLogger(__name__)


def merge(grid_entries: Iterable[RawEntry], log_entries: Iterable[RawEntry]) -> list[CanonicalRecord]:
    """
    Reconcile the two listings keyed by film URI.

    The grid is the system of record: its title/year/rating are kept and
    diary values only fill gaps. Diary watch dates are always carried over,
    with the last diary entry winning for films logged more than once.
    Entries without a film key can't be enriched later and are dropped.
    """
    by_key: dict[str, CanonicalRecord] = {}
    dropped = 0

    for entry in grid_entries:
        if not entry.film_key:
            dropped += 1
            continue
        if entry.film_key not in by_key:
            by_key[entry.film_key] = CanonicalRecord.from_entry(entry)

    for entry in log_entries:
        if not entry.film_key:
            dropped += 1
            continue

        existing = by_key.get(entry.film_key)
        if existing is None:
            # The grid can lag behind recently logged films
            by_key[entry.film_key] = CanonicalRecord.from_entry(entry)
            continue

        if not existing.rating and entry.rating:
            existing.rating = entry.rating
        if not existing.year and entry.year:
            existing.year = entry.year
        if entry.watch_date:
            existing.watch_date = entry.watch_date

    if dropped:
        logger.debug(f"Dropped {dropped} entries without a film key")

    return list(by_key.values())
