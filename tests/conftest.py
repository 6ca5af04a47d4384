import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_cache(clock):
    """CacheLayer over an in-memory backend driven by the fake clock."""
    from letterboxd_stats.cache import CacheLayer, MemoryCacheBackend

    return CacheLayer(MemoryCacheBackend(clock=clock))


@pytest.fixture
def reload_config(monkeypatch):
    """
    Reload config after env changes, then restore the pristine module so
    later tests see default values again.
    """
    import letterboxd_stats.config as config

    yield lambda: importlib.reload(config)

    monkeypatch.undo()
    importlib.reload(config)


def grid_html(films, has_next=False):
    """Render a films-grid page. ``films`` is a list of (name, year, slug, rated_class)."""
    items = []
    for name, year, slug, rated in films:
        rating = f'<p class="poster-viewingdata"><span class="rating {rated}"></span></p>' if rated else ""
        items.append(
            f'<li class="griditem"><div class="react-component" data-item-name="{name}" '
            f'data-item-full-display-name="{name} ({year})" data-item-link="/film/{slug}/"></div>{rating}</li>'
        )
    nav = '<div class="paginate-nextprev"><a class="next" href="#">Older</a></div>' if has_next else ""
    return f"<html><body><ul class='grid'>{''.join(items)}</ul>{nav}</body></html>"


def diary_html(rows, has_next=False):
    """Render a diary page. ``rows`` is a list of (name, year, user_film_path, date, rated_class)."""
    trs = []
    for name, year, path, date, rated in rows:
        y, m, d = date.split("-")
        trs.append(
            '<tr class="diary-entry-row">'
            f'<td class="col-daydate"><a class="daydate" href="/alice/diary/films/for/{y}/{m}/{d}/">{d}</a></td>'
            '<td class="col-production"><div class="inline-production-masthead">'
            f'<h2 class="name"><a href="{path}">{name}</a></h2></div></td>'
            f'<td class="col-releaseyear"><span>{year}</span></td>'
            f'<td class="col-rating"><span class="rating {rated}"></span></td>'
            '</tr>'
        )
    nav = '<div class="paginate-nextprev"><a class="next" href="#">Older</a></div>' if has_next else ""
    return f"<html><body><table>{''.join(trs)}</table>{nav}</body></html>"
