import httpx
import json
import logging
import re
from dataclasses import dataclass, field
from selectolax.parser import HTMLParser

from .config import HTTP_TIMEOUT, LETTERBOXD_BASE, LETTERBOXD_COOKIE, USER_AGENT
from .errors import FetchError
from .models import (
    CastCredit,
    CrewCredit,
    ListingKind,
    NativeDetail,
    RawEntry,
)
from .utils import async_get_with_retries

logger = logging.getLogger(__name__)

_FILM_PATH_RE = re.compile(r"^/(?:[^/]+/)?film/([^/]+)/")
_DIARY_DAY_RE = re.compile(r"for/(\d{4})/(\d{2})/(\d{2})/")
_TRAILING_YEAR_RE = re.compile(r"\((\d{4})\)\s*$")

# First path segment of a crew link -> job label shown on the film page
CREW_ROLES = {
    "director": "Director",
    "co-director": "Co-Director",
    "producer": "Producer",
    "executive-producer": "Executive Producer",
    "writer": "Writer",
    "original-writer": "Original Writer",
    "story": "Story",
    "editor": "Editor",
    "cinematography": "Cinematography",
    "additional-photography": "Additional Photography",
    "composer": "Composer",
    "songs": "Songs",
    "sound": "Sound",
    "casting": "Casting",
    "production-design": "Production Design",
    "art-direction": "Art Direction",
    "set-decoration": "Set Decoration",
    "costume-design": "Costume Design",
    "makeup": "Makeup",
    "hairstyling": "Hairstyling",
    "visual-effects": "Visual Effects",
    "special-effects": "Special Effects",
    "stunts": "Stunts",
    "choreography": "Choreography",
    "title-design": "Title Design",
    "lighting": "Lighting",
    "camera-operator": "Camera Operator",
    "assistant-director": "Assistant Director",
}

SOFT_BLOCK_PHRASES = [
    "please wait",
    "too many requests",
    "try again later",
    "access denied",
]


def _parse_cookie_header(cookie_header: str | None) -> dict[str, str]:
    """
    Convert a raw Cookie header string into a dict for httpx.

    Accepts the full "key=value; key2=value2" header; ignores malformed pairs.
    """
    if not cookie_header:
        return {}

    cookie_jar: dict[str, str] = {}
    for part in cookie_header.split(";"):
        if "=" not in part:
            continue
        name, value = part.split("=", 1)
        name = name.strip()
        if name:
            cookie_jar[name] = value.strip()
    return cookie_jar


def normalize_film_uri(href: str | None) -> str:
    """
    Canonicalize a film link into the key used for merging and caching.

    Relative links are made absolute, case and trailing slashes are unified,
    and user-scoped links such as /alice/film/heat/1/ collapse onto the
    site-wide /film/heat/ page. Unrecognized shapes are kept (normalized).
    """
    if not href:
        return ""

    cleaned = href.strip().lower()
    if not cleaned:
        return ""

    path = cleaned
    for prefix in ("https://letterboxd.com", "http://letterboxd.com",
                   "https://www.letterboxd.com", "http://www.letterboxd.com"):
        if cleaned.startswith(prefix):
            path = cleaned[len(prefix):] or "/"
            break
    else:
        if cleaned.startswith("http://") or cleaned.startswith("https://"):
            return cleaned if cleaned.endswith("/") else cleaned + "/"

    if not path.startswith("/"):
        path = "/" + path
    if not path.endswith("/"):
        path += "/"

    match = _FILM_PATH_RE.match(path)
    if match:
        path = f"/film/{match.group(1)}/"

    return f"{LETTERBOXD_BASE}{path}"


def _format_rating(value: float) -> str:
    """Render a star rating the way the export CSV does: '4', '3.5'."""
    return f"{value:g}"


def _parse_star_text(text: str) -> str:
    """Fallback for ratings rendered as stars, e.g. '★★★½'."""
    if not text:
        return ""
    full_stars = text.count("★")
    has_half = "½" in text
    if not full_stars and not has_half:
        return ""
    return _format_rating(full_stars + (0.5 if has_half else 0))


def _parse_rating_span(span) -> str:
    """
    Parse a rating from a span element with a class like 'rated-8' (4 stars).

    Returns "" for unrated entries and out-of-range values.
    """
    if span is None:
        return ""

    classes = span.attributes.get("class") or ""
    for cls in classes.split():
        if cls.startswith("rated-"):
            try:
                val = int(cls.replace("rated-", "")) / 2
            except ValueError as exc:
                logger.warning(f"Unexpected rating format in class '{cls}': {exc}")
                return ""
            if 0.5 <= val <= 5.0:
                return _format_rating(val)
            logger.warning(f"Rating value outside range [0.5-5.0]: {val} from class '{cls}'")
            return ""

    return _parse_star_text(span.text(strip=True))


def _has_next_page(tree: HTMLParser) -> bool:
    return tree.css_first(".paginate-nextprev .next") is not None


@dataclass
class ListingPage:
    entries: list[RawEntry] = field(default_factory=list)
    has_next: bool = False


def parse_grid_page(tree: HTMLParser) -> ListingPage:
    """Parse one page of the films grid ('/{user}/films/')."""
    entries = []

    for item in tree.css("li.griditem"):
        poster = item.css_first("div.react-component")
        if not poster:
            continue

        attrs = poster.attributes
        full_name = attrs.get("data-item-full-display-name") or ""
        name = attrs.get("data-item-name") or full_name
        if not name:
            continue

        link = attrs.get("data-item-link") or ""
        if not link and attrs.get("data-item-slug"):
            link = f"/film/{attrs['data-item-slug']}/"

        year = ""
        year_match = _TRAILING_YEAR_RE.search(full_name)
        if year_match:
            year = year_match.group(1)

        rating = _parse_rating_span(item.css_first("p.poster-viewingdata span.rating"))

        entries.append(RawEntry(
            title=name.strip(),
            year=year,
            rating=rating,
            film_key=normalize_film_uri(link),
            listing=ListingKind.GRID,
        ))

    return ListingPage(entries, _has_next_page(tree))


def parse_log_page(tree: HTMLParser) -> ListingPage:
    """Parse one page of the diary ('/{user}/diary/')."""
    entries = []

    for row in tree.css("tr.diary-entry-row"):
        title_link = row.css_first(".inline-production-masthead h2.name a") or row.css_first("h2.name a")
        poster = row.css_first("div.react-component")
        poster_attrs = poster.attributes if poster else {}

        name = title_link.text(strip=True) if title_link else ""
        if not name:
            name = (poster_attrs.get("data-item-name") or "").strip()
        if not name:
            continue

        link = poster_attrs.get("data-item-link") or ""
        if not link and title_link:
            link = title_link.attributes.get("href") or ""

        year_el = row.css_first("td.col-releaseyear span") or row.css_first(".releasedate a")
        year = year_el.text(strip=True) if year_el else ""

        watch_date = ""
        day_link = row.css_first("td.col-daydate a.daydate")
        if day_link:
            date_match = _DIARY_DAY_RE.search(day_link.attributes.get("href") or "")
            if date_match:
                watch_date = "-".join(date_match.groups())
            else:
                watch_date = day_link.text(strip=True)

        rating = _parse_rating_span(row.css_first("span.rating"))

        entries.append(RawEntry(
            title=name,
            year=year,
            watch_date=watch_date,
            rating=rating,
            film_key=normalize_film_uri(link),
            listing=ListingKind.LOG,
        ))

    return ListingPage(entries, _has_next_page(tree))


LISTING_PARSERS = {
    ListingKind.GRID: parse_grid_page,
    ListingKind.LOG: parse_log_page,
}


def parse_listing_page(kind: ListingKind, tree: HTMLParser) -> ListingPage:
    """Parse a listing page; unexpected markup degrades to an empty page."""
    try:
        return LISTING_PARSERS[kind](tree)
    except Exception as exc:
        logger.warning(f"Failed to parse {kind.value} page: {type(exc).__name__}: {exc}")
        return ListingPage()


def _unique_texts(nodes) -> list[str]:
    return list(dict.fromkeys(n.text(strip=True) for n in nodes if n.text(strip=True)))


def _ldjson_image(tree: HTMLParser) -> str | None:
    ldjson = tree.css_first("script[type='application/ld+json']")
    if not ldjson:
        return None
    # Letterboxd wraps the JSON in /* <![CDATA[ */ ... /* ]]> */
    cleaned = re.sub(r"/\*.*?\*/", "", ldjson.text(), flags=re.S).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.debug(f"Failed to parse ld+json: {exc}")
        return None
    if isinstance(data, list):
        data = data[0] if data else {}
    if not isinstance(data, dict):
        return None
    image = data.get("image")
    return image if isinstance(image, str) and image else None


def parse_film_detail(tree: HTMLParser) -> NativeDetail:
    """Extract cast, crew, studios, countries, genres, themes and poster."""
    cast_links = tree.css("#tab-cast a[href*='/actor/']") or tree.css("a[href*='/actor/']")
    cast = []
    seen_cast = set()
    for a in cast_links:
        name = a.text(strip=True)
        if not name or name in seen_cast:
            continue
        seen_cast.add(name)
        role = (a.attributes.get("title") or "").strip() or None
        cast.append(CastCredit(name=name, role=role))

    crew_links = tree.css("#tab-crew a[href]") or tree.css("a[href]")
    crew = []
    seen_crew = set()
    for a in crew_links:
        parts = (a.attributes.get("href") or "").strip("/").split("/")
        # Crew pages look like /director/<person>/; bare /<username>/ links don't count
        job = CREW_ROLES.get(parts[0]) if len(parts) >= 2 else None
        name = a.text(strip=True)
        if not job or not name or (name, job) in seen_crew:
            continue
        seen_crew.add((name, job))
        crew.append(CrewCredit(name=name, job=job))

    poster_url = None
    og_image = tree.css_first("meta[property='og:image']")
    if og_image:
        poster_url = og_image.attributes.get("content") or None
    if not poster_url:
        poster_url = _ldjson_image(tree)

    return NativeDetail(
        cast=cast,
        crew=crew,
        studios=_unique_texts(tree.css("a[href*='/studio/']")),
        countries=_unique_texts(tree.css("a[href*='/films/country/']")),
        genres=_unique_texts(tree.css("a[href*='/films/genre/']")),
        themes=_unique_texts(tree.css("a[href*='/films/theme/'], a[href*='/films/mini-theme/']")),
        poster_url=poster_url,
    )


def listing_url(username: str, kind: ListingKind, page: int) -> str:
    if page <= 1:
        return f"{LETTERBOXD_BASE}/{username}/{kind.value}/"
    return f"{LETTERBOXD_BASE}/{username}/{kind.value}/page/{page}/"


class LetterboxdScraper:
    """
    Async Letterboxd client: page fetcher, paginator and film-page scraper.

    Use as an async context manager; a caller-supplied ``client`` is used
    as-is and left open on exit.
    """

    BASE = LETTERBOXD_BASE

    def __init__(self, client: httpx.AsyncClient | None = None):
        self.client = client
        self._owns_client = client is None
        self.cookies = _parse_cookie_header(LETTERBOXD_COOKIE)

    async def __aenter__(self):
        if self.client is None:
            self.client = httpx.AsyncClient(
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
                timeout=HTTP_TIMEOUT,
                cookies=self.cookies or None,
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client and self._owns_client:
            await self.client.aclose()
            self.client = None
        return False

    @staticmethod
    def _detect_soft_block(tree: HTMLParser | None) -> bool:
        """Detect CAPTCHA/please-wait pages served with a 200 status."""
        if not tree:
            return False

        if tree.css_first("form[action*='captcha'], .captcha-container"):
            return True

        body_el = tree.css_first("body")
        body_text = body_el.text() if body_el else ""
        return any(phrase in body_text.lower() for phrase in SOFT_BLOCK_PHRASES)

    async def fetch_page(self, url: str) -> HTMLParser | None:
        """
        GET one page and return its parsed markup.

        Returns None on 404; raises FetchError on transport failures and on
        soft blocks.
        """
        if not self.client:
            raise RuntimeError("LetterboxdScraper must be used as an async context manager")

        resp = await async_get_with_retries(self.client, url)
        if resp is None:
            return None

        tree = HTMLParser(resp.text)
        if self._detect_soft_block(tree):
            logger.warning(f"Soft block detected on {url}")
            raise FetchError(url, "Soft block detected", resp.status_code)
        return tree

    async def fetch_listing_page(self, username: str, kind: ListingKind, page: int) -> ListingPage:
        tree = await self.fetch_page(listing_url(username, kind, page))
        if tree is None:
            return ListingPage()
        return parse_listing_page(kind, tree)

    async def paginate(self, username: str, kind: ListingKind, max_pages: int) -> list[RawEntry]:
        """
        Collect every entry of one listing, page by page.

        An empty first page means "no data" and stops immediately. Hitting
        ``max_pages`` truncates the result. A FetchError on the first page
        propagates; later failures end the walk with what was collected.
        """
        first = await self.fetch_listing_page(username, kind, 1)
        if not first.entries:
            logger.info(f"No {kind.value} entries for {username}")
            return []

        entries = list(first.entries)
        has_next = first.has_next
        page = 1

        while has_next and page < max_pages:
            page += 1
            try:
                result = await self.fetch_listing_page(username, kind, page)
            except FetchError as exc:
                logger.warning(f"Stopping {kind.value} pagination for {username} at page {page}: {exc}")
                break
            entries.extend(result.entries)
            has_next = result.has_next
            logger.debug(f"  {kind.value} page {page}: {len(result.entries)} entries")

        if has_next and page >= max_pages:
            logger.info(f"{kind.value} listing for {username} truncated at {max_pages} pages")

        logger.info(f"Scraped {len(entries)} {kind.value} entries for {username} ({page} pages)")
        return entries

    async def scrape_film_detail(self, film_uri: str) -> NativeDetail | None:
        """Scrape native metadata for one film page (None on 404)."""
        tree = await self.fetch_page(film_uri)
        if tree is None:
            return None
        return parse_film_detail(tree)
