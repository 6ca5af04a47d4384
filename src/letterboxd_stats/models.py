"""
Record types flowing through the acquisition pipeline.

RawEntry rows come out of the listing parsers, CanonicalRecord is the
merged one-per-film record that the enrichment stages extend, and
NativeDetail / ProviderMatch hold what each enrichment source adds.

The serialized CanonicalRecord (``to_dict``) is the shape consumed by the
dashboard and produced by the CSV import path, so its keys follow the
Letterboxd export columns (``Date``, ``Name``, ``Year``, ...).
"""
from dataclasses import dataclass, field
from enum import Enum


class ListingKind(str, Enum):
    GRID = "films"
    LOG = "diary"


@dataclass(frozen=True)
class RawEntry:
    title: str
    year: str = ""
    watch_date: str = ""
    rating: str = ""
    film_key: str = ""
    listing: ListingKind = ListingKind.GRID


@dataclass
class CastCredit:
    name: str
    role: str | None = None

    def to_dict(self) -> dict:
        data = {"name": self.name}
        if self.role:
            data["character"] = self.role
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CastCredit":
        return cls(name=data.get("name", ""), role=data.get("character"))


@dataclass
class CrewCredit:
    name: str
    job: str | None = None

    def to_dict(self) -> dict:
        data = {"name": self.name}
        if self.job:
            data["job"] = self.job
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CrewCredit":
        return cls(name=data.get("name", ""), job=data.get("job"))


@dataclass
class NativeDetail:
    """Supplementary fields scraped from a Letterboxd film page."""
    cast: list[CastCredit] = field(default_factory=list)
    crew: list[CrewCredit] = field(default_factory=list)
    studios: list[str] = field(default_factory=list)
    countries: list[str] = field(default_factory=list)
    genres: list[str] = field(default_factory=list)
    themes: list[str] = field(default_factory=list)
    poster_url: str | None = None

    def to_dict(self) -> dict:
        return {
            "lbCast": [c.to_dict() for c in self.cast],
            "lbCrew": [c.to_dict() for c in self.crew],
            "lbStudios": list(self.studios),
            "lbCountries": list(self.countries),
            "lbGenres": list(self.genres),
            "lbThemes": list(self.themes),
            "lbPoster": self.poster_url,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NativeDetail":
        return cls(
            cast=[CastCredit.from_dict(c) for c in data.get("lbCast") or []],
            crew=[CrewCredit.from_dict(c) for c in data.get("lbCrew") or []],
            studios=list(data.get("lbStudios") or []),
            countries=list(data.get("lbCountries") or []),
            genres=list(data.get("lbGenres") or []),
            themes=list(data.get("lbThemes") or []),
            poster_url=data.get("lbPoster"),
        )


@dataclass
class ProviderPerson:
    id: int | None
    name: str


@dataclass
class ProviderGenre:
    id: int | None
    name: str


@dataclass
class ProviderCountry:
    iso_3166_1: str
    name: str


@dataclass
class ProviderMatch:
    """Supplementary fields from TMDB for one matched title."""
    tmdb_id: int
    media_type: str = "movie"
    poster_path: str | None = None
    backdrop_path: str | None = None
    genres: list[ProviderGenre] = field(default_factory=list)
    production_countries: list[ProviderCountry] = field(default_factory=list)
    original_language: str | None = None
    runtime: int = 0
    directors: list[ProviderPerson] = field(default_factory=list)
    cast: list[ProviderPerson] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "tmdb_id": self.tmdb_id,
            "media_type": self.media_type,
            "poster_path": self.poster_path,
            "backdrop_path": self.backdrop_path,
            "genres": [{"id": g.id, "name": g.name} for g in self.genres],
            "production_countries": [
                {"iso_3166_1": c.iso_3166_1, "name": c.name} for c in self.production_countries
            ],
            "original_language": self.original_language,
            "runtime": self.runtime,
            "directors": [{"id": p.id, "name": p.name} for p in self.directors],
            "cast": [{"id": p.id, "name": p.name} for p in self.cast],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProviderMatch":
        return cls(
            tmdb_id=data["tmdb_id"],
            media_type=data.get("media_type") or "movie",
            poster_path=data.get("poster_path"),
            backdrop_path=data.get("backdrop_path"),
            genres=[ProviderGenre(g.get("id"), g.get("name", "")) for g in data.get("genres") or []],
            production_countries=[
                ProviderCountry(c.get("iso_3166_1", ""), c.get("name", ""))
                for c in data.get("production_countries") or []
            ],
            original_language=data.get("original_language"),
            runtime=data.get("runtime") or 0,
            directors=[ProviderPerson(p.get("id"), p.get("name", "")) for p in data.get("directors") or []],
            cast=[ProviderPerson(p.get("id"), p.get("name", "")) for p in data.get("cast") or []],
        )


@dataclass
class CanonicalRecord:
    """
    One film in a user's merged history.

    The merge-derived fields (title, year, rating, watch_date) are fixed once
    reconciliation finishes; enrichment stages only fill ``native``,
    ``provider`` and the ``not_found`` / ``error`` markers.
    """
    film_key: str
    title: str
    year: str = ""
    rating: str = ""
    watch_date: str = ""
    native: NativeDetail | None = None
    provider: ProviderMatch | None = None
    not_found: bool = False
    error: bool = False

    @classmethod
    def from_entry(cls, entry: RawEntry) -> "CanonicalRecord":
        return cls(
            film_key=entry.film_key,
            title=entry.title,
            year=entry.year,
            rating=entry.rating,
            watch_date=entry.watch_date,
        )

    def to_dict(self) -> dict:
        data = {
            "Date": self.watch_date,
            "Name": self.title,
            "Year": self.year,
            "LetterboxdURI": self.film_key,
            "Rating": self.rating,
        }
        if self.native is not None:
            data.update(self.native.to_dict())
        if self.provider is not None:
            data.update(self.provider.to_dict())
        if self.not_found:
            data["notFound"] = True
        if self.error:
            data["error"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CanonicalRecord":
        native = NativeDetail.from_dict(data) if "lbCast" in data else None
        provider = ProviderMatch.from_dict(data) if data.get("tmdb_id") is not None else None
        return cls(
            film_key=data.get("LetterboxdURI", ""),
            title=data.get("Name", ""),
            year=data.get("Year") or "",
            rating=data.get("Rating") or "",
            watch_date=data.get("Date") or "",
            native=native,
            provider=provider,
            not_found=bool(data.get("notFound")),
            error=bool(data.get("error")),
        )
