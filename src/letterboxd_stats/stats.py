"""
Aggregate statistics over an enriched watch history.

Works on the serialized record shape (``CanonicalRecord.to_dict()``) so
scraped results, CSV imports and previously saved JSON files can all be
summarized the same way. Letterboxd-native metadata is preferred over the
TMDB equivalents when both are present.
"""
from collections import Counter, defaultdict

COUNTRY_ALIASES = {"US": "USA", "GB": "UK"}


def _rating(movie: dict) -> float | None:
    try:
        return float(movie.get("Rating") or "")
    except ValueError:
        return None


class _Tally:
    def __init__(self):
        self.count = 0
        self.rating_sum = 0.0
        self.rated = 0

    def add(self, rating: float | None) -> None:
        self.count += 1
        if rating is not None:
            self.rating_sum += rating
            self.rated += 1

    def to_dict(self) -> dict:
        avg = round(self.rating_sum / self.rated, 2) if self.rated else None
        return {"count": self.count, "rated": self.rated, "average_rating": avg}


def _top(tallies: dict[str, _Tally], top_n: int) -> list[dict]:
    ranked = sorted(tallies.items(), key=lambda kv: (-kv[1].count, kv[0]))[:top_n]
    return [{"name": name, **tally.to_dict()} for name, tally in ranked]


def _genres(movie: dict) -> list[str]:
    if movie.get("lbGenres"):
        return movie["lbGenres"]
    return [g["name"] for g in movie.get("genres") or [] if g.get("name")]


def _countries(movie: dict) -> list[str]:
    if movie.get("lbCountries"):
        return movie["lbCountries"]
    names = []
    for c in movie.get("production_countries") or []:
        name = COUNTRY_ALIASES.get(c.get("iso_3166_1"), c.get("name"))
        if name:
            names.append(name)
    return names


def _directors(movie: dict) -> list[str]:
    crew = movie.get("lbCrew") or []
    if crew:
        return [p["name"] for p in crew if "director" in (p.get("job") or "").lower()]
    return [d["name"] for d in movie.get("directors") or []]


def _actors(movie: dict) -> list[str]:
    if movie.get("lbCast"):
        return [a["name"] for a in movie["lbCast"]]
    return [a["name"] for a in movie.get("cast") or []]


def summarize(movies: list[dict], top_n: int = 10) -> dict:
    """Compute the dashboard aggregates for a list of serialized records."""
    ratings: Counter = Counter()
    years: dict[str, _Tally] = defaultdict(_Tally)
    decades: dict[str, _Tally] = defaultdict(_Tally)
    diary_years: Counter = Counter()
    genres: dict[str, _Tally] = defaultdict(_Tally)
    countries: dict[str, _Tally] = defaultdict(_Tally)
    languages: dict[str, _Tally] = defaultdict(_Tally)
    studios: dict[str, _Tally] = defaultdict(_Tally)
    crew_by_job: dict[str, dict[str, _Tally]] = defaultdict(lambda: defaultdict(_Tally))
    directors: Counter = Counter()
    actors: Counter = Counter()
    rating_sum = 0.0
    runtime_total = 0

    for movie in movies:
        rating = _rating(movie)
        if rating is not None:
            ratings[movie["Rating"]] += 1
            rating_sum += rating

        year = (movie.get("Year") or "").strip()
        if year.isdigit():
            years[year].add(rating)
            decades[f"{int(year) // 10 * 10}s"].add(rating)

        watched = movie.get("Watched Date") or movie.get("Date") or ""
        diary_year = watched.split("-")[0]
        if diary_year.isdigit():
            diary_years[diary_year] += 1

        for name in _genres(movie):
            genres[name].add(rating)
        for name in _countries(movie):
            countries[name].add(rating)
        for studio in movie.get("lbStudios") or []:
            if studio.strip():
                studios[studio.strip()].add(rating)
        if movie.get("original_language"):
            languages[movie["original_language"]].add(rating)
        for member in movie.get("lbCrew") or []:
            if member.get("name"):
                job = (member.get("job") or "Other").strip() or "Other"
                crew_by_job[job][member["name"]].add(rating)

        # Credits only count films the user actually rated
        if rating is not None:
            directors.update(_directors(movie))
            actors.update(_actors(movie))

        runtime_total += movie.get("runtime") or 0

    n_rated = sum(ratings.values())
    return {
        "total_films": len(movies),
        "rated_films": n_rated,
        "average_rating": round(rating_sum / n_rated, 2) if n_rated else None,
        "rating_distribution": dict(sorted(ratings.items(), key=lambda kv: float(kv[0]))),
        "by_release_year": {y: t.to_dict() for y, t in sorted(years.items())},
        "by_decade": {d: t.to_dict() for d, t in sorted(decades.items())},
        "diary_entries_by_year": dict(sorted(diary_years.items())),
        "top_genres": _top(genres, top_n),
        "top_countries": _top(countries, top_n),
        "top_languages": _top(languages, top_n),
        "top_studios": _top(studios, top_n),
        "top_directors": [{"name": n, "count": c} for n, c in directors.most_common(top_n)],
        "top_actors": [{"name": n, "count": c} for n, c in actors.most_common(top_n)],
        "crew_by_job": {job: _top(people, top_n) for job, people in sorted(crew_by_job.items())},
        "total_runtime_minutes": runtime_total,
        "not_found": sum(1 for m in movies if m.get("notFound")),
        "errors": sum(1 for m in movies if m.get("error")),
    }
