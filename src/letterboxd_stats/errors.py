"""Exception types shared across the acquisition pipeline."""


class LetterboxdStatsError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(LetterboxdStatsError):
    """A required setting (e.g. the TMDB credential) is missing."""


class FetchError(LetterboxdStatsError):
    """An outbound request failed after its retry budget was spent."""

    def __init__(self, url: str, message: str, status_code: int | None = None):
        super().__init__(f"{message} ({url})")
        self.url = url
        self.status_code = status_code


class UserNotFoundError(LetterboxdStatsError):
    """
    Neither listing returned any entries.

    Invalid usernames, private profiles and empty histories are
    indistinguishable from the outside and all end up here.
    """

    def __init__(self, username: str):
        super().__init__(
            f"No films or diary entries found for '{username}'. "
            "Profile may be private or username invalid."
        )
        self.username = username


class ScrapeError(LetterboxdStatsError):
    """Both listings failed on their first page with transport errors."""
