"""HTTP entry point: GET /fetch-user-data?username=<id>&forceRefresh=<bool>."""
from __future__ import annotations

import logging
import re
from typing import Callable

from fastapi import Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .cache import CacheLayer
from .errors import ConfigurationError, ScrapeError, UserNotFoundError
from .pipeline import UserDataPipeline, get_default_cache

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

PipelineFactory = Callable[[], UserDataPipeline]


def get_pipeline_factory(cache: CacheLayer = Depends(get_default_cache)) -> PipelineFactory:
    return lambda: UserDataPipeline(cache)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _parse_bool(raw: str | None) -> bool:
    return (raw or "").strip().lower() in {"1", "true", "yes", "on"}


async def fetch_user_data(
    username: str | None = Query(default=None),
    force_refresh: str | None = Query(default=None, alias="forceRefresh"),
    pipeline_factory: PipelineFactory = Depends(get_pipeline_factory),
):
    if not username or not USERNAME_RE.match(username.strip()):
        return _error(400, "Missing or invalid username parameter.")
    username = username.strip()

    try:
        result = await pipeline_factory().run(username, force_refresh=_parse_bool(force_refresh))
    except UserNotFoundError as exc:
        return _error(404, str(exc))
    except ConfigurationError as exc:
        logger.error(str(exc))
        return _error(500, str(exc))
    except ScrapeError as exc:
        logger.error(str(exc))
        return _error(500, str(exc))
    except Exception:
        logger.exception(f"Failed to fetch user data for {username}")
        return _error(500, "Internal server error while fetching user data.")

    return result.to_dict()


def create_app() -> FastAPI:
    app = FastAPI(title="Letterboxd Stats", description="Enriched Letterboxd watch history API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(_request, exc: StarletteHTTPException):
        message = "Method not allowed. Use GET." if exc.status_code == 405 else str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"error": message}, headers=exc.headers)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    app.add_api_route("/fetch-user-data", fetch_user_data, methods=["GET"])
    app.add_api_route("/api/fetch-user-data", fetch_user_data, methods=["GET"])
    return app


app = create_app()
