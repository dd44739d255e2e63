import os
import httpx

BASE_URL = "https://api.themoviedb.org/3"
IMAGE_BASE_URL = "https://image.tmdb.org/t/p"
POSTER_SIZE = "w500"
_client: httpx.AsyncClient | None = None


class TMDBConfigError(RuntimeError):
    pass


def _get_api_key() -> str:
    key = os.environ.get("TMDB_API_KEY", "")
    if not key:
        raise TMDBConfigError("TMDB_API_KEY environment variable not set.")
    return key


async def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=10)
    return _client


async def close_client() -> None:
    global _client
    if _client:
        await _client.aclose()
        _client = None


async def _get(path: str, params: dict | None = None) -> dict:
    params = params or {}
    params["api_key"] = _get_api_key()
    client = await _get_client()
    resp = await client.get(f"{BASE_URL}{path}", params=params)
    resp.raise_for_status()
    return resp.json()


async def search_movie(query: str, page: int = 1, year: int | None = None) -> dict:
    params = {"query": query, "page": page, "include_adult": "false"}
    if year is not None:
        params["year"] = year
    return await _get("/search/movie", params)


def poster_url(poster_path: str | None, size: str = POSTER_SIZE) -> str | None:
    path = str(poster_path or "").strip()
    if not path:
        return None
    if path.startswith("http://") or path.startswith("https://"):
        return path
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{IMAGE_BASE_URL}/{size}{path}"
