import asyncio

import httpx
import pytest

from cinechrony import tmdb


@pytest.fixture
def tmdb_requests(monkeypatch):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"page": 1, "results": [{"id": 949, "title": "Heat"}]})

    monkeypatch.setenv("TMDB_API_KEY", "test-key")
    monkeypatch.setattr(tmdb, "_client", httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return seen


def test_search_movie_passes_query_and_year(tmdb_requests):
    data = asyncio.run(tmdb.search_movie("Heat", year=1995))
    assert data["results"][0]["id"] == 949
    [request] = tmdb_requests
    assert request.url.path == "/3/search/movie"
    assert request.url.params["query"] == "Heat"
    assert request.url.params["year"] == "1995"
    assert request.url.params["include_adult"] == "false"
    assert request.url.params["api_key"] == "test-key"


def test_search_movie_without_year_omits_it(tmdb_requests):
    asyncio.run(tmdb.search_movie("Parasite"))
    assert "year" not in tmdb_requests[0].url.params


def test_search_movie_requires_api_key(monkeypatch):
    monkeypatch.delenv("TMDB_API_KEY", raising=False)
    with pytest.raises(tmdb.TMDBConfigError):
        asyncio.run(tmdb.search_movie("Heat"))


@pytest.mark.parametrize(
    "path, expected",
    [
        ("/abc.jpg", "https://image.tmdb.org/t/p/w500/abc.jpg"),
        ("abc.jpg", "https://image.tmdb.org/t/p/w500/abc.jpg"),
        ("https://cdn.example/abc.jpg", "https://cdn.example/abc.jpg"),
        ("", None),
        (None, None),
    ],
)
def test_poster_url(path, expected):
    assert tmdb.poster_url(path) == expected
