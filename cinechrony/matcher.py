import logging
import re
from dataclasses import dataclass
from html import unescape
from typing import Awaitable, Callable, Literal

import httpx

from . import tmdb
from .letterboxd import ExportRow

logger = logging.getLogger(__name__)

MatchStatus = Literal["exact", "best_guess", "none"]
SearchFn = Callable[..., Awaitable[dict]]


@dataclass(frozen=True)
class MovieCandidate:
    tmdb_id: int
    title: str
    year: int | None = None
    poster_url: str | None = None
    overview: str | None = None
    original_title: str | None = None


@dataclass(frozen=True)
class MatchedMovie:
    parsed: ExportRow
    match: MovieCandidate | None
    status: MatchStatus
    selected: bool


def normalize_title_for_match(value: str) -> str:
    normalized = unescape(str(value or "")).lower()
    normalized = normalized.replace("&", " and ")
    normalized = re.sub(r"[^a-z0-9]+", " ", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def _release_year(value: str | None) -> int | None:
    match = re.match(r"^(\d{4})", str(value or "").strip())
    return int(match.group(1)) if match else None


def candidate_from_result(result: dict) -> MovieCandidate | None:
    movie_id = result.get("id")
    if not isinstance(movie_id, int) or movie_id <= 0:
        return None
    title = str(result.get("title") or result.get("original_title") or "").strip()
    if not title:
        return None
    return MovieCandidate(
        tmdb_id=movie_id,
        title=title,
        year=_release_year(result.get("release_date")),
        poster_url=tmdb.poster_url(result.get("poster_path")),
        overview=str(result.get("overview") or "").strip() or None,
        original_title=str(result.get("original_title") or "").strip() or None,
    )


def _is_exact(row: ExportRow, candidate: MovieCandidate) -> bool:
    wanted = normalize_title_for_match(row.title)
    titles = {normalize_title_for_match(candidate.title)}
    if candidate.original_title:
        titles.add(normalize_title_for_match(candidate.original_title))
    if wanted not in titles:
        return False
    return row.year is None or candidate.year == row.year


def pick_match(row: ExportRow, results: list[dict]) -> MatchedMovie:
    """Choose the exact title+year hit, else the first result as a best guess."""
    candidates = [c for c in (candidate_from_result(r) for r in results if isinstance(r, dict)) if c]
    if not candidates:
        return MatchedMovie(parsed=row, match=None, status="none", selected=False)
    for candidate in candidates:
        if _is_exact(row, candidate):
            return MatchedMovie(parsed=row, match=candidate, status="exact", selected=True)
    return MatchedMovie(parsed=row, match=candidates[0], status="best_guess", selected=True)


async def match_row(row: ExportRow, search: SearchFn | None = None) -> MatchedMovie:
    search = search or tmdb.search_movie
    query = row.title.strip()
    if not query:
        return MatchedMovie(parsed=row, match=None, status="none", selected=False)
    try:
        data = await search(query, page=1, year=row.year)
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("TMDB search failed for %r (%s): %s", query, row.year, exc)
        return MatchedMovie(parsed=row, match=None, status="none", selected=False)
    results = data.get("results") if isinstance(data, dict) else None
    return pick_match(row, results or [])


async def match_rows(rows: list[ExportRow], search: SearchFn | None = None) -> list[MatchedMovie]:
    """Match rows in order, one search query per row."""
    matched: list[MatchedMovie] = []
    for row in rows:
        matched.append(await match_row(row, search))
    return matched
