import dataclasses
import logging
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import get_current_user
from .database import get_db
from .importer import ImportOptions, get_user_list, import_letterboxd_export, import_matched_movies
from .letterboxd import ExportRow, clamp_rating, parse_export, parse_pasted_titles
from .matcher import MatchedMovie, MovieCandidate, match_rows
from .models import User
from .ratelimit import limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/import", tags=["import"])
MATCHED_IMPORT_LIMIT = 1000
IMPORT_FAILED_MESSAGE = "Import failed. Nothing was saved, please try again."


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExportRowBody(_CamelModel):
    title: str = Field(min_length=1, max_length=500)
    year: int | None = Field(default=None, ge=1870, le=2200)
    rating: float | None = None
    review_text: str | None = Field(default=None, max_length=20_000)
    list_name: str | None = Field(default=None, max_length=200)
    url: str | None = Field(default=None, max_length=500)


class MovieCandidateBody(_CamelModel):
    tmdb_id: int = Field(ge=1)
    title: str = Field(min_length=1, max_length=500)
    year: int | None = None
    poster_url: str | None = Field(default=None, max_length=500)
    overview: str | None = None
    original_title: str | None = Field(default=None, max_length=500)


class MatchedMovieBody(_CamelModel):
    parsed: ExportRowBody
    match: MovieCandidateBody | None = None
    status: Literal["exact", "best_guess", "none"] = "none"
    selected: bool = False


class PasteMatchRequest(_CamelModel):
    text: str = Field(min_length=1, max_length=50_000)


class ImportMatchedRequest(_CamelModel):
    movies: list[MatchedMovieBody] = Field(max_length=MATCHED_IMPORT_LIMIT)
    list_id: UUID | None = None


def _serialize_matched_movie(movie: MatchedMovie) -> dict:
    return MatchedMovieBody.model_validate(dataclasses.asdict(movie)).model_dump(by_alias=True)


def _matched_movie_from_body(body: MatchedMovieBody) -> MatchedMovie:
    row = ExportRow(
        title=body.parsed.title.strip(),
        year=body.parsed.year,
        rating=clamp_rating(body.parsed.rating),
        review_text=body.parsed.review_text,
        list_name=body.parsed.list_name,
        url=body.parsed.url,
    )
    match = MovieCandidate(**body.match.model_dump()) if body.match else None
    status = body.status if match else "none"
    # A "none" row is never written, whatever its candidate or toggle say.
    return MatchedMovie(
        parsed=row,
        match=match,
        status=status,
        selected=bool(body.selected and match and status != "none"),
    )


async def _read_upload(file: UploadFile) -> tuple[bytes, str]:
    data = await file.read()
    return data, file.filename or ""


@router.post("/letterboxd/preview")
@limiter.limit("20/minute")
async def preview_letterboxd_import(
    request: Request,
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
):
    data, filename = await _read_upload(file)
    export = parse_export(data, filename)
    return {
        "ok": True,
        "username": export.username,
        "counts": export.counts(),
        "lists": [{"name": row.name, "count": len(row.rows)} for row in export.lists],
    }


@router.post("/letterboxd")
@limiter.limit("10/minute")
async def import_letterboxd(
    request: Request,
    file: UploadFile = File(...),
    import_watched: bool = Form(True),
    import_ratings: bool = Form(True),
    import_watchlist: bool = Form(True),
    import_reviews: bool = Form(True),
    import_favorites: bool = Form(True),
    import_lists: bool = Form(True),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    data, filename = await _read_upload(file)
    export = parse_export(data, filename)
    options = ImportOptions(
        import_watched=import_watched,
        import_ratings=import_ratings,
        import_watchlist=import_watchlist,
        import_reviews=import_reviews,
        import_favorites=import_favorites,
        import_lists=import_lists,
    )
    user_id = user.id
    try:
        summary = await import_letterboxd_export(db, user, export, options)
    except SQLAlchemyError:
        logger.exception("Letterboxd import failed (user=%s)", user_id)
        await db.rollback()
        return JSONResponse(status_code=500, content={"error": IMPORT_FAILED_MESSAGE})
    return summary.as_response()


@router.post("/paste/match")
@limiter.limit("20/minute")
async def match_pasted_titles(
    request: Request,
    body: PasteMatchRequest,
    user: User = Depends(get_current_user),
):
    rows = parse_pasted_titles(body.text)
    matches = await match_rows(rows)
    return {
        "ok": True,
        "totalCount": len(matches),
        "foundCount": sum(1 for movie in matches if movie.match is not None),
        "matches": [_serialize_matched_movie(movie) for movie in matches],
    }


@router.post("/matched")
@limiter.limit("20/minute")
async def import_confirmed_matches(
    request: Request,
    body: ImportMatchedRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    target = None
    if body.list_id is not None:
        target = await get_user_list(db, user, body.list_id)
        if target is None:
            raise HTTPException(status_code=404, detail="List not found")
    movies = [_matched_movie_from_body(movie) for movie in body.movies]
    user_id = user.id
    try:
        summary = await import_matched_movies(db, user, movies, target=target)
    except SQLAlchemyError:
        logger.exception("Matched import failed (user=%s)", user_id)
        await db.rollback()
        return JSONResponse(status_code=500, content={"error": IMPORT_FAILED_MESSAGE})
    return summary.as_response()
