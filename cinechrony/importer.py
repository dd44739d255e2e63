import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import add_audit_log
from .letterboxd import ExportRow, LetterboxdExport
from .matcher import MatchedMovie, SearchFn, match_rows, normalize_title_for_match
from .models import (
    DEFAULT_LIST_NAME,
    ITEM_STATUS_TO_WATCH,
    ITEM_STATUS_WATCHED,
    ListItem,
    MovieList,
    Rating,
    Review,
    User,
)

logger = logging.getLogger(__name__)

RATING_SCALE_MIN = 1
RATING_SCALE_MAX = 10
FAVORITES_LIST_NAME = "Favorites"


def _row_key(row: ExportRow) -> tuple[str, int | None]:
    return (normalize_title_for_match(row.title), row.year)


def to_ten_point(stars: float | None) -> int | None:
    if stars is None:
        return None
    value = int(round(float(stars) * 2))
    return min(RATING_SCALE_MAX, max(RATING_SCALE_MIN, value))


@dataclass
class ImportSummary:
    imported_count: int = 0
    skipped_count: int = 0
    unmatched_count: int = 0
    lists_created: int = 0
    ratings_saved: int = 0
    reviews_saved: int = 0
    errors: list[str] = field(default_factory=list)
    unmatched_keys: set = field(default_factory=set, repr=False)

    def mark_unmatched(self, row: ExportRow) -> None:
        key = _row_key(row)
        if key not in self.unmatched_keys:
            self.unmatched_keys.add(key)
            self.unmatched_count += 1

    def as_response(self) -> dict:
        return {
            "ok": True,
            "importedCount": self.imported_count,
            "skippedCount": self.skipped_count,
            "unmatchedCount": self.unmatched_count,
            "listsCreated": self.lists_created,
            "ratingsSaved": self.ratings_saved,
            "reviewsSaved": self.reviews_saved,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class ImportOptions:
    import_watched: bool = True
    import_ratings: bool = True
    import_watchlist: bool = True
    import_reviews: bool = True
    import_favorites: bool = True
    import_lists: bool = True


def _normalize_list_name(name: str) -> str:
    return " ".join(str(name or "").strip().split())


async def get_or_create_default_list(db: AsyncSession, user: User, summary: ImportSummary | None = None) -> MovieList:
    list_row = (
        await db.execute(
            select(MovieList)
            .where(MovieList.user_id == user.id, MovieList.is_default.is_(True))
            .limit(1)
        )
    ).scalar_one_or_none()
    if list_row is not None:
        return list_row
    list_row = MovieList(user_id=user.id, name=DEFAULT_LIST_NAME, is_default=True)
    db.add(list_row)
    await db.flush()
    if summary is not None:
        summary.lists_created += 1
    return list_row


async def get_or_create_list(db: AsyncSession, user: User, name: str, summary: ImportSummary) -> MovieList:
    list_name = _normalize_list_name(name)[:120]
    list_row = (
        await db.execute(
            select(MovieList)
            .where(
                MovieList.user_id == user.id,
                func.lower(MovieList.name) == list_name.lower(),
            )
            .order_by(MovieList.created_at.asc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if list_row is not None:
        return list_row
    list_row = MovieList(user_id=user.id, name=list_name, is_default=False)
    db.add(list_row)
    await db.flush()
    summary.lists_created += 1
    return list_row


async def get_user_list(db: AsyncSession, user: User, list_id: uuid.UUID) -> MovieList | None:
    return (
        await db.execute(
            select(MovieList).where(MovieList.id == list_id, MovieList.user_id == user.id)
        )
    ).scalar_one_or_none()


async def _existing_items_by_tmdb_id(db: AsyncSession, list_id: uuid.UUID) -> dict[int, ListItem]:
    rows = (
        await db.execute(
            select(ListItem).where(ListItem.list_id == list_id, ListItem.media_type == "movie")
        )
    ).scalars().all()
    return {int(row.tmdb_id): row for row in rows}


async def write_matched_to_list(
    db: AsyncSession,
    user: User,
    target: MovieList,
    movies: list[MatchedMovie],
    summary: ImportSummary,
    *,
    status: str = ITEM_STATUS_TO_WATCH,
) -> None:
    """Upsert confirmed matches into ``target``; rows already present are skipped.

    Each row is flushed inside its own savepoint so one failing write is
    reported in ``summary.errors`` without losing the rest of the batch.
    """
    existing = await _existing_items_by_tmdb_id(db, target.id)
    for movie in movies:
        if not movie.selected or movie.match is None:
            summary.mark_unmatched(movie.parsed)
            continue

        candidate = movie.match
        existing_item = existing.get(candidate.tmdb_id)
        if existing_item is not None:
            if status == ITEM_STATUS_WATCHED and existing_item.status != ITEM_STATUS_WATCHED:
                existing_item.status = ITEM_STATUS_WATCHED
            summary.skipped_count += 1
            continue

        item = ListItem(
            list_id=target.id,
            tmdb_id=candidate.tmdb_id,
            media_type="movie",
            title=candidate.title[:500],
            year=candidate.year if candidate.year is not None else movie.parsed.year,
            poster_url=candidate.poster_url,
            status=status,
            rating=to_ten_point(movie.parsed.rating),
            added_by=user.id,
            created_at=datetime.now(timezone.utc),
        )
        try:
            async with db.begin_nested():
                db.add(item)
        except SQLAlchemyError as exc:
            logger.warning(
                "Import write failed (user=%s, list=%s, tmdb_id=%s): %s",
                user.id, target.id, candidate.tmdb_id, exc,
            )
            summary.errors.append(f"Could not import {candidate.title}.")
            continue
        existing[candidate.tmdb_id] = item
        summary.imported_count += 1

    target.updated_at = datetime.now(timezone.utc)


async def _save_ratings(
    db: AsyncSession,
    user: User,
    default_list: MovieList,
    movies: list[MatchedMovie],
    summary: ImportSummary,
) -> None:
    existing = {
        int(row.tmdb_id): row
        for row in (
            await db.execute(select(Rating).where(Rating.user_id == user.id))
        ).scalars().all()
    }
    list_items = await _existing_items_by_tmdb_id(db, default_list.id)
    now = datetime.now(timezone.utc)
    for movie in movies:
        if not movie.selected or movie.match is None:
            summary.mark_unmatched(movie.parsed)
            continue
        value = to_ten_point(movie.parsed.rating)
        if value is None:
            continue
        tmdb_id = movie.match.tmdb_id
        rating_row = existing.get(tmdb_id)
        try:
            async with db.begin_nested():
                if rating_row is None:
                    rating_row = Rating(user_id=user.id, tmdb_id=tmdb_id, rating=value, created_at=now, updated_at=now)
                    db.add(rating_row)
                else:
                    rating_row.rating = value
                    rating_row.updated_at = now
                item = list_items.get(tmdb_id)
                if item is not None:
                    item.rating = value
        except SQLAlchemyError as exc:
            logger.warning("Rating import failed (user=%s, tmdb_id=%s): %s", user.id, tmdb_id, exc)
            summary.errors.append(f"Could not save your rating for {movie.match.title}.")
            continue
        existing[tmdb_id] = rating_row
        summary.ratings_saved += 1


async def _save_reviews(
    db: AsyncSession,
    user: User,
    movies: list[MatchedMovie],
    summary: ImportSummary,
) -> None:
    reviewed = set(
        (
            await db.execute(select(Review.tmdb_id).where(Review.user_id == user.id))
        ).scalars().all()
    )
    for movie in movies:
        if not movie.selected or movie.match is None:
            summary.mark_unmatched(movie.parsed)
            continue
        text = (movie.parsed.review_text or "").strip()
        if not text:
            continue
        if movie.match.tmdb_id in reviewed:
            summary.skipped_count += 1
            continue
        review = Review(
            user_id=user.id,
            tmdb_id=movie.match.tmdb_id,
            title=movie.match.title[:500],
            text=text,
            rating=to_ten_point(movie.parsed.rating),
            created_at=datetime.now(timezone.utc),
        )
        try:
            async with db.begin_nested():
                db.add(review)
        except SQLAlchemyError as exc:
            logger.warning(
                "Review import failed (user=%s, tmdb_id=%s): %s", user.id, movie.match.tmdb_id, exc,
            )
            summary.errors.append(f"Could not save your review of {movie.match.title}.")
            continue
        reviewed.add(movie.match.tmdb_id)
        summary.reviews_saved += 1


async def _match_export_rows(
    groups: list[list[ExportRow]],
    search: SearchFn | None,
) -> dict[tuple[str, int | None], MatchedMovie]:
    # Identical title/year rows across categories are matched once.
    unique_rows: list[ExportRow] = []
    seen: set[tuple[str, int | None]] = set()
    for rows in groups:
        for row in rows:
            key = _row_key(row)
            if key in seen:
                continue
            seen.add(key)
            unique_rows.append(row)
    matched = await match_rows(unique_rows, search)
    return {_row_key(movie.parsed): movie for movie in matched}


def _matched_for(rows: list[ExportRow], matched_by_key: dict) -> list[MatchedMovie]:
    return [replace(matched_by_key[_row_key(row)], parsed=row) for row in rows]


async def import_matched_movies(
    db: AsyncSession,
    user: User,
    movies: list[MatchedMovie],
    *,
    target: MovieList | None = None,
    status: str = ITEM_STATUS_TO_WATCH,
) -> ImportSummary:
    summary = ImportSummary()
    if target is None:
        target = await get_or_create_default_list(db, user, summary)
    await write_matched_to_list(db, user, target, movies, summary, status=status)
    add_audit_log(
        db,
        action="user.import_matched",
        message=(
            f"Imported {summary.imported_count} titles into {target.name}, "
            f"skipped {summary.skipped_count}, unmatched {summary.unmatched_count}."
        ),
        actor_user=user,
    )
    await db.commit()
    logger.info(
        "Matched import finished (user=%s, imported=%s, skipped=%s, errors=%s)",
        user.id, summary.imported_count, summary.skipped_count, len(summary.errors),
    )
    return summary


async def import_letterboxd_export(
    db: AsyncSession,
    user: User,
    export: LetterboxdExport,
    options: ImportOptions | None = None,
    *,
    search: SearchFn | None = None,
) -> ImportSummary:
    options = options or ImportOptions()
    summary = ImportSummary()

    watchlist_rows = export.watchlist if options.import_watchlist else []
    watched_rows = export.watched if options.import_watched else []
    rating_rows = [row for row in export.ratings if row.rating is not None] if options.import_ratings else []
    review_rows = export.reviews if options.import_reviews else []
    favorite_rows = export.favorites if options.import_favorites else []
    export_lists = export.lists if options.import_lists else []

    matched_by_key = await _match_export_rows(
        [watchlist_rows, watched_rows, rating_rows, review_rows, favorite_rows]
        + [export_list.rows for export_list in export_lists],
        search,
    )

    default_list = await get_or_create_default_list(db, user, summary)
    if watchlist_rows:
        await write_matched_to_list(
            db, user, default_list, _matched_for(watchlist_rows, matched_by_key), summary,
            status=ITEM_STATUS_TO_WATCH,
        )
    if watched_rows:
        await write_matched_to_list(
            db, user, default_list, _matched_for(watched_rows, matched_by_key), summary,
            status=ITEM_STATUS_WATCHED,
        )
    if rating_rows:
        await _save_ratings(db, user, default_list, _matched_for(rating_rows, matched_by_key), summary)
    if review_rows:
        await _save_reviews(db, user, _matched_for(review_rows, matched_by_key), summary)
    if favorite_rows:
        favorites = await get_or_create_list(db, user, FAVORITES_LIST_NAME, summary)
        await write_matched_to_list(
            db, user, favorites, _matched_for(favorite_rows, matched_by_key), summary,
            status=ITEM_STATUS_WATCHED,
        )
    for export_list in export_lists:
        target = await get_or_create_list(db, user, export_list.name, summary)
        await write_matched_to_list(
            db, user, target, _matched_for(export_list.rows, matched_by_key), summary,
            status=ITEM_STATUS_TO_WATCH,
        )

    add_audit_log(
        db,
        action="user.import_letterboxd",
        message=(
            f"Letterboxd import{f' ({export.username})' if export.username else ''} completed. "
            f"Imported {summary.imported_count}, skipped {summary.skipped_count}, "
            f"unmatched {summary.unmatched_count}, lists created {summary.lists_created}."
        ),
        actor_user=user,
    )
    await db.commit()
    logger.info(
        "Letterboxd import finished (user=%s, imported=%s, skipped=%s, unmatched=%s, errors=%s)",
        user.id, summary.imported_count, summary.skipped_count, summary.unmatched_count, len(summary.errors),
    )
    return summary
