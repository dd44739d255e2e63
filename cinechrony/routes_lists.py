from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import get_current_user
from .database import get_db
from .models import ListItem, MovieList, User

router = APIRouter(prefix="/api/lists", tags=["lists"])


def _serialize_list_summary(list_row: MovieList, item_count: int = 0) -> dict:
    return {
        "id": str(list_row.id),
        "name": list_row.name,
        "is_default": bool(list_row.is_default),
        "item_count": int(item_count),
        "created_at": list_row.created_at.isoformat() if list_row.created_at else None,
        "updated_at": list_row.updated_at.isoformat() if list_row.updated_at else None,
    }


def _serialize_list_item(item: ListItem) -> dict:
    return {
        "id": str(item.id),
        "tmdb_id": int(item.tmdb_id),
        "media_type": item.media_type,
        "title": item.title,
        "year": item.year,
        "poster_url": item.poster_url,
        "status": item.status,
        "rating": item.rating,
        "added_by": str(item.added_by) if item.added_by else None,
        "created_at": item.created_at.isoformat() if item.created_at else None,
    }


async def _get_user_list_or_404(db: AsyncSession, user_id, list_id: UUID) -> MovieList:
    list_row = (
        await db.execute(
            select(MovieList).where(
                MovieList.id == list_id,
                MovieList.user_id == user_id,
            )
        )
    ).scalar_one_or_none()
    if not list_row:
        raise HTTPException(status_code=404, detail="List not found")
    return list_row


@router.get("")
async def list_lists(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    counts = (
        select(ListItem.list_id, func.count(ListItem.id).label("item_count"))
        .group_by(ListItem.list_id)
        .subquery()
    )
    rows = (
        await db.execute(
            select(MovieList, func.coalesce(counts.c.item_count, 0))
            .outerjoin(counts, counts.c.list_id == MovieList.id)
            .where(MovieList.user_id == user.id)
            .order_by(MovieList.is_default.desc(), MovieList.created_at.asc())
        )
    ).all()
    return {"results": [_serialize_list_summary(list_row, count) for list_row, count in rows]}


@router.get("/{list_id}/items")
async def list_list_items(
    list_id: UUID,
    status: Literal["to-watch", "watched"] | None = None,
    limit: int = Query(500, ge=1, le=2000),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    list_row = await _get_user_list_or_404(db, user.id, list_id)
    query = select(ListItem).where(ListItem.list_id == list_row.id)
    if status:
        query = query.where(ListItem.status == status)
    items = (
        await db.execute(query.order_by(ListItem.created_at.desc()).limit(limit))
    ).scalars().all()
    return {
        "list": _serialize_list_summary(list_row, len(items)),
        "results": [_serialize_list_item(item) for item in items],
    }
