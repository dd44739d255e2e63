"""Weekly digest: per-user activity counts turned into one push message."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import config, push
from .models import (
    ITEM_STATUS_TO_WATCH,
    Follow,
    ListItem,
    MovieList,
    Notification,
    PushSubscription,
    Review,
    User,
)

logger = logging.getLogger(__name__)

DIGEST_TAG = "weekly-digest"
DIGEST_URL = "/notifications"

SendFn = Callable[[PushSubscription, dict], Awaitable[None]]


@dataclass(frozen=True)
class DigestStats:
    unread_notifications: int = 0
    new_followers: int = 0
    likes_received: int = 0
    to_watch_count: int = 0


@dataclass(frozen=True)
class DigestMessage:
    title: str
    body: str

    def payload(self) -> dict:
        return {"title": self.title, "body": self.body, "tag": DIGEST_TAG, "url": DIGEST_URL}


@dataclass
class DigestReport:
    users_processed: int = 0
    notifications_sent: int = 0
    errors: int = 0

    def as_response(self) -> dict:
        return {
            "success": True,
            "usersProcessed": self.users_processed,
            "notificationsSent": self.notifications_sent,
            "errors": self.errors,
        }


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def compose_digest_message(
    stats: DigestStats,
    watchlist_threshold: int = config.DIGEST_WATCHLIST_THRESHOLD,
) -> DigestMessage | None:
    """Pick the message for the most important kind of activity, or None.

    Priority: unread notifications, new followers, likes, then a watchlist
    reminder once more than ``watchlist_threshold`` titles are waiting.
    """
    unread = stats.unread_notifications
    followers = stats.new_followers
    likes = stats.likes_received

    if unread > 0:
        if followers > 0 and likes > 0:
            return DigestMessage(
                title="Your weekly update",
                body=(
                    f"{_plural(unread, 'notification')}, {_plural(followers, 'new follower')}, "
                    f"and {_plural(likes, 'like')} this week!"
                ),
            )
        if followers > 0:
            return DigestMessage(
                title="You have new followers!",
                body=f"{_plural(followers, 'new follower')} and {_plural(unread, 'unread notification')} waiting.",
            )
        return DigestMessage(
            title=_plural(unread, "unread notification"),
            body="Check out what your friends have been up to!",
        )

    if followers > 0:
        return DigestMessage(
            title=f"{_plural(followers, 'new follower')} this week!",
            body="Someone new is interested in your movie taste.",
        )

    if likes > 0:
        return DigestMessage(
            title=f"Your reviews got {_plural(likes, 'like')}!",
            body="People are enjoying your movie takes.",
        )

    if stats.to_watch_count > watchlist_threshold:
        return DigestMessage(
            title=f"{stats.to_watch_count} movies waiting",
            body="Time for movie night? Your watchlist is growing!",
        )

    return None


async def gather_stats(db: AsyncSession, user_id: uuid.UUID, since: datetime) -> DigestStats:
    unread = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.read.is_(False),
        )
    )
    followers = await db.scalar(
        select(func.count(Follow.id)).where(
            Follow.following_id == user_id,
            Follow.created_at >= since,
        )
    )
    # Likes are not timestamped; count current likes on reviews written this week.
    likes = await db.scalar(
        select(func.coalesce(func.sum(Review.likes), 0)).where(
            Review.user_id == user_id,
            Review.created_at >= since,
        )
    )
    to_watch = await db.scalar(
        select(func.count(ListItem.id))
        .join(MovieList, MovieList.id == ListItem.list_id)
        .where(
            MovieList.user_id == user_id,
            MovieList.is_default.is_(True),
            ListItem.status == ITEM_STATUS_TO_WATCH,
        )
    )
    return DigestStats(
        unread_notifications=int(unread or 0),
        new_followers=int(followers or 0),
        likes_received=int(likes or 0),
        to_watch_count=int(to_watch or 0),
    )


async def _process_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    since: datetime,
    send: SendFn,
    report: DigestReport,
) -> None:
    subscriptions = (
        await db.execute(select(PushSubscription).where(PushSubscription.user_id == user_id))
    ).scalars().all()
    if not subscriptions:
        return

    stats = await gather_stats(db, user_id, since)
    message = compose_digest_message(stats)
    if message is None:
        return

    payload = message.payload()
    gone_ids: list[uuid.UUID] = []
    for subscription in subscriptions:
        try:
            await send(subscription, payload)
        except push.PushDeliveryError as exc:
            if exc.subscription_gone:
                gone_ids.append(subscription.id)
            report.errors += 1
            continue
        report.notifications_sent += 1

    if gone_ids:
        await db.execute(delete(PushSubscription).where(PushSubscription.id.in_(gone_ids)))
        await db.commit()
    report.users_processed += 1


async def run_weekly_digest(
    db: AsyncSession,
    *,
    send: SendFn | None = None,
    now: datetime | None = None,
) -> DigestReport:
    """Send one digest push per subscription of every push-enabled user.

    Users are processed one at a time; a failure for one user is logged and
    counted in ``errors`` and the run moves on to the next user.
    """
    send = send or push.send_web_push
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=config.DIGEST_WINDOW_DAYS)
    report = DigestReport()

    user_ids = (
        await db.execute(select(User.id).where(User.push_enabled.is_(True)).order_by(User.created_at.asc()))
    ).scalars().all()

    for user_id in user_ids:
        try:
            await _process_user(db, user_id, since, send, report)
        except Exception:
            logger.exception("Weekly digest failed for user %s", user_id)
            await db.rollback()
            report.errors += 1

    logger.info(
        "Weekly digest finished (users=%s, sent=%s, errors=%s)",
        report.users_processed, report.notifications_sent, report.errors,
    )
    return report
