from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from cinechrony.digest import DigestStats, compose_digest_message, run_weekly_digest
from cinechrony.models import Follow, ListItem, MovieList, Notification, PushSubscription, Review
from cinechrony.push import PushDeliveryError

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "stats, title, body",
    [
        (
            DigestStats(unread_notifications=3, new_followers=2, likes_received=5),
            "Your weekly update",
            "3 notifications, 2 new followers, and 5 likes this week!",
        ),
        (
            DigestStats(unread_notifications=1, new_followers=1),
            "You have new followers!",
            "1 new follower and 1 unread notification waiting.",
        ),
        (
            DigestStats(unread_notifications=2, likes_received=4),
            "2 unread notifications",
            "Check out what your friends have been up to!",
        ),
        (
            DigestStats(new_followers=4, likes_received=1, to_watch_count=40),
            "4 new followers this week!",
            "Someone new is interested in your movie taste.",
        ),
        (
            DigestStats(likes_received=1, to_watch_count=40),
            "Your reviews got 1 like!",
            "People are enjoying your movie takes.",
        ),
        (
            DigestStats(to_watch_count=12),
            "12 movies waiting",
            "Time for movie night? Your watchlist is growing!",
        ),
    ],
)
def test_digest_message_priority(stats, title, body):
    message = compose_digest_message(stats, watchlist_threshold=5)
    assert message is not None
    assert (message.title, message.body) == (title, body)


@pytest.mark.parametrize("to_watch", [0, 5])
def test_no_message_without_activity(to_watch):
    assert compose_digest_message(DigestStats(to_watch_count=to_watch), watchlist_threshold=5) is None


def test_payload_links_to_notifications():
    message = compose_digest_message(DigestStats(new_followers=1))
    assert message.payload() == {
        "title": "1 new follower this week!",
        "body": "Someone new is interested in your movie taste.",
        "tag": "weekly-digest",
        "url": "/notifications",
    }


class RecordingSend:
    def __init__(self, failures=None):
        self.failures = failures or {}
        self.sent = []

    async def __call__(self, subscription, payload):
        failure = self.failures.get(subscription.endpoint)
        if failure is not None:
            raise failure
        self.sent.append((subscription.endpoint, payload))


def _subscription(user, endpoint):
    return PushSubscription(user_id=user.id, endpoint=endpoint, p256dh="key", auth="secret")


def test_digest_sends_to_every_subscription(run_with_db, create_user):
    send = RecordingSend()

    async def scenario(db):
        alice = await create_user(db, "alice", push_enabled=True)
        bob = await create_user(db, "bob", push_enabled=True)
        db.add_all([
            _subscription(alice, "https://push.example/alice-phone"),
            _subscription(alice, "https://push.example/alice-laptop"),
            Notification(user_id=alice.id, kind="follow", message="bob followed you"),
            Follow(follower_id=bob.id, following_id=alice.id, created_at=NOW - timedelta(days=1)),
        ])
        await db.commit()
        return await run_weekly_digest(db, send=send, now=NOW)

    report = run_with_db(scenario)
    assert report.as_response() == {"success": True, "usersProcessed": 1, "notificationsSent": 2, "errors": 0}
    assert sorted(endpoint for endpoint, _ in send.sent) == [
        "https://push.example/alice-laptop",
        "https://push.example/alice-phone",
    ]
    assert send.sent[0][1]["title"] == "You have new followers!"


def test_digest_counts_only_recent_followers_and_likes(run_with_db, create_user):
    send = RecordingSend()

    async def scenario(db):
        alice = await create_user(db, "alice", push_enabled=True)
        bob = await create_user(db, "bob")
        db.add_all([
            _subscription(alice, "https://push.example/alice"),
            Follow(follower_id=bob.id, following_id=alice.id, created_at=NOW - timedelta(days=30)),
            Review(user_id=alice.id, tmdb_id=949, title="Heat", text="Great", likes=3, created_at=NOW - timedelta(days=2)),
            Review(user_id=alice.id, tmdb_id=1, title="Old", text="Old", likes=50, created_at=NOW - timedelta(days=40)),
        ])
        await db.commit()
        return await run_weekly_digest(db, send=send, now=NOW)

    report = run_with_db(scenario)
    assert report.notifications_sent == 1
    assert send.sent[0][1]["title"] == "Your reviews got 3 likes!"


def test_watchlist_reminder_uses_default_list_only(run_with_db, create_user):
    send = RecordingSend()

    async def scenario(db):
        alice = await create_user(db, "alice", push_enabled=True)
        default_list = MovieList(user_id=alice.id, name="My Watchlist", is_default=True)
        other = MovieList(user_id=alice.id, name="Someday", is_default=False)
        db.add_all([default_list, other, _subscription(alice, "https://push.example/alice")])
        await db.flush()
        for tmdb_id in range(1, 7):
            db.add(ListItem(list_id=default_list.id, tmdb_id=tmdb_id, title=f"Movie {tmdb_id}", status="to-watch"))
        db.add(ListItem(list_id=default_list.id, tmdb_id=99, title="Seen", status="watched"))
        for tmdb_id in range(100, 120):
            db.add(ListItem(list_id=other.id, tmdb_id=tmdb_id, title=f"Other {tmdb_id}", status="to-watch"))
        await db.commit()
        return await run_weekly_digest(db, send=send, now=NOW)

    report = run_with_db(scenario)
    assert report.notifications_sent == 1
    assert send.sent[0][1]["title"] == "6 movies waiting"


def test_users_without_subscriptions_or_activity_are_skipped(run_with_db, create_user):
    send = RecordingSend()

    async def scenario(db):
        alice = await create_user(db, "alice", push_enabled=True)
        quiet = await create_user(db, "quiet", push_enabled=True)
        muted = await create_user(db, "muted", push_enabled=False)
        db.add_all([
            Notification(user_id=alice.id, kind="like", message="someone liked your review"),
            _subscription(quiet, "https://push.example/quiet"),
            _subscription(muted, "https://push.example/muted"),
            Notification(user_id=muted.id, kind="like", message="someone liked your review"),
        ])
        await db.commit()
        return await run_weekly_digest(db, send=send, now=NOW)

    report = run_with_db(scenario)
    assert report.as_response() == {"success": True, "usersProcessed": 0, "notificationsSent": 0, "errors": 0}
    assert send.sent == []


def test_gone_subscriptions_are_deleted(run_with_db, create_user):
    send = RecordingSend({
        "https://push.example/expired": PushDeliveryError("Gone", status_code=410),
        "https://push.example/flaky": PushDeliveryError("Server error", status_code=503),
    })

    async def scenario(db):
        alice = await create_user(db, "alice", push_enabled=True)
        db.add_all([
            _subscription(alice, "https://push.example/expired"),
            _subscription(alice, "https://push.example/flaky"),
            _subscription(alice, "https://push.example/ok"),
            Notification(user_id=alice.id, kind="follow", message="hello"),
        ])
        await db.commit()
        report = await run_weekly_digest(db, send=send, now=NOW)
        remaining = (await db.execute(select(PushSubscription.endpoint).order_by(PushSubscription.endpoint))).scalars().all()
        return report, remaining

    report, remaining = run_with_db(scenario)
    assert report.notifications_sent == 1
    assert report.errors == 2
    assert report.users_processed == 1
    assert remaining == ["https://push.example/flaky", "https://push.example/ok"]


def test_failure_for_one_user_does_not_stop_the_run(run_with_db, create_user):
    send = RecordingSend({"https://push.example/broken": RuntimeError("boom")})

    async def scenario(db):
        broken = await create_user(db, "broken", push_enabled=True, created_at=NOW - timedelta(days=10))
        fine = await create_user(db, "fine", push_enabled=True, created_at=NOW - timedelta(days=5))
        db.add_all([
            _subscription(broken, "https://push.example/broken"),
            _subscription(fine, "https://push.example/fine"),
            Notification(user_id=broken.id, kind="follow", message="hello"),
            Notification(user_id=fine.id, kind="follow", message="hello"),
        ])
        await db.commit()
        return await run_weekly_digest(db, send=send, now=NOW)

    report = run_with_db(scenario)
    assert report.errors == 1
    assert report.users_processed == 1
    assert report.notifications_sent == 1
    assert [endpoint for endpoint, _ in send.sent] == ["https://push.example/fine"]
